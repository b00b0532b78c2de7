"""Tests for the backend-independent rotation rules."""

from datetime import datetime, timedelta, timezone

import pytest

from sessionward.storage.common import (
    hash_token,
    plan_rotation,
    revoke_record,
    session_from_dict,
    session_to_dict,
)
from sessionward.storage.errors import RejectionReason, RotationRejected
from sessionward.storage.models import SessionRecord

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(token="token-a", **overrides):
    record = SessionRecord.new("user-1", hash_token(token), NOW, timedelta(days=7))
    for key, value in overrides.items():
        setattr(record, key, value)
    return record


class TestPlanRotation:
    def test_missing_record(self):
        plan = plan_rotation(None, "token-a", NOW)
        assert plan.rejection == RejectionReason.NOT_FOUND
        assert plan.updated is None

    def test_matching_token_rotates(self):
        record = _record()
        plan = plan_rotation(record, "token-a", NOW + timedelta(minutes=5))

        assert plan.rejection is None
        assert plan.refresh_token and plan.refresh_token != "token-a"
        updated = plan.updated
        assert updated.current_token_hash == hash_token(plan.refresh_token)
        assert updated.previous_token_hash == hash_token("token-a")
        assert updated.rotation_counter == 1
        assert updated.last_refreshed_at == NOW + timedelta(minutes=5)
        # Ceiling is fixed at creation
        assert updated.expires_at == record.expires_at
        # Input record is not mutated
        assert record.rotation_counter == 0

    def test_mismatch_revokes_as_replay(self):
        plan = plan_rotation(_record(), "token-x", NOW)

        assert plan.rejection == RejectionReason.REPLAY
        assert plan.updated.revoked is True
        assert plan.updated.revoked_reason == "replay"
        assert plan.updated.revoked_at == NOW

    def test_revoked_record_is_not_rewritten(self):
        plan = plan_rotation(_record(revoked=True), "token-a", NOW)
        assert plan.rejection == RejectionReason.REVOKED
        assert plan.updated is None

    def test_past_ceiling_revokes_as_expired(self):
        later = NOW + timedelta(days=7, seconds=1)
        plan = plan_rotation(_record(), "token-a", later)

        assert plan.rejection == RejectionReason.EXPIRED
        assert plan.updated.revoked_reason == "expired"

    def test_exactly_at_ceiling_still_rotates(self):
        plan = plan_rotation(_record(), "token-a", NOW + timedelta(days=7))
        assert plan.rejection is None

    def test_previous_token_inside_grace_is_superseded(self):
        rotated = plan_rotation(_record(), "token-a", NOW).updated

        plan = plan_rotation(
            rotated, "token-a", NOW + timedelta(seconds=5), timedelta(seconds=10)
        )

        assert plan.rejection == RejectionReason.SUPERSEDED
        assert plan.updated is None

    def test_previous_token_after_grace_is_replay(self):
        rotated = plan_rotation(_record(), "token-a", NOW).updated

        plan = plan_rotation(
            rotated, "token-a", NOW + timedelta(seconds=11), timedelta(seconds=10)
        )

        assert plan.rejection == RejectionReason.REPLAY

    def test_unknown_token_inside_grace_is_replay(self):
        rotated = plan_rotation(_record(), "token-a", NOW).updated

        plan = plan_rotation(rotated, "token-x", NOW, timedelta(seconds=10))

        assert plan.rejection == RejectionReason.REPLAY

    def test_raise_if_rejected(self):
        plan = plan_rotation(_record(), "token-x", NOW)
        with pytest.raises(RotationRejected) as exc_info:
            plan.raise_if_rejected("sess-1")
        assert exc_info.value.reason == RejectionReason.REPLAY
        assert exc_info.value.session_id == "sess-1"


class TestRecordHelpers:
    def test_revoke_record_rejects_unknown_reason(self):
        with pytest.raises(ValueError):
            revoke_record(_record(), NOW, "because")

    def test_dict_round_trip_preserves_datetimes(self):
        record = revoke_record(
            _record(last_refreshed_at=NOW + timedelta(minutes=1)), NOW, "logout"
        )
        restored = session_from_dict(session_to_dict(record))
        assert restored == record
