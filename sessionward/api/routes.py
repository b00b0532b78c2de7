from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Response

from sessionward.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    RevokedCountResponse,
    TokenPairResponse,
)
from sessionward.logging import get_logger
from sessionward.service.auth import TokenPair
from sessionward.service.guard import Principal
from sessionward.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        session_id=pair.session_id,
        session_epoch=pair.epoch,
        expires_in_seconds=pair.expires_in_seconds,
        token_type=pair.token_type,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer access token into a principal or fail with 401."""
    runtime = get_runtime()
    return runtime.guard.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and start its first session.

    Raises:
        403: If registration is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    pair = await runtime.auth.register(
        body.email,
        body.password,
        client_label=body.client_label,
        display_name=body.display_name,
    )
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid (never says which part)
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(
        body.email, body.password, client_label=body.client_label
    )
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange a refresh token for a new pair, consuming the old one.

    Raises:
        401: ``details.reason`` is one of Expired, Revoked, ReplayDetected, Superseded
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.session_id, body.refresh_token)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest) -> Response:
    runtime = get_runtime()
    await runtime.auth.logout(body.session_id)
    return Response(status_code=204)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.subject_id)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=count))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal),
):
    """Change the current user's password.

    Every session of the user, including the calling one, is revoked.
    """
    runtime = get_runtime()
    count = await runtime.auth.change_password(
        principal.subject_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=RevokedCountResponse(revoked=count))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.subject_id)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            created_at=user.created_at,
        ),
    )
