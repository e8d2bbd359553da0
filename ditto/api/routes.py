from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from ditto.api.schemas import (
    DebugCodeResponse,
    DebugEnvResponse,
    Envelope,
    SendCodeRequest,
    SocialAuthRequest,
    SocialAuthResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
    UserSummary,
    VerifyCodeRequest,
)
from ditto.logging import get_logger
from ditto.service.auth import AuthContext
from ditto.service.runtime import get_runtime
from ditto.service.tokens import TokenPair
from ditto.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
# Mounted only outside production-like environments
debug_router = APIRouter(prefix="/debug", tags=["debug"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        phone=user.phone,
        auth_provider=user.auth_provider,
        profile_picture_url=user.profile_picture_url,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate_header(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    return ctx


@router.post("/auth/send-otp", status_code=204, tags=["auth"])
async def send_otp(body: SendCodeRequest):
    """Issue a one-time verification code for a phone number.

    Delivery happens out of band; the code is never part of the response.

    Raises:
        400: If the phone number is not in international (E.164) format
    """
    runtime = get_runtime()
    await runtime.auth.start_verification(body.phone)
    return Response(status_code=204)


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyCodeRequest):
    """Exchange a phone number and verification code for session tokens.

    Raises:
        400: If the code is wrong or expired
        404: If no account is registered for the phone number
        429: If the phone is locked after repeated failures
    """
    runtime = get_runtime()
    tokens = await runtime.auth.complete_verification(body.phone, body.otp)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token into a new access/refresh pair.

    Raises:
        401: If the refresh token is invalid or expired
        404: If the account no longer exists
    """
    runtime = get_runtime()
    tokens = await runtime.auth.renew_session(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/social", response_model=Envelope, tags=["auth"])
async def social_auth(body: SocialAuthRequest):
    """Sign in with an identity provider token (Google).

    Raises:
        400: If the provider is not supported
        401: If the provider token does not verify
        500: If sign-in fails after verification
    """
    runtime = get_runtime()
    session = await runtime.auth.authenticate_federated(body.provider, body.token)
    tokens = session.tokens
    return Envelope(
        status="ok",
        data=SocialAuthResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.expires_at,
            user=UserSummary(**session.user_summary()),
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_me(principal.user_id)
    if not user:
        raise _http_error("not_found", "User not found", status_code=404)
    return Envelope(status="ok", data=_user_response(user))


@debug_router.get("/env", response_model=Envelope)
async def debug_env():
    """Report the environment and which sign-in features are active."""
    runtime = get_runtime()
    settings = runtime.settings
    return Envelope(
        status="ok",
        data=DebugEnvResponse(
            app_env=settings.app_env.value,
            code_mode=settings.resolved_code_mode.value,
            features={
                "phone_verification": True,
                "verification_bypass": runtime.codes.bypass,
                "google_sign_in": bool(settings.google_client_id),
                "apple_sign_in": False,
            },
        ),
    )


@debug_router.get("/last-otp", response_model=Envelope)
async def debug_last_code():
    """Return the most recently issued verification code, if any."""
    issued = get_runtime().codes.last_issued
    if issued is None:
        return Envelope(status="ok", data={"message": "No OTP sent yet"})
    return Envelope(
        status="ok",
        data=DebugCodeResponse(
            phone=issued.phone,
            otp=issued.code,
            issued_at=issued.issued_at,
            expires_at=issued.expires_at,
        ),
    )
