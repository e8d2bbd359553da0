from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SendCodeRequest(BaseModel):
    # Shape is checked by the service so the error matches every entry point
    phone: str = Field(..., max_length=32)

    @field_validator("phone")
    @classmethod
    def _clean_phone(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class VerifyCodeRequest(SendCodeRequest):
    otp: str = Field(..., min_length=1, max_length=10)

    @field_validator("otp")
    @classmethod
    def _clean_otp(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class SocialAuthRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=8192)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime


class UserSummary(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    auth_provider: Optional[str] = None
    profile_picture_url: Optional[str] = None


class SocialAuthResponse(TokenPairResponse):
    user: UserSummary


class UserResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    auth_provider: Optional[str] = None
    profile_picture_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DebugCodeResponse(BaseModel):
    phone: str
    otp: str
    issued_at: datetime
    expires_at: datetime


class DebugEnvResponse(BaseModel):
    app_env: str
    code_mode: str
    features: dict[str, bool]
