from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import jwt

from ditto.config import Settings
from ditto.logging import get_logger
from ditto.service.clock import Clock, utcnow

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["exp", "iat", "sub", "jti", "iss", "aud"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    subject: str
    kind: TokenKind
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }


class TokenService:
    """Signs and verifies stateless HS256 access and refresh tokens.

    Both kinds carry the user id (``sub``), the subject the session was opened
    with (phone or email, opaque to callers), a random ``jti`` and a ``kind``
    discriminator. Verification never raises for bad input: malformed,
    forged, expired or wrong-kind tokens all come back as ``None``.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._ttl = {
            TokenKind.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenKind.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    def _now(self) -> datetime:
        return self._clock()

    def _secret(self, kind: TokenKind) -> str:
        if kind is TokenKind.REFRESH:
            return self.settings.refresh_signing_secret
        return self.settings.jwt_secret

    def _encode(self, kind: TokenKind, user_id: str, subject: str) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + self._ttl[kind]
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "subject": subject,
            "kind": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secret(kind), algorithm=_ALGORITHM)
        return token, expires_at

    def issue_access(self, user_id: str, subject: str) -> str:
        token, _ = self._encode(TokenKind.ACCESS, user_id, subject)
        return token

    def issue_refresh(self, user_id: str, subject: str) -> str:
        token, _ = self._encode(TokenKind.REFRESH, user_id, subject)
        return token

    def issue_pair(self, user_id: str, subject: str) -> TokenPair:
        access_token, expires_at = self._encode(TokenKind.ACCESS, user_id, subject)
        refresh_token, _ = self._encode(TokenKind.REFRESH, user_id, subject)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def _decode(self, token: str, kind: TokenKind) -> Optional[TokenClaims]:
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret(kind),
                algorithms=[_ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                leeway=self.settings.jwt_leeway_seconds,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            logger.info("token_expired", kind=kind.value)
            return None
        except jwt.InvalidTokenError as exc:
            logger.warning("token_rejected", kind=kind.value, reason=type(exc).__name__)
            return None
        if payload.get("kind") != kind.value:
            logger.warning("token_kind_mismatch", expected=kind.value)
            return None
        subject = payload.get("subject")
        if not isinstance(subject, str):
            return None
        return TokenClaims(
            user_id=payload["sub"],
            subject=subject,
            kind=kind,
            jti=payload["jti"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify_access(self, token: str) -> Optional[TokenClaims]:
        return self._decode(token, TokenKind.ACCESS)

    def verify_refresh(self, token: str) -> Optional[TokenClaims]:
        return self._decode(token, TokenKind.REFRESH)
