from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ditto.config import Settings
from ditto.logging import get_logger
from ditto.service.codes import CodeIssuer
from ditto.service.errors import (
    AccountLocked,
    InvalidCode,
    InvalidRefreshToken,
    ServiceError,
    SocialAuthFailed,
    UserNotFound,
)
from ditto.service.federation import FederatedIdentity, FederationAdapter
from ditto.service.lockout import LockoutTracker
from ditto.service.tokens import TokenPair, TokenService
from ditto.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def get_user_by_email_and_provider(
        self, email: str, provider: str
    ) -> Optional[User]: ...

    def create_user(
        self,
        *,
        first_name: str = "",
        last_name: str = "",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        auth_provider: Optional[str] = None,
        social_id: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User: ...


@dataclass
class AuthContext:
    user_id: str
    subject: str


@dataclass
class FederatedSession:
    tokens: TokenPair
    user: User

    def user_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "id": self.user.id,
            "first_name": self.user.first_name,
            "last_name": self.user.last_name,
            "email": self.user.email,
            "auth_provider": self.user.auth_provider,
        }
        if self.user.profile_picture_url:
            summary["profile_picture_url"] = self.user.profile_picture_url
        return summary


class AuthService:
    """Phone-code verification, session renewal and identity federation."""

    def __init__(
        self,
        store: UserStore,
        settings: Settings,
        *,
        codes: CodeIssuer,
        lockout: LockoutTracker,
        tokens: TokenService,
        federation: FederationAdapter,
    ) -> None:
        self.store: UserStore = store
        self.settings = settings
        self.codes = codes
        self.lockout = lockout
        self.tokens = tokens
        self.federation = federation
        self.logger = logger

    # state sweep
    def cleanup_expired_states(self) -> int:
        """Drop expired verification codes and elapsed lockouts.

        Returns:
            Number of expired entries cleaned up
        """
        expired_codes = self.codes.sweep()
        expired_locks = self.lockout.sweep()
        cleaned = expired_codes + expired_locks
        if cleaned > 0:
            self.logger.debug(
                "auth_state_cleanup",
                cleaned=cleaned,
                codes=expired_codes,
                lockouts=expired_locks,
            )
        return cleaned

    async def run_cleanup_loop(self, interval_seconds: Optional[int] = None) -> None:
        """Background loop that sweeps expired codes and lockouts until cancelled."""
        interval = interval_seconds or self.settings.state_cleanup_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    self.cleanup_expired_states()
                except Exception as exc:
                    self.logger.warning("auth_state_cleanup_failed", error=str(exc))
        except asyncio.CancelledError:
            self.logger.info("auth_state_cleanup_cancelled")
            raise

    # phone verification
    async def start_verification(self, phone: str) -> None:
        """Issue a verification code for ``phone``.

        Raises:
            InvalidPhoneFormat: phone is not E.164; no state is recorded.
        """
        self.codes.issue(phone)

    async def complete_verification(self, phone: str, code: str) -> TokenPair:
        """Check ``code`` for ``phone`` and open a session for the matching user.

        Raises:
            AccountLocked: too many failed attempts; the code is not checked.
            InvalidCode: wrong, expired or never-issued code.
            UserNotFound: code accepted but no account has this phone.
        """
        with self.lockout.attempt(phone):
            state = self.lockout.check_locked(phone)
            if state.locked:
                self.logger.warning("verification_locked_out", phone=phone)
                raise AccountLocked(state.remaining_minutes)

            if not self.codes.check(phone, code):
                self.lockout.record_failure(phone)
                self.logger.info("verification_code_rejected", phone=phone)
                raise InvalidCode()

            user = self.store.get_user_by_phone(phone)
            if not user:
                self.logger.info("verification_user_missing", phone=phone)
                raise UserNotFound()

            self.lockout.record_success(phone)
        tokens = self.tokens.issue_pair(user.id, phone)
        self.logger.info("verification_succeeded", user_id=user.id)
        return tokens

    # session renewal
    async def renew_session(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair.

        The presented refresh token stays valid until it expires. The user is
        looked up by the token's ``sub`` user-id claim rather than by phone,
        since the subject may be a phone number or an email. The new pair
        carries the same subject.

        Raises:
            InvalidRefreshToken: token is malformed, forged, expired or not a refresh token.
            UserNotFound: the account behind the token no longer exists.
        """
        claims = self.tokens.verify_refresh(refresh_token)
        if claims is None:
            raise InvalidRefreshToken()
        user = self.store.get_user(claims.user_id)
        if not user:
            self.logger.warning("refresh_user_missing", user_id=claims.user_id)
            raise UserNotFound()
        tokens = self.tokens.issue_pair(user.id, claims.subject)
        self.logger.info("session_renewed", user_id=user.id)
        return tokens

    # identity federation
    async def authenticate_federated(
        self,
        provider: str,
        provider_token: str,
        *,
        timeout: Optional[float] = None,
    ) -> FederatedSession:
        """Sign in with an identity-provider token, creating the user on first use.

        Raises:
            UnsupportedProvider: provider is unknown or disabled; nothing is verified.
            InvalidProviderToken: the provider token did not verify.
            SocialAuthFailed: any other failure after verification.
        """
        resolved = self.federation.resolve(provider)
        try:
            identity = await self.federation.verify(
                resolved, provider_token, timeout=timeout
            )
            user = self._resolve_federated_user(identity)
            tokens = self.tokens.issue_pair(user.id, user.email or "")
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "social_auth_failed",
                provider=resolved.value,
                error_type=type(exc).__name__,
            )
            raise SocialAuthFailed() from exc
        self.logger.info(
            "social_auth_succeeded", provider=resolved.value, user_id=user.id
        )
        return FederatedSession(tokens=tokens, user=user)

    def _resolve_federated_user(self, identity: FederatedIdentity) -> User:
        provider = identity.provider.value
        user = self.store.get_user_by_provider(provider, identity.provider_user_id)
        if user:
            return user
        if identity.email:
            user = self.store.get_user_by_email_and_provider(identity.email, provider)
            if user:
                return user
        user = self.store.create_user(
            first_name=identity.first_name,
            last_name=identity.last_name,
            email=identity.email or None,
            auth_provider=provider,
            social_id=identity.provider_user_id,
            profile_picture_url=identity.profile_picture_url,
        )
        self.logger.info("federated_user_created", provider=provider, user_id=user.id)
        return user

    # request authentication
    def verify_access_token(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        claims = self.tokens.verify_access(token)
        if claims is None:
            return None
        return AuthContext(user_id=claims.user_id, subject=claims.subject)

    def authenticate_header(self, authorization: Optional[str]) -> Optional[AuthContext]:
        return self.verify_access_token(self._extract_bearer(authorization))

    async def get_me(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
