from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
import jwt

from ditto.config import Settings
from ditto.logging import get_logger, sanitize_error_message
from ditto.service.errors import InvalidProviderToken, UnsupportedProvider

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


class IdentityProvider(str, Enum):
    GOOGLE = "google"
    APPLE = "apple"


@dataclass(frozen=True)
class FederatedIdentity:
    provider: IdentityProvider
    provider_user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    profile_picture_url: Optional[str] = None


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> FederatedIdentity: ...


def resolve_provider(name: str) -> IdentityProvider:
    """Map a provider name onto the closed provider set.

    Raises:
        UnsupportedProvider: for any name outside the set.
    """
    normalized = name.strip().lower() if isinstance(name, str) else ""
    try:
        return IdentityProvider(normalized)
    except ValueError:
        raise UnsupportedProvider(normalized or str(name)) from None


class JWKSCache:
    """Fetches a JSON Web Key Set over HTTP and caches the keys by ``kid``.

    The set is refetched once the TTL has passed, or when a token names a key
    id that is not cached (provider key rotation). Unknown-kid refetches are
    limited to one per ``min_refetch_interval`` seconds.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        cache_ttl: int = 3600,
        min_refetch_interval: int = 60,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self.min_refetch_interval = min_refetch_interval
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._kid_refetched_at: Optional[float] = None
        self._refresh_lock = asyncio.Lock()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0)
        )

    def _needs_refresh(self) -> bool:
        if self._fetched_at is None:
            return True
        return time.monotonic() - self._fetched_at >= self.cache_ttl

    def _may_refetch_for_kid(self) -> bool:
        if self._kid_refetched_at is None:
            return True
        return time.monotonic() - self._kid_refetched_at >= self.min_refetch_interval

    async def refresh_keys(self) -> None:
        response = await self._http_client.get(self.jwks_url)
        response.raise_for_status()
        keys: dict[str, jwt.PyJWK] = {}
        for key_data in response.json().get("keys", []):
            kid = key_data.get("kid")
            if not kid:
                logger.warning("jwks_key_missing_kid", url=self.jwks_url)
                continue
            keys[kid] = jwt.PyJWK(key_data)
        self._keys = keys
        self._fetched_at = time.monotonic()
        logger.info("jwks_refreshed", url=self.jwks_url, key_count=len(keys))

    async def get_signing_key(self, kid: str) -> jwt.PyJWK:
        if self._needs_refresh():
            async with self._refresh_lock:
                if self._needs_refresh():
                    await self.refresh_keys()
        key = self._keys.get(kid)
        if key is None:
            async with self._refresh_lock:
                if self._may_refetch_for_kid():
                    logger.info("jwks_unknown_kid", kid=kid)
                    self._kid_refetched_at = time.monotonic()
                    await self.refresh_keys()
                else:
                    logger.info("jwks_unknown_kid_throttled", kid=kid)
            key = self._keys.get(kid)
        if key is None:
            raise jwt.InvalidTokenError(f"signing key {kid!r} not found")
        return key

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


class GoogleIdentityVerifier:
    """Verifies Google ID tokens against Google's published signing keys."""

    provider = IdentityProvider.GOOGLE
    enabled = True

    def __init__(self, client_id: Optional[str], jwks: JWKSCache) -> None:
        self.client_id = client_id
        self.jwks = jwks

    async def verify(self, token: str) -> FederatedIdentity:
        if not self.client_id:
            logger.error("google_client_id_missing")
            raise InvalidProviderToken(self.provider.value)
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not kid:
            raise jwt.InvalidTokenError("token header missing kid")
        signing_key = await self.jwks.get_signing_key(kid)
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=self.client_id,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise jwt.InvalidIssuerError("unexpected issuer")
        return self._identity_from_claims(claims)

    def _identity_from_claims(self, claims: dict[str, Any]) -> FederatedIdentity:
        return FederatedIdentity(
            provider=self.provider,
            provider_user_id=str(claims["sub"]),
            email=claims.get("email") or "",
            first_name=claims.get("given_name") or "",
            last_name=claims.get("family_name") or "",
            profile_picture_url=claims.get("picture"),
        )


class AppleIdentityVerifier:
    """Placeholder binding: Apple Sign-In is recognised but not available."""

    provider = IdentityProvider.APPLE
    enabled = False
    unsupported_message = (
        "Apple Sign-In is not currently supported. Please use Google Sign-In."
    )

    async def verify(self, token: str) -> FederatedIdentity:
        raise UnsupportedProvider(self.provider.value, self.unsupported_message)


class FederationAdapter:
    """Dispatches provider tokens to the verifier bound to each provider."""

    def __init__(
        self,
        verifiers: dict[IdentityProvider, IdentityVerifier],
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.verifiers = verifiers
        self.timeout_seconds = timeout_seconds
        self.logger = logger

    @classmethod
    def from_settings(
        cls, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None
    ) -> "FederationAdapter":
        jwks = JWKSCache(
            settings.google_certs_url,
            cache_ttl=settings.google_jwks_cache_seconds,
            min_refetch_interval=settings.google_jwks_min_refetch_seconds,
            http_client=http_client,
        )
        return cls(
            {
                IdentityProvider.GOOGLE: GoogleIdentityVerifier(
                    settings.google_client_id, jwks
                ),
                IdentityProvider.APPLE: AppleIdentityVerifier(),
            },
            timeout_seconds=settings.provider_verify_timeout_seconds,
        )

    def resolve(self, name: str) -> IdentityProvider:
        """Resolve ``name`` to a provider that can actually verify tokens.

        Unknown and disabled providers raise UnsupportedProvider before any
        network or crypto work.
        """
        provider = resolve_provider(name)
        verifier = self.verifiers.get(provider)
        if verifier is None or not getattr(verifier, "enabled", True):
            raise UnsupportedProvider(
                provider.value, getattr(verifier, "unsupported_message", None)
            )
        return provider

    async def verify(
        self,
        provider: IdentityProvider,
        token: str,
        *,
        timeout: Optional[float] = None,
    ) -> FederatedIdentity:
        """Verify ``token`` with ``provider`` and return the extracted identity.

        Raises:
            UnsupportedProvider: provider has no usable verifier.
            InvalidProviderToken: verification failed for any reason, including
                JWKS fetch failures and the deadline passing.
        """
        verifier = self.verifiers.get(provider)
        if verifier is None:
            raise UnsupportedProvider(provider.value)
        if not token or not isinstance(token, str):
            raise InvalidProviderToken(provider.value)
        deadline = timeout if timeout is not None else self.timeout_seconds
        try:
            return await asyncio.wait_for(verifier.verify(token), timeout=deadline)
        except (UnsupportedProvider, InvalidProviderToken):
            raise
        except asyncio.TimeoutError:
            self.logger.warning(
                "provider_verify_timeout", provider=provider.value, timeout=deadline
            )
            raise InvalidProviderToken(provider.value) from None
        except (jwt.InvalidTokenError, jwt.PyJWKError) as exc:
            self.logger.warning(
                "provider_token_rejected",
                provider=provider.value,
                reason=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise InvalidProviderToken(provider.value) from exc
        except httpx.HTTPError as exc:
            self.logger.error(
                "provider_keys_unavailable",
                provider=provider.value,
                error=sanitize_error_message(str(exc)),
            )
            raise InvalidProviderToken(provider.value) from exc
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning(
                "provider_payload_malformed",
                provider=provider.value,
                error=sanitize_error_message(str(exc)),
            )
            raise InvalidProviderToken(provider.value) from exc

    async def close(self) -> None:
        for verifier in self.verifiers.values():
            jwks = getattr(verifier, "jwks", None)
            if jwks is not None:
                await jwks.close()
