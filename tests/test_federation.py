"""Tests for the identity federation adapter and Google ID-token verification."""

import asyncio

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from ditto.service.errors import InvalidProviderToken, UnsupportedProvider
from ditto.service.federation import (
    AppleIdentityVerifier,
    FederationAdapter,
    GoogleIdentityVerifier,
    IdentityProvider,
    JWKSCache,
    resolve_provider,
)

CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"


@pytest.fixture
def jwks_cache(jwks_http_client):
    return JWKSCache(CERTS_URL, cache_ttl=3600, http_client=jwks_http_client)


@pytest.fixture
def adapter(settings, jwks_cache):
    return FederationAdapter(
        {
            IdentityProvider.GOOGLE: GoogleIdentityVerifier(
                settings.google_client_id, jwks_cache
            ),
            IdentityProvider.APPLE: AppleIdentityVerifier(),
        },
        timeout_seconds=2.0,
    )


class TestProviderResolution:
    def test_known_names_resolve(self):
        assert resolve_provider("google") is IdentityProvider.GOOGLE
        assert resolve_provider(" Google ") is IdentityProvider.GOOGLE
        assert resolve_provider("apple") is IdentityProvider.APPLE

    @pytest.mark.parametrize("name", ["facebook", "", "twitter", "goog"])
    def test_unknown_names_are_unsupported(self, name):
        with pytest.raises(UnsupportedProvider):
            resolve_provider(name)

    def test_adapter_rejects_disabled_apple(self, adapter, jwks_requests):
        with pytest.raises(UnsupportedProvider) as exc_info:
            adapter.resolve("apple")

        assert "Apple Sign-In is not currently supported" in exc_info.value.message
        assert jwks_requests == []

    def test_adapter_rejects_unknown_provider(self, adapter, jwks_requests):
        with pytest.raises(UnsupportedProvider):
            adapter.resolve("facebook")
        assert jwks_requests == []


class TestGoogleVerification:
    async def test_valid_token_yields_identity(self, adapter, make_google_token):
        identity = await adapter.verify(IdentityProvider.GOOGLE, make_google_token())

        assert identity.provider is IdentityProvider.GOOGLE
        assert identity.provider_user_id == "google-user-1"
        assert identity.email == "ada@example.com"
        assert identity.first_name == "Ada"
        assert identity.last_name == "Lovelace"
        assert identity.profile_picture_url == "https://example.com/ada.png"

    async def test_bare_issuer_accepted(self, adapter, make_google_token):
        identity = await adapter.verify(
            IdentityProvider.GOOGLE, make_google_token(iss="accounts.google.com")
        )
        assert identity.provider_user_id == "google-user-1"

    async def test_keys_are_cached(self, adapter, make_google_token, jwks_requests):
        await adapter.verify(IdentityProvider.GOOGLE, make_google_token())
        await adapter.verify(IdentityProvider.GOOGLE, make_google_token(sub="other"))

        assert len(jwks_requests) == 1
        assert str(jwks_requests[0].url) == CERTS_URL

    async def test_wrong_audience_rejected(self, adapter, make_google_token):
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(
                IdentityProvider.GOOGLE, make_google_token(aud="someone-elses-client")
            )

    async def test_wrong_issuer_rejected(self, adapter, make_google_token):
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(
                IdentityProvider.GOOGLE, make_google_token(iss="https://evil.example.com")
            )

    async def test_expired_token_rejected(self, adapter, make_google_token):
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(
                IdentityProvider.GOOGLE, make_google_token(expires_in=-3600)
            )

    async def test_token_signed_by_other_key_rejected(self, adapter, make_google_token):
        stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        with pytest.raises(InvalidProviderToken):
            await adapter.verify(IdentityProvider.GOOGLE, make_google_token(key=stranger))

    async def test_unknown_kid_refetches_then_rejects(
        self, adapter, make_google_token, jwks_requests
    ):
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(
                IdentityProvider.GOOGLE, make_google_token(kid="rotated-away")
            )
        assert len(jwks_requests) == 2

    async def test_repeated_unknown_kids_refetch_once_per_interval(
        self, adapter, make_google_token, jwks_requests
    ):
        for kid in ["rotated-1", "rotated-2", "rotated-3", "rotated-4"]:
            with pytest.raises(InvalidProviderToken):
                await adapter.verify(IdentityProvider.GOOGLE, make_google_token(kid=kid))

        # initial fetch plus a single unknown-kid refetch
        assert len(jwks_requests) == 2

        identity = await adapter.verify(IdentityProvider.GOOGLE, make_google_token())
        assert identity.provider_user_id == "google-user-1"
        assert len(jwks_requests) == 2

    async def test_unknown_kid_refetch_allowed_after_interval(
        self, jwks_http_client, jwks_requests
    ):
        cache = JWKSCache(
            CERTS_URL, cache_ttl=3600, min_refetch_interval=0, http_client=jwks_http_client
        )
        for _ in range(3):
            with pytest.raises(jwt.InvalidTokenError):
                await cache.get_signing_key("rotated-away")

        assert len(jwks_requests) == 4

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    async def test_malformed_token_rejected(self, adapter, token):
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(IdentityProvider.GOOGLE, token)

    async def test_missing_client_id_fails_closed(self, jwks_cache, make_google_token):
        adapter = FederationAdapter(
            {IdentityProvider.GOOGLE: GoogleIdentityVerifier(None, jwks_cache)}
        )
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(IdentityProvider.GOOGLE, make_google_token())

    async def test_certs_outage_fails_closed(self, settings, make_google_token):
        def handler(request):
            return httpx.Response(503, json={"error": "unavailable"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = FederationAdapter(
            {
                IdentityProvider.GOOGLE: GoogleIdentityVerifier(
                    settings.google_client_id,
                    JWKSCache(CERTS_URL, http_client=client),
                )
            }
        )
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(IdentityProvider.GOOGLE, make_google_token())

    async def test_deadline_fails_closed(self, settings, google_jwks, make_google_token):
        async def slow_handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=google_jwks)

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
        adapter = FederationAdapter(
            {
                IdentityProvider.GOOGLE: GoogleIdentityVerifier(
                    settings.google_client_id,
                    JWKSCache(CERTS_URL, http_client=client),
                )
            }
        )
        with pytest.raises(InvalidProviderToken):
            await adapter.verify(
                IdentityProvider.GOOGLE, make_google_token(), timeout=0.05
            )


class TestAppleBinding:
    async def test_apple_verify_is_hard_stop(self, adapter, jwks_requests):
        with pytest.raises(UnsupportedProvider):
            await adapter.verify(IdentityProvider.APPLE, "apple-id-token")
        assert jwks_requests == []
