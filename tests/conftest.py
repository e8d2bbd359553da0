import asyncio
import inspect
import json
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ditto_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USER_STORE_PERSIST", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")

import httpx  # noqa: E402
import jwt  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ditto.config import Settings  # noqa: E402
from ditto.service.runtime import reset_runtime_for_tests  # noqa: E402
from ditto.storage.memory import MemoryStore  # noqa: E402

GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
GOOGLE_KID = "test-google-kid"


class FakeClock:
    """Manually advanced UTC clock for expiry and lockout tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        app_env="test",
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        google_client_id=GOOGLE_CLIENT_ID,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create a non-persisting memory store."""
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture(scope="session")
def google_signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def google_jwks(google_signing_key):
    public_jwk = json.loads(
        RSAAlgorithm.to_jwk(google_signing_key.public_key())
    )
    public_jwk.update({"kid": GOOGLE_KID, "alg": "RS256", "use": "sig"})
    return {"keys": [public_jwk]}


@pytest.fixture
def jwks_requests():
    """Requests seen by the mocked Google certs endpoint."""
    return []


@pytest.fixture
def jwks_http_client(google_jwks, jwks_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        jwks_requests.append(request)
        return httpx.Response(200, json=google_jwks)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_google_token(google_signing_key):
    def _make(
        *,
        sub: str = "google-user-1",
        email: str = "ada@example.com",
        aud: str = GOOGLE_CLIENT_ID,
        iss: str = "https://accounts.google.com",
        expires_in: int = 3600,
        kid: str = GOOGLE_KID,
        key=None,
        **extra,
    ) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "iss": iss,
            "aud": aud,
            "sub": sub,
            "email": email,
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
            **extra,
        }
        return jwt.encode(
            claims,
            key or google_signing_key,
            algorithm="RS256",
            headers={"kid": kid},
        )

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
