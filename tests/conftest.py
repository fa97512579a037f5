import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="bookhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OAUTH_CLIENT_ID", "test-client-id")
os.environ.setdefault("OAUTH_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://testserver/v1/auth/oauth/callback")
os.environ.setdefault("PROVIDER_BACKOFF_MS", "0")
# One-time codes live in the memory store; no Redis in the unit suite
os.environ.pop("REDIS_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bookhub.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from bookhub.app import app

    return TestClient(app)


class ProviderStub:
    """Programmable stand-in for the OAuth provider, picture host and SMS gateway."""

    def __init__(self):
        self.token_responses = []
        self.userinfo_responses = []
        self.picture = None
        self.sms_status = 200
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if "token" in request.url.path and request.method == "POST":
            status, payload = self.token_responses.pop(0) if self.token_responses else (
                200,
                {"access_token": "provider-access", "refresh_token": "provider-refresh", "expires_in": 3599},
            )
            return httpx.Response(status, json=payload)
        if "userinfo" in request.url.path:
            status, payload = self.userinfo_responses.pop(0) if self.userinfo_responses else (
                200,
                {"email": "oauth@example.com", "name": "OAuth User"},
            )
            return httpx.Response(status, json=payload)
        if url.startswith("https://pictures.example.com/"):
            if self.picture is None:
                return httpx.Response(404)
            return httpx.Response(200, content=self.picture, headers={"content-type": "image/png"})
        if url.startswith("https://sms.example.com/"):
            return httpx.Response(self.sms_status, json={"status": "queued"})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def provider(runtime):
    stub = ProviderStub()
    runtime.use_http_transport(stub.transport())
    return stub


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
