import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("AUTH_REDIRECT_URL", "http://localhost:3000")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from devportal_auth.config import AuthConfig, ProviderConfig  # noqa: E402
from devportal_auth.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "unit-test-jwt-secret"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def auth_config():
    """Two registrations for ``githubtools``: public and an enterprise environment."""
    return AuthConfig(
        jwt_secret=TEST_SECRET,
        redirect_url="http://localhost:3000",
        providers={
            "githubtools": ProviderConfig(client_id="public-id", client_secret="public-secret"),
        },
        environments={
            "enterprise": {
                "githubtools": ProviderConfig(
                    client_id="ghe-id",
                    client_secret="ghe-secret",
                    enterprise_base_url="https://ghe.example.com",
                ),
            },
        },
    )


class FakeGitHub:
    """Scriptable stand-in for the provider's token and user endpoints."""

    def __init__(self):
        self.token_response = {"access_token": "gho_upstream", "token_type": "bearer"}
        self.token_status = 200
        self.user = {
            "id": 12345,
            "login": "jdoe",
            "email": None,
            "name": "Jane Doe",
            "avatar_url": "https://avatars.example.com/u/12345",
        }
        self.user_status = 200
        self.emails = [
            {"email": "secondary@example.com", "primary": False, "verified": True},
            {"email": "jdoe@example.com", "primary": True, "verified": True},
        ]
        self.emails_status = 200
        self.delay = 0.0
        self.requests = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path
        if path.endswith("/login/oauth/access_token"):
            return httpx.Response(self.token_status, json=self.token_response)
        if path.endswith("/user/emails"):
            return httpx.Response(self.emails_status, json=self.emails)
        if path.endswith("/user"):
            return httpx.Response(self.user_status, json=self.user)
        return httpx.Response(404, json={"message": "Not Found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_github():
    return FakeGitHub()


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
