"""Integration tests for the HTTP auth flow.

Tests the complete flow through FastAPI with a mocked provider:
- Start redirect and state cookie
- Callback state verification and provider errors
- Token issuance, refresh and logout
- Bearer token validation
"""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from devportal_auth import app as app_module
from devportal_auth.config import Settings
from devportal_auth.service.runtime import Runtime, get_runtime, set_runtime
from devportal_auth.storage.memory import MemoryMemberDirectory

START = "/api/auth/githubtools/start"
FRAME = "/api/auth/githubtools/handler/frame"


@pytest.fixture
def runtime(auth_config, fake_github):
    runtime = Runtime(
        settings=Settings(oauth_callback_timeout_seconds=5.0),
        auth_config=auth_config,
        member_lookup=MemoryMemberDirectory({"jdoe@example.com": "member-42"}),
        transport=fake_github.transport(),
    )
    set_runtime(runtime)
    return runtime


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


def _start(client, **params):
    response = client.get(START, params=params, follow_redirects=False)
    assert response.status_code == 302
    state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
    return response, state


def _login(client):
    _, state = _start(client)
    response = client.get(FRAME, params={"code": "code-1", "state": state})
    assert response.status_code == 200
    return response.json()["data"]


class TestStart:
    def test_redirects_to_provider_with_state_cookie(self, client):
        response, state = _start(client)
        location = urlparse(response.headers["location"])
        assert location.netloc == "github.com"
        assert client.cookies.get("oauth_state") == state
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "max-age=600" in set_cookie

    def test_environment_is_carried_in_state(self, client):
        response, state = _start(client, env="enterprise")
        assert urlparse(response.headers["location"]).netloc == "ghe.example.com"
        raw, _, env = state.partition(":")
        assert env == "enterprise"
        assert client.cookies.get("oauth_state") == raw

    def test_unknown_provider(self, client):
        response = client.get("/api/auth/gitlab/start", follow_redirects=False)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "provider_not_found"


class TestHandlerFrame:
    def test_success_sets_session_cookies(self, client):
        data = _login(client)
        assert data["tokenType"] == "Bearer"
        assert data["expiresIn"] == 3600
        assert data["refreshToken"]
        assert data["profile"]["username"] == "jdoe"
        assert data["profile"]["memberId"] == "member-42"
        assert client.cookies.get("auth_token") == data["accessToken"]
        assert client.cookies.get("refresh_token") == data["refreshToken"]
        assert client.cookies.get("oauth_state") is None

    def test_enterprise_callback(self, client, fake_github):
        _, state = _start(client, env="enterprise")
        response = client.get(FRAME, params={"code": "code-1", "state": state})
        assert response.status_code == 200
        assert str(fake_github.requests[0].url).startswith("https://ghe.example.com/")

    def test_state_mismatch(self, client, fake_github):
        _start(client)
        response = client.get(FRAME, params={"code": "code-1", "state": "forged"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert fake_github.requests == []

    def test_non_ascii_state_rejected(self, client, fake_github):
        client.cookies.set("oauth_state", "abc")
        response = client.get(FRAME, params={"code": "code-1", "state": "é"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert fake_github.requests == []

    def test_explicit_unknown_environment(self, client, fake_github):
        _, state = _start(client)
        response = client.get(FRAME, params={"code": "code-1", "state": state, "env": "staging"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "provider_not_found"
        assert fake_github.requests == []

    def test_missing_state_cookie(self, client, fake_github):
        response = client.get(FRAME, params={"code": "code-1", "state": "anything"})
        assert response.status_code == 403
        assert fake_github.requests == []

    def test_provider_error(self, client, fake_github):
        response = client.get(
            FRAME,
            params={"error": "access_denied", "error_description": "user declined"},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "oauth_error"
        assert fake_github.requests == []

    def test_missing_code(self, client):
        response = client.get(FRAME, params={"state": "s"})
        assert response.status_code == 400

    def test_exchange_failure(self, client, fake_github, runtime):
        fake_github.token_response = {"error": "bad_verification_code"}
        _, state = _start(client)
        response = client.get(FRAME, params={"code": "stale", "state": state})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "oauth_exchange_failed"
        assert len(runtime.auth._tokens) == 0


class TestRefreshAndLogout:
    def test_refresh_with_body(self, client):
        login = _login(client)
        client.cookies.clear()
        response = client.post(
            "/api/auth/githubtools/refresh", json={"refreshToken": login["refreshToken"]}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refreshToken"] != login["refreshToken"]
        assert data["profile"]["memberId"] == "member-42"

        replay = client.post(
            "/api/auth/githubtools/refresh", json={"refreshToken": login["refreshToken"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "refresh_token_invalid"

    def test_refresh_from_cookie(self, client):
        login = _login(client)
        response = client.post("/api/auth/githubtools/refresh")
        assert response.status_code == 200
        assert client.cookies.get("refresh_token") == response.json()["data"]["refreshToken"]
        assert client.cookies.get("refresh_token") != login["refreshToken"]

    def test_refresh_without_token(self, client):
        response = client.post("/api/auth/githubtools/refresh")
        assert response.status_code == 401

    def test_logout_revokes_refresh_token(self, client):
        login = _login(client)
        response = client.post("/api/auth/githubtools/logout")
        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None
        retry = client.post(
            "/api/auth/githubtools/refresh", json={"refreshToken": login["refreshToken"]}
        )
        assert retry.status_code == 401

    def test_logout_with_bearer_and_body(self, client):
        login = _login(client)
        client.cookies.clear()
        response = client.post(
            "/api/auth/githubtools/logout",
            json={"refreshToken": login["refreshToken"]},
            headers={"Authorization": f"Bearer {login['accessToken']}"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] is True

    def test_logout_ignores_invalid_bearer(self, client):
        response = client.post(
            "/api/auth/githubtools/logout", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] is False


class TestValidate:
    def test_valid_bearer(self, client):
        login = _login(client)
        response = client.get(
            "/api/auth/validate", headers={"Authorization": f"Bearer {login['accessToken']}"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["claims"]["user_id"] == 12345
        assert data["claims"]["provider"] == "githubtools"
        assert data["claims"]["iss"] == get_runtime().settings.jwt_issuer

    def test_missing_header(self, client):
        response = client.get("/api/auth/validate")
        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/auth/validate", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestAppPlumbing:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert "githubtools:enterprise" in response.json()["providers"]


class TestClaimDependencies:
    @pytest.fixture
    def guarded_client(self, runtime):
        from fastapi import Depends, FastAPI

        from devportal_auth.api.error_handling import register_exception_handlers
        from devportal_auth.api.routes import get_optional_claims, require_provider

        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/repos")
        async def repos(claims=Depends(require_provider("githubtools"))):
            return {"user_id": claims.user_id}

        @app.get("/gitlab-only")
        async def gitlab_only(claims=Depends(require_provider("gitlab"))):
            return {"user_id": claims.user_id}

        @app.get("/whoami")
        async def whoami(claims=Depends(get_optional_claims)):
            return {"user_id": claims.user_id if claims else None}

        return TestClient(app)

    @pytest.fixture
    def bearer(self, runtime):
        from devportal_auth.storage.models import UserProfile

        token = runtime.auth.codec.issue(UserProfile(id=7, username="octo"), "githubtools")
        return {"Authorization": f"Bearer {token}"}

    def test_allowed_provider(self, guarded_client, bearer):
        response = guarded_client.get("/repos", headers=bearer)
        assert response.status_code == 200
        assert response.json() == {"user_id": 7}

    def test_other_provider_forbidden(self, guarded_client, bearer):
        response = guarded_client.get("/gitlab-only", headers=bearer)
        assert response.status_code == 403

    def test_optional_claims(self, guarded_client, bearer):
        assert guarded_client.get("/whoami").json() == {"user_id": None}
        assert guarded_client.get("/whoami", headers={"Authorization": "Bearer bad"}).json() == {
            "user_id": None
        }
        assert guarded_client.get("/whoami", headers=bearer).json() == {"user_id": 7}
