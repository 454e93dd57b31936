from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

import httpx

from devportal_auth.config import ProviderConfig
from devportal_auth.logging import get_logger
from devportal_auth.service.errors import ExchangeError, ProfileFetchError
from devportal_auth.storage.models import UserProfile

logger = get_logger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"
OAUTH_SCOPES = ("user:email", "read:user", "repo")


@dataclass(frozen=True)
class OAuthEndpoints:
    authorize_url: str
    token_url: str
    api_url: str

    @classmethod
    def for_provider(cls, config: ProviderConfig) -> "OAuthEndpoints":
        base = config.enterprise_base_url
        if not base:
            return cls(GITHUB_AUTHORIZE_URL, GITHUB_TOKEN_URL, GITHUB_API_URL)
        api_url = base if base.endswith("/api/v3") else f"{base}/api/v3"
        return cls(
            authorize_url=f"{base}/login/oauth/authorize",
            token_url=f"{base}/login/oauth/access_token",
            api_url=api_url,
        )


def select_primary_email(emails: Iterable[dict], fallback: Optional[str]) -> str:
    """Pick the flagged primary email, else the first verified one, else ``fallback``."""
    emails = [e for e in emails if isinstance(e, dict) and e.get("email")]
    for entry in emails:
        if entry.get("primary"):
            return entry["email"]
    for entry in emails:
        if entry.get("verified"):
            return entry["email"]
    return fallback or ""


class GitHubClient:
    """OAuth2 and user API client for one GitHub (or GitHub Enterprise) registration."""

    def __init__(
        self,
        name: str,
        config: ProviderConfig,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.config = config
        self.endpoints = OAuthEndpoints.for_provider(config)
        self.timeout = timeout
        self._transport = transport

    @property
    def enterprise_base_url(self) -> Optional[str]:
        return self.config.enterprise_base_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "access_type": "offline",
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(OAUTH_SCOPES),
            "state": state,
        }
        return f"{self.endpoints.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> str:
        """Trade an authorization code for the upstream access token."""
        token_data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.endpoints.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ExchangeError(
                "failed to exchange code for token",
                detail={"provider": self.name, "status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise ExchangeError(
                "failed to exchange code for token", detail={"provider": self.name}
            ) from exc
        except ValueError as exc:
            logger.error("oauth_token_parse_error", provider=self.name, error=str(exc))
            raise ExchangeError(
                "failed to exchange code for token", detail={"provider": self.name}
            ) from exc

        if not isinstance(result, dict):
            raise ExchangeError("unexpected token response", detail={"provider": self.name})
        if result.get("error"):
            # GitHub reports bad codes with HTTP 200 and an error field
            logger.warning("oauth_exchange_rejected", provider=self.name, reason=result.get("error"))
            raise ExchangeError(
                f"failed to exchange code for token: {result.get('error')}",
                detail={"provider": self.name, "reason": result.get("error")},
            )
        access_token = result.get("access_token")
        if not access_token:
            logger.error("oauth_no_access_token", provider=self.name)
            raise ExchangeError("token response has no access token", detail={"provider": self.name})
        return access_token

    async def get_user_profile(self, access_token: str) -> UserProfile:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        try:
            async with self._client() as client:
                user_response = await client.get(f"{self.endpoints.api_url}/user", headers=headers)
                if user_response.status_code == 401:
                    raise ProfileFetchError("invalid access token", detail={"provider": self.name})
                user_response.raise_for_status()
                user = user_response.json()
                emails = await self._list_emails(client, headers)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ProfileFetchError(
                "failed to get user profile",
                detail={"provider": self.name, "status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_error", provider=self.name, error=str(exc))
            raise ProfileFetchError(
                "failed to get user profile", detail={"provider": self.name}
            ) from exc
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", provider=self.name, error=str(exc))
            raise ProfileFetchError(
                "failed to get user profile", detail={"provider": self.name}
            ) from exc

        if not isinstance(user, dict) or user.get("id") is None:
            logger.error("oauth_userinfo_invalid_format", provider=self.name)
            raise ProfileFetchError("unexpected user payload", detail={"provider": self.name})
        return self._parse_profile(user, emails)

    async def _list_emails(self, client: httpx.AsyncClient, headers: dict) -> list[dict]:
        """Fetch the email list; a failure here just means no emails."""
        try:
            response = await client.get(f"{self.endpoints.api_url}/user/emails", headers=headers)
            response.raise_for_status()
            emails = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("oauth_email_list_unavailable", provider=self.name, error=str(exc))
            return []
        return emails if isinstance(emails, list) else []

    @staticmethod
    def _parse_profile(user: dict[str, Any], emails: list[dict]) -> UserProfile:
        try:
            user_id = int(user["id"])
        except (TypeError, ValueError) as exc:
            raise ProfileFetchError("unexpected user id") from exc
        return UserProfile(
            id=user_id,
            username=user.get("login") or "",
            email=select_primary_email(emails, user.get("email")),
            name=user.get("name") or "",
            avatar_url=user.get("avatar_url") or "",
        )
