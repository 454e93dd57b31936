from __future__ import annotations

import asyncio
import secrets
from typing import Dict, Optional, Tuple

import httpx

from devportal_auth.config import AuthConfig, ProviderKey, ProviderRegistry
from devportal_auth.logging import get_logger
from devportal_auth.service.enrichment import MemberEnrichment, MemberLookup
from devportal_auth.service.errors import (
    CallbackTimeoutError,
    ProviderNotFoundError,
    RefreshTokenInvalidError,
)
from devportal_auth.service.github import GitHubClient
from devportal_auth.service.jwt_codec import DEFAULT_ISSUER, JWTCodec
from devportal_auth.storage.models import (
    AuthClaims,
    AuthHandlerResponse,
    RefreshTokenData,
    UserProfile,
    utcnow,
)
from devportal_auth.storage.refresh_tokens import RefreshTokenStore

logger = get_logger(__name__)

STATE_BYTES = 32
CALLBACK_PATH = "/api/auth/{provider}/handler/frame"


class AuthService:
    """OAuth2 login against GitHub-family providers, issuing our own JWT + refresh token.

    Flow: ``get_auth_url`` -> provider consent -> ``handle_callback`` (code
    exchange, profile fetch, member enrichment, token issuance) ->
    ``refresh_token`` on each renewal. The service holds no pending-login
    state; verifying the returned ``state`` is the HTTP layer's job.
    """

    def __init__(
        self,
        config: AuthConfig,
        member_lookup: Optional[MemberLookup] = None,
        *,
        issuer: str = DEFAULT_ISSUER,
        http_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_store: Optional[RefreshTokenStore] = None,
        codec: Optional[JWTCodec] = None,
    ) -> None:
        self.registry = ProviderRegistry(config)
        self.registry.validate()
        self.redirect_url = config.redirect_url.rstrip("/")
        self.codec = codec if codec is not None else JWTCodec(config.jwt_secret, issuer=issuer)
        self.enrichment = MemberEnrichment(member_lookup)
        self._tokens = token_store if token_store is not None else RefreshTokenStore()
        self._clients: Dict[ProviderKey, GitHubClient] = {
            key: GitHubClient(
                key.provider,
                self.registry.entry(key),
                timeout=http_timeout,
                transport=transport,
            )
            for key in self.registry.keys()
        }
        self.logger = logger
        self.logger.info(
            "auth_service_initialized",
            providers=[str(key) for key in self._clients],
            default_environment=self.registry.default_environment,
        )

    def generate_state(self) -> str:
        return secrets.token_urlsafe(STATE_BYTES)

    def callback_url(self, provider: str) -> str:
        return self.redirect_url + CALLBACK_PATH.format(provider=provider)

    def get_provider_client(self, provider: str, environment: Optional[str] = None) -> GitHubClient:
        key = self.registry.resolve(provider, environment)
        client = self._clients.get(key)
        if client is None:
            raise ProviderNotFoundError(f"client not found for provider {provider}")
        return client

    def get_auth_url(self, provider: str, state: str, environment: Optional[str] = None) -> str:
        client = self.get_provider_client(provider, environment)
        return client.authorization_url(self.callback_url(provider), state)

    async def handle_callback(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AuthHandlerResponse:
        """Complete a login from the provider's redirect.

        Nothing is stored unless every upstream step succeeds; the refresh
        token is written last.

        Raises:
            ProviderNotFoundError: unknown provider/environment.
            ExchangeError: the code could not be exchanged.
            CallbackTimeoutError: upstream calls overran ``timeout``.
            ProfileFetchError: the user API could not be read.
        """
        client = self.get_provider_client(provider, environment)
        try:
            access_token, profile = await asyncio.wait_for(
                self._fetch_identity(client, provider, code), timeout
            )
        except asyncio.TimeoutError as exc:
            self.logger.warning("oauth_callback_timeout", provider=provider, timeout=timeout)
            raise CallbackTimeoutError(
                "identity provider did not respond in time", detail={"provider": provider}
            ) from exc

        self.enrichment.enrich(profile)
        jwt_token = self.codec.issue(profile, provider)
        refresh_token = self._tokens.create(
            RefreshTokenData.new(profile, provider, access_token, now=utcnow())
        )
        self.logger.info(
            "oauth_login_success",
            provider=provider,
            environment=environment,
            user_id=profile.id,
            member_linked=profile.member_id is not None,
        )
        return AuthHandlerResponse(
            access_token=jwt_token,
            refresh_token=refresh_token,
            profile=profile,
        )

    async def _fetch_identity(
        self, client: GitHubClient, provider: str, code: str
    ) -> Tuple[str, UserProfile]:
        access_token = await client.exchange_code(code, self.callback_url(provider))
        profile = await client.get_user_profile(access_token)
        return access_token, profile

    def refresh_token(self, old_token: str) -> AuthHandlerResponse:
        """Rotate a refresh token and issue a new JWT for the same session.

        Raises:
            RefreshTokenInvalidError: unknown or already rotated token.
            RefreshTokenExpiredError: token outlived its TTL.
        """
        new_token, data = self._tokens.rotate(old_token)
        profile = data.profile()
        jwt_token = self.codec.issue(profile, data.provider)
        self.logger.info("refresh_token_rotated", provider=data.provider, user_id=data.user_id)
        return AuthHandlerResponse(
            access_token=jwt_token,
            refresh_token=new_token,
            profile=profile,
        )

    def validate_token(self, token: str) -> AuthClaims:
        return self.codec.verify(token)

    def find_member_id(self, email: str) -> Optional[str]:
        return self.enrichment.find_member_id(email)

    def get_upstream_access_token(self, claims: AuthClaims) -> str:
        """Return the provider access token held for this user's live session."""
        data = self._tokens.find_active(claims.user_id, claims.provider)
        if data is None:
            raise RefreshTokenInvalidError(
                f"no valid session found for user {claims.user_id} with provider {claims.provider}"
            )
        return data.access_token

    def logout(self, refresh_token: Optional[str] = None) -> bool:
        """End a session.

        Issued JWTs remain valid until they expire. When a refresh token is
        passed it is revoked; otherwise this is a no-op. Returns whether a
        token was revoked.
        """
        if not refresh_token:
            return False
        revoked = self._tokens.revoke(refresh_token)
        if revoked:
            self.logger.info("refresh_token_revoked")
        return revoked
