from __future__ import annotations

import hmac
from typing import Callable, Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, Path, Query, Response
from fastapi.responses import RedirectResponse

from devportal_auth.api.schemas import (
    AuthTokenResponse,
    ClaimsResponse,
    Envelope,
    LogoutRequest,
    TokenRefreshRequest,
    ValidateResponse,
)
from devportal_auth.logging import get_logger
from devportal_auth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    ValidationError,
)
from devportal_auth.service.runtime import get_runtime
from devportal_auth.storage.models import (
    REFRESH_TOKEN_LIFETIME,
    SESSION_LIFETIME,
    AuthClaims,
    AuthHandlerResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")

STATE_COOKIE = "oauth_state"
STATE_COOKIE_MAX_AGE = 600
AUTH_COOKIE = "auth_token"
REFRESH_COOKIE = "refresh_token"


def split_state(state: str) -> tuple[str, Optional[str]]:
    """Separate the random state from an optional ``:env`` tag."""
    raw, sep, env = state.partition(":")
    return raw, (env or None) if sep else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_claims(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthClaims]:
    token = _extract_bearer(authorization)
    if not token:
        return None
    try:
        return get_runtime().auth.validate_token(token)
    except InvalidTokenError:
        return None


async def get_claims(authorization: Optional[str] = Header(None)) -> AuthClaims:
    if not authorization:
        raise AuthenticationError("authorization header is required")
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("invalid authorization header format")
    return get_runtime().auth.validate_token(token)


def require_provider(*allowed: str) -> Callable:
    """Dependency factory restricting a route to sessions from given providers.

    Exported for resource routers mounted next to this one, e.g.
    ``Depends(require_provider("githubtools"))`` on repository endpoints.
    """

    async def _check(claims: AuthClaims = Depends(get_claims)) -> AuthClaims:
        if claims.provider not in allowed:
            raise ForbiddenError("provider not allowed for this resource")
        return claims

    return _check


def _apply_session_cookies(response: Response, result: AuthHandlerResponse) -> None:
    secure = get_runtime().settings.cookie_secure
    response.set_cookie(
        AUTH_COOKIE,
        result.access_token,
        max_age=int(SESSION_LIFETIME.total_seconds()),
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        max_age=int(REFRESH_TOKEN_LIFETIME.total_seconds()),
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )


def _token_envelope(result: AuthHandlerResponse) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthTokenResponse.from_result(result).model_dump(by_alias=True),
    )


@router.get("/{provider}/start", tags=["auth"])
async def auth_start(
    provider: str = Path(..., max_length=64),
    env: Optional[str] = Query(None, max_length=64),
):
    """Redirect the browser to the provider's consent page.

    The random state is kept in an httpOnly cookie; the value sent to the
    provider carries the requested environment as a ``:env`` suffix.
    """
    runtime = get_runtime()
    state = runtime.auth.generate_state()
    state_with_env = f"{state}:{env}" if env else state
    auth_url = runtime.auth.get_auth_url(provider, state_with_env, environment=env)
    response = RedirectResponse(auth_url, status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.get("/{provider}/handler/frame", response_model=Envelope, tags=["auth"])
async def auth_handler_frame(
    response: Response,
    provider: str = Path(..., max_length=64),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
    env: Optional[str] = Query(None, max_length=64),
    oauth_state: Optional[str] = Cookie(None),
):
    """Finish the login after the provider redirects back."""
    if error:
        logger.warning("oauth_provider_error", provider=provider, reason=error)
        raise AuthenticationError(
            f"{error}: {error_description or ''}".strip(),
            error_code="oauth_error",
            detail={"provider": provider},
        )
    if not code:
        raise ValidationError("authorization code is required")
    if not state:
        raise ValidationError("state parameter is required")

    raw_state, state_env = split_state(state)
    if not oauth_state or not hmac.compare_digest(
        raw_state.encode("utf-8", "surrogatepass"), oauth_state.encode("utf-8", "surrogatepass")
    ):
        logger.warning("oauth_state_mismatch", provider=provider)
        raise ForbiddenError("state parameter does not match")

    runtime = get_runtime()
    result = await runtime.auth.handle_callback(
        provider,
        code,
        raw_state,
        environment=env or state_env,
        timeout=runtime.settings.oauth_callback_timeout_seconds,
    )
    _apply_session_cookies(response, result)
    response.delete_cookie(STATE_COOKIE, path="/")
    return _token_envelope(result)


@router.post("/{provider}/refresh", response_model=Envelope, tags=["auth"])
async def auth_refresh(
    response: Response,
    provider: str = Path(..., max_length=64),
    body: Optional[TokenRefreshRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token and issue a new session JWT."""
    runtime = get_runtime()
    runtime.auth.registry.resolve(provider)
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise AuthenticationError("no valid session found, please authenticate first")
    result = runtime.auth.refresh_token(token)
    _apply_session_cookies(response, result)
    return _token_envelope(result)


@router.post("/{provider}/logout", response_model=Envelope, tags=["auth"])
async def auth_logout(
    response: Response,
    provider: str = Path(..., max_length=64),
    body: Optional[LogoutRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    claims: Optional[AuthClaims] = Depends(get_optional_claims),
):
    runtime = get_runtime()
    runtime.auth.registry.resolve(provider)
    token = (body.refresh_token if body else None) or refresh_cookie
    revoked = runtime.auth.logout(token)
    logger.info(
        "logout",
        provider=provider,
        user_id=claims.user_id if claims else None,
        revoked=revoked,
    )
    response.delete_cookie(AUTH_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")
    return Envelope(status="ok", data={"message": "Logged out successfully", "revoked": revoked})


@router.get("/validate", response_model=Envelope, tags=["auth"])
async def auth_validate(claims: AuthClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=ValidateResponse(valid=True, claims=ClaimsResponse.from_claims(claims)).model_dump(),
    )
