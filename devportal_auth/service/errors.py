from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that the API envelope exposes to clients:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigError(ServerError):
    """Auth configuration is invalid or incomplete. Fatal at startup."""
    error_code = "config_error"


class ProviderNotFoundError(NotFoundError):
    """No registration exists for the requested provider/environment."""
    error_code = "provider_not_found"


class ExchangeError(AuthenticationError):
    """The provider rejected or failed the authorization-code exchange."""
    error_code = "oauth_exchange_failed"


class CallbackTimeoutError(ExchangeError):
    """The callback's upstream calls did not finish before the deadline."""
    status_code = 504
    error_code = "upstream_timeout"


class ProfileFetchError(AuthenticationError):
    """The provider's user API could not be read with the exchanged token."""
    error_code = "profile_fetch_failed"


class InvalidTokenError(AuthenticationError):
    """JWT is malformed, badly signed, uses a non-HMAC algorithm, or expired."""
    error_code = "invalid_token"


class RefreshTokenInvalidError(AuthenticationError):
    """Refresh token is unknown or was already rotated/revoked."""
    error_code = "refresh_token_invalid"


class RefreshTokenExpiredError(AuthenticationError):
    """Refresh token outlived its TTL; the entry has been purged."""
    error_code = "refresh_token_expired"


class MemberNotFoundError(NotFoundError):
    """Member directory has no record for the given email."""
    error_code = "member_not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "ConfigError",
    "ProviderNotFoundError",
    "ExchangeError",
    "CallbackTimeoutError",
    "ProfileFetchError",
    "InvalidTokenError",
    "RefreshTokenInvalidError",
    "RefreshTokenExpiredError",
    "MemberNotFoundError",
]
