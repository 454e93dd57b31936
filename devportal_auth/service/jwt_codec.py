from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Callable, Optional

from devportal_auth.logging import get_logger
from devportal_auth.service.errors import InvalidTokenError
from devportal_auth.storage.models import SESSION_LIFETIME, AuthClaims, UserProfile, utcnow

logger = get_logger(__name__)

DEFAULT_ISSUER = "developer-portal-backend"

# Only the HMAC family is accepted; anything else is rejected before the
# signature is looked at.
_HMAC_ALGORITHMS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}
_SIGNING_ALGORITHM = "HS256"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class JWTCodec:
    """Stateless HMAC signer/verifier for session credentials.

    Tokens are never extended; ``exp`` is always issuance time plus
    ``SESSION_LIFETIME``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = DEFAULT_ISSUER,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self._clock = clock or utcnow

    def _sign(self, signing_input: str, algorithm: str = _SIGNING_ALGORITHM) -> str:
        digest = _HMAC_ALGORITHMS[algorithm]
        return _encode_segment(hmac.new(self._secret, signing_input.encode(), digest).digest())

    def issue(self, profile: UserProfile, provider: str) -> str:
        now = int(self._clock().timestamp())
        claims = AuthClaims(
            user_id=profile.id,
            username=profile.username,
            email=profile.email or "",
            provider=provider,
            issuer=self.issuer,
            subject=str(profile.id),
            issued_at=now,
            not_before=now,
            expires_at=now + int(SESSION_LIFETIME.total_seconds()),
        )
        header = {"alg": _SIGNING_ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> AuthClaims:
        """Return the claims of a valid token.

        Raises:
            InvalidTokenError: malformed token, non-HMAC algorithm, bad
                signature, missing claims, or ``now`` past ``exp``.
        """
        if not isinstance(token, str):
            raise InvalidTokenError("token is malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("token is malformed") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token is malformed") from None
        algorithm = header.get("alg") if isinstance(header, dict) else None
        if algorithm not in _HMAC_ALGORITHMS:
            logger.warning("jwt_invalid_algorithm", alg=algorithm)
            raise InvalidTokenError(f"unexpected signing method: {algorithm}")

        signing_input = f"{header_b64}.{payload_b64}"
        expected = self._sign(signing_input, algorithm).encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            raise InvalidTokenError("signature is invalid")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token is malformed") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("token is malformed")

        claims = self._claims_from_payload(payload)
        now = self._clock().timestamp()
        if now > claims.expires_at:
            raise InvalidTokenError("token is expired")
        if now < claims.not_before:
            raise InvalidTokenError("token is not valid yet")
        return claims

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> AuthClaims:
        try:
            user_id = payload["user_id"]
            exp = payload["exp"]
            if isinstance(user_id, bool) or not isinstance(user_id, int):
                raise TypeError("user_id")
            if isinstance(exp, bool) or not isinstance(exp, (int, float)):
                raise TypeError("exp")
            iat = payload.get("iat", 0)
            return AuthClaims(
                user_id=user_id,
                username=str(payload.get("username", "")),
                email=str(payload.get("email", "")),
                provider=str(payload.get("provider", "")),
                issuer=str(payload.get("iss", "")),
                subject=str(payload.get("sub", "")),
                issued_at=int(iat),
                not_before=int(payload.get("nbf", iat)),
                expires_at=int(exp),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token claims are malformed") from None
