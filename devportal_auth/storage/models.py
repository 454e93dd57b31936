from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

SESSION_LIFETIME = timedelta(hours=1)
REFRESH_TOKEN_LIFETIME = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserProfile:
    """Snapshot of the external identity, optionally linked to a member record."""

    id: int
    username: str
    email: str = ""
    name: str = ""
    avatar_url: str = ""
    member_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "avatarUrl": self.avatar_url,
        }
        if self.member_id is not None:
            data["memberId"] = self.member_id
        return data


@dataclass(frozen=True)
class AuthClaims:
    user_id: int
    username: str
    email: str
    provider: str
    issuer: str
    subject: str
    issued_at: int
    not_before: int
    expires_at: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "email": self.email,
            "provider": self.provider,
            "iss": self.issuer,
            "sub": self.subject,
            "iat": self.issued_at,
            "nbf": self.not_before,
            "exp": self.expires_at,
        }


@dataclass
class RefreshTokenData:
    user_id: int
    username: str
    email: str
    provider: str
    # upstream OAuth access token, kept for API calls on the user's behalf
    access_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    member_id: Optional[str] = None
    name: str = ""
    avatar_url: str = ""

    @classmethod
    def new(
        cls,
        profile: UserProfile,
        provider: str,
        access_token: str,
        *,
        now: Optional[datetime] = None,
        ttl: timedelta = REFRESH_TOKEN_LIFETIME,
    ) -> "RefreshTokenData":
        now = now or utcnow()
        return cls(
            user_id=profile.id,
            username=profile.username,
            email=profile.email,
            provider=provider,
            access_token=access_token,
            expires_at=now + ttl,
            created_at=now,
            member_id=profile.member_id,
            name=profile.name,
            avatar_url=profile.avatar_url,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def renewed(self, now: datetime, ttl: timedelta = REFRESH_TOKEN_LIFETIME) -> "RefreshTokenData":
        return replace(self, created_at=now, expires_at=now + ttl)

    def profile(self) -> UserProfile:
        return UserProfile(
            id=self.user_id,
            username=self.username,
            email=self.email,
            name=self.name,
            avatar_url=self.avatar_url,
            member_id=self.member_id,
        )


@dataclass
class AuthHandlerResponse:
    access_token: str
    refresh_token: str
    profile: UserProfile
    token_type: str = "Bearer"
    expires_in: int = int(SESSION_LIFETIME.total_seconds())
