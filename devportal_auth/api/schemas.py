from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from devportal_auth.storage.models import AuthClaims, AuthHandlerResponse, UserProfile


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: Literal["ok", "error"]
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProfileResponse(_CamelModel):
    id: int
    username: str
    email: str = ""
    name: str = ""
    avatar_url: str = ""
    member_id: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            username=profile.username,
            email=profile.email,
            name=profile.name,
            avatar_url=profile.avatar_url,
            member_id=profile.member_id,
        )


class AuthTokenResponse(_CamelModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    profile: ProfileResponse

    @classmethod
    def from_result(cls, result: AuthHandlerResponse) -> "AuthTokenResponse":
        return cls(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            refresh_token=result.refresh_token,
            profile=ProfileResponse.from_profile(result.profile),
        )


class ClaimsResponse(BaseModel):
    user_id: int
    username: str
    email: str
    provider: str
    iss: str
    sub: str
    iat: int
    nbf: int
    exp: int

    @classmethod
    def from_claims(cls, claims: AuthClaims) -> "ClaimsResponse":
        return cls(**claims.to_payload())


class ValidateResponse(BaseModel):
    valid: bool
    claims: ClaimsResponse


class TokenRefreshRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
