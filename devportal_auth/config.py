from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, NamedTuple, Optional

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from devportal_auth.logging import get_logger
from devportal_auth.service.errors import ConfigError, ProviderNotFoundError

logger = get_logger(__name__)

DEFAULT_REDIRECT_URL = "http://localhost:3000"

_PLACEHOLDER = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


class ProviderConfig(BaseModel):
    """One OAuth2 application registration.

    ``enterprise_base_url`` points the authorize, token and user API endpoints
    at a self-hosted instance instead of the public provider.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    client_id: str = ""
    client_secret: str = ""
    enterprise_base_url: Optional[str] = None

    @field_validator("enterprise_base_url")
    @classmethod
    def _strip_base_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None


class AuthConfig(BaseModel):
    """Validated auth configuration, immutable after load."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    jwt_secret: str = ""
    redirect_url: str = ""
    default_environment: Optional[str] = None
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    # environment -> provider -> registration
    environments: Dict[str, Dict[str, ProviderConfig]] = Field(default_factory=dict)

    @field_validator("default_environment")
    @classmethod
    def _blank_environment(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ProviderKey(NamedTuple):
    provider: str
    environment: Optional[str] = None

    def __str__(self) -> str:
        if self.environment:
            return f"{self.provider}:{self.environment}"
        return self.provider


class ProviderRegistry:
    """Lookup table of provider registrations keyed by (provider, environment)."""

    def __init__(self, config: AuthConfig) -> None:
        self.config = config
        table: Dict[ProviderKey, ProviderConfig] = {}
        for name, provider in config.providers.items():
            table[ProviderKey(name)] = provider
        for env, providers in config.environments.items():
            for name, provider in providers.items():
                table[ProviderKey(name, env)] = provider
        self._table = table

    @property
    def default_environment(self) -> Optional[str]:
        return self.config.default_environment

    def keys(self) -> list[ProviderKey]:
        return list(self._table)

    def provider_names(self) -> set[str]:
        return {key.provider for key in self._table}

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be served."""
        cfg = self.config
        if not cfg.jwt_secret:
            raise ConfigError("JWT secret is required")
        if not cfg.redirect_url:
            raise ConfigError("redirect URL is required")
        if not self._table:
            raise ConfigError("at least one provider must be configured")
        for env, providers in cfg.environments.items():
            if not providers:
                raise ConfigError(f"environment '{env}' must configure at least one provider")
        for key, provider in self._table.items():
            if not provider.client_id:
                raise ConfigError(f"client_id is required for provider '{key}'")
            if not provider.client_secret:
                raise ConfigError(f"client_secret is required for provider '{key}'")
        if cfg.default_environment and not cfg.environments.get(cfg.default_environment):
            raise ConfigError(
                f"default environment '{cfg.default_environment}' not found in any provider"
            )

    def resolve(self, name: str, environment: Optional[str] = None) -> ProviderKey:
        env = environment or self.default_environment
        if env and ProviderKey(name, env) in self._table:
            return ProviderKey(name, env)
        # an explicitly requested environment never falls back to the untagged entry
        if not environment and ProviderKey(name) in self._table:
            return ProviderKey(name)
        if env:
            raise ProviderNotFoundError(
                f"provider '{name}' not found for environment '{env}'",
                detail={"provider": name, "environment": env},
            )
        raise ProviderNotFoundError(f"provider '{name}' not found", detail={"provider": name})

    def get_provider(self, name: str, environment: Optional[str] = None) -> ProviderConfig:
        return self._table[self.resolve(name, environment)]

    def entry(self, key: ProviderKey) -> ProviderConfig:
        return self._table[key]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and ``.env``."""

    auth_config_path: Optional[str] = env_field(None, "AUTH_CONFIG_PATH")
    jwt_issuer: str = env_field("developer-portal-backend", "JWT_ISSUER")
    oauth_http_timeout_seconds: float = env_field(
        30.0,
        "OAUTH_HTTP_TIMEOUT_SECONDS",
        description="Per-request timeout for calls to the identity provider",
    )
    oauth_callback_timeout_seconds: Optional[float] = env_field(
        None,
        "OAUTH_CALLBACK_TIMEOUT_SECONDS",
        description="Deadline for the whole code exchange + profile fetch",
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


def _env_name(*parts: str) -> str:
    return "_".join(re.sub(r"[^A-Za-z0-9]+", "_", part).upper() for part in parts if part)


def _expand(value: Any, environ: Mapping[str, str]) -> Any:
    if not isinstance(value, str):
        return value
    match = _PLACEHOLDER.match(value.strip())
    if match and environ.get(match.group(1)):
        return environ[match.group(1)]
    return value


def _read_config_file(path: Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"error reading auth config file: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"error reading auth config file: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("auth config file must contain a mapping")
    return raw


def _normalize_providers(raw: dict) -> tuple[dict, dict]:
    """Split the file's provider section into untagged and per-environment entries.

    Accepts both ``providers.<name>.client_id`` and the nested
    ``providers.<name>.environments.<env>.client_id`` forms.
    """
    flat: dict[str, dict] = {}
    tagged: dict[str, dict[str, dict]] = {}
    for name, entry in (raw.get("providers") or {}).items():
        if not isinstance(entry, dict):
            raise ConfigError(f"provider '{name}' must be a mapping")
        nested = entry.get("environments")
        if nested is None:
            flat[name] = dict(entry)
            continue
        if not isinstance(nested, dict) or not nested:
            raise ConfigError(f"provider '{name}' must have at least one environment")
        for env, env_entry in nested.items():
            tagged.setdefault(env, {})[name] = dict(env_entry or {})
    for env, providers in (raw.get("environments") or {}).items():
        for name, entry in (providers or {}).items():
            tagged.setdefault(env, {})[name] = dict(entry or {})
    return flat, tagged


def _apply_credential_overrides(
    entry: dict, environ: Mapping[str, str], name: str, env: Optional[str] = None
) -> dict:
    for field_name in ("client_id", "client_secret"):
        override = environ.get(_env_name(name, field_name, env or ""))
        if override:
            entry[field_name] = override
        entry[field_name] = _expand(entry.get(field_name, ""), environ)
    return entry


def load_auth_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AuthConfig:
    """Load, override from the environment, and validate the auth configuration.

    Raises:
        ConfigError: if the file is unreadable or the result fails validation.
    """
    environ = os.environ if environ is None else environ
    raw: dict = {}
    if path:
        config_path = Path(path)
        if config_path.exists():
            raw = _read_config_file(config_path)
            logger.info("auth_config_file_loaded", path=str(config_path))
        else:
            logger.warning("auth_config_file_missing", path=str(config_path))

    flat, tagged = _normalize_providers(raw)
    for name, entry in flat.items():
        _apply_credential_overrides(entry, environ, name)
    for env, providers in tagged.items():
        for name, entry in providers.items():
            _apply_credential_overrides(entry, environ, name, env)

    redirect_url = environ.get("AUTH_REDIRECT_URL") or raw.get("redirect_url") or DEFAULT_REDIRECT_URL
    data = {
        "jwt_secret": environ.get("JWT_SECRET") or raw.get("jwt_secret") or "",
        "redirect_url": str(redirect_url).rstrip("/"),
        "default_environment": environ.get("AUTH_DEFAULT_ENVIRONMENT")
        or raw.get("default_environment"),
        "providers": flat,
        "environments": tagged,
    }
    try:
        config = AuthConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"error parsing auth config: {exc}") from exc

    registry = ProviderRegistry(config)
    registry.validate()
    logger.info(
        "auth_config_loaded",
        providers=[str(key) for key in registry.keys()],
        default_environment=config.default_environment,
    )
    return config
