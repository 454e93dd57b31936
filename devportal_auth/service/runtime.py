from __future__ import annotations

import threading
from typing import Optional

import httpx

from devportal_auth.config import AuthConfig, Settings, get_settings, load_auth_config, reset_settings_cache
from devportal_auth.logging import get_logger
from devportal_auth.service.auth import AuthService
from devportal_auth.service.enrichment import MemberLookup
from devportal_auth.storage.memory import MemoryMemberDirectory

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        auth_config: Optional[AuthConfig] = None,
        member_lookup: Optional[MemberLookup] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.auth_config = auth_config or load_auth_config(self.settings.auth_config_path)
        self.members = member_lookup or MemoryMemberDirectory()
        self.auth = AuthService(
            self.auth_config,
            self.members,
            issuer=self.settings.jwt_issuer,
            http_timeout=self.settings.oauth_http_timeout_seconds,
            transport=transport,
        )
        logger.info("runtime_initialized", test_mode=self.settings.test_mode)


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def set_runtime(runtime: Runtime) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def reset_runtime_for_tests() -> None:
    """Drop cached runtime and settings so tests start from a clean slate."""
    global _runtime
    with _runtime_lock:
        _runtime = None
    reset_settings_cache()
