from __future__ import annotations

import contextlib
import secrets
import threading
from datetime import datetime
from typing import Callable, Dict, Iterator, Optional, Tuple

from devportal_auth.logging import get_logger
from devportal_auth.service.errors import RefreshTokenExpiredError, RefreshTokenInvalidError
from devportal_auth.storage.models import REFRESH_TOKEN_LIFETIME, RefreshTokenData, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64


class ReadWriteLock:
    """Many readers or one writer. Writers waiting block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


class RefreshTokenStore:
    """Process-local registry of opaque refresh tokens.

    Expired entries are only evicted when an operation touches them. The map
    lives in this process, so a multi-instance deployment needs a shared
    keyed store with the same create/lookup/rotate contract.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._tokens: Dict[str, RefreshTokenData] = {}
        self._lock = ReadWriteLock()
        self._clock = clock or utcnow

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        with self._lock.read():
            return token in self._tokens

    def create(self, data: RefreshTokenData) -> str:
        token = generate_refresh_token()
        with self._lock.write():
            self._tokens[token] = data
        return token

    def lookup(self, token: str) -> RefreshTokenData:
        with self._lock.read():
            data = self._tokens.get(token)
        if data is None:
            raise RefreshTokenInvalidError("invalid refresh token")
        if data.is_expired(self._clock()):
            with self._lock.write():
                if self._tokens.get(token) is data:
                    del self._tokens[token]
            raise RefreshTokenExpiredError("refresh token has expired")
        return data

    def rotate(self, old_token: str) -> Tuple[str, RefreshTokenData]:
        """Replace ``old_token`` with a fresh token carrying the same session.

        The lookup, delete and insert happen in one write critical section, so
        of two concurrent rotations of the same token only one can succeed.
        """
        with self._lock.write():
            data = self._tokens.get(old_token)
            if data is None:
                raise RefreshTokenInvalidError("invalid refresh token")
            now = self._clock()
            if data.is_expired(now):
                del self._tokens[old_token]
                raise RefreshTokenExpiredError("refresh token has expired")
            del self._tokens[old_token]
            new_token = generate_refresh_token()
            renewed = data.renewed(now, REFRESH_TOKEN_LIFETIME)
            self._tokens[new_token] = renewed
        logger.debug("refresh_token_rotated", user_id=renewed.user_id, provider=renewed.provider)
        return new_token, renewed

    def revoke(self, token: str) -> bool:
        with self._lock.write():
            return self._tokens.pop(token, None) is not None

    def find_active(self, user_id: int, provider: str) -> Optional[RefreshTokenData]:
        now = self._clock()
        with self._lock.read():
            for data in self._tokens.values():
                if data.user_id == user_id and data.provider == provider and not data.is_expired(now):
                    return data
        return None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock.write():
            expired = [token for token, data in self._tokens.items() if data.is_expired(now)]
            for token in expired:
                del self._tokens[token]
        if expired:
            logger.debug("refresh_token_purge", purged=len(expired))
        return len(expired)
