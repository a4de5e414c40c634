"""Access tokens shared by concurrent provider calls."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

logger = logging.getLogger(__name__)

# Refresh this long before the vendor-reported expiry
DEFAULT_LEEWAY = timedelta(seconds=60)


@dataclass(frozen=True)
class Token:
    """An OAuth access token."""

    access_token: str
    expires_at: datetime | None = None  # None means it never expires

    def is_valid(self, leeway: timedelta = DEFAULT_LEEWAY) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return datetime.now(timezone.utc) + leeway < self.expires_at

    @classmethod
    def expiring_in(cls, access_token: str, seconds: int | float) -> "Token":
        return cls(access_token, datetime.now(timezone.utc) + timedelta(seconds=seconds))


class TokenStore:
    """Cache of access tokens keyed by (company, provider).

    Each key has its own lock so that when a token expires under concurrent
    use, exactly one caller hits the token endpoint and the rest wait for it.
    """

    def __init__(self, leeway: timedelta = DEFAULT_LEEWAY):
        self.leeway = leeway
        self._tokens: dict[tuple[str, str], Token] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def get(self, company: str, provider: str, fetch: Callable[[], Token]) -> str:
        """Return a valid access token, fetching a new one if needed.

        Args:
            company: Company name.
            provider: Provider tag.
            fetch: Called (at most once per expiry) to obtain a fresh token.

        Returns:
            The access token string.
        """
        key = (company, provider)
        token = self._tokens.get(key)
        if token and token.is_valid(self.leeway):
            return token.access_token

        with self._lock_for(key):
            # Another thread may have refreshed while we waited
            token = self._tokens.get(key)
            if token and token.is_valid(self.leeway):
                return token.access_token

            logger.info(f"Refreshing {provider} access token for {company}")
            token = fetch()
            self._tokens[key] = token
            return token.access_token

    def invalidate(self, company: str, provider: str, access_token: str | None = None) -> None:
        """Drop a cached token (e.g. after the vendor rejected it).

        If ``access_token`` is given, only drop the cache when it still holds
        that token, so a token refreshed by another thread is kept.
        """
        key = (company, provider)
        with self._lock_for(key):
            current = self._tokens.get(key)
            if current is None:
                return
            if access_token is None or current.access_token == access_token:
                del self._tokens[key]
