"""
Shared, TTL-bounded cache for OAuth bearer tokens.

Tokens are stored per key (the provider name) and treated as expired a
safety margin before the provider's stated expiry. A miss is single-flight:
the first caller fetches while concurrent callers for the same key wait on
the same lock and then read the freshly cached token.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("payment_integration.token_cache")

TokenFetcher = Callable[[], Awaitable[tuple[str, float]]]


@dataclass
class CachedToken:
    value: str
    expires_at: float  # clock() reading after which the token must not be used


class TokenCache:
    def __init__(self, margin_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._margin = margin_seconds
        self._clock = clock
        self._tokens: dict[str, CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, key: str) -> Optional[str]:
        token = self._tokens.get(key)
        if token and self._clock() < token.expires_at:
            return token.value
        return None

    async def get(self, key: str, fetch: TokenFetcher) -> str:
        """
        Return a valid token for ``key``, fetching one if needed.

        Args:
            key: Cache key, normally the provider name.
            fetch: Coroutine function returning (token, expires_in seconds).
        """
        token = self._fresh(key)
        if token:
            return token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have filled the cache while we waited.
            token = self._fresh(key)
            if token:
                return token

            value, expires_in = await fetch()
            ttl = max(float(expires_in) - self._margin, 0.0)
            self._tokens[key] = CachedToken(value=value, expires_at=self._clock() + ttl)
            logger.info("Fetched %s access token (usable for %.0fs)", key, ttl)
            return value

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)
