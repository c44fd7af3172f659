"""
Replay guard.

A nonce is accepted at most once while it is remembered. Stores are bounded:
entries expire after their TTL, and a full in-memory store refuses new nonces
rather than forget a live one.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable

from utils.redis_wrapper import redis_op

logger = logging.getLogger(__name__)


class NonceStoreFull(Exception):
    """Every remembered nonce is still live and the store is at capacity."""


class NonceStore:
    """Interface: ``check_and_add`` returns True the first time a nonce is seen."""

    async def check_and_add(self, nonce: str, ttl_seconds: float) -> bool:
        raise NotImplementedError

    async def close(self):
        return None


class InMemoryNonceStore(NonceStore):
    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._entries: "OrderedDict[str, float]" = OrderedDict()  # nonce -> expires_at
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        self.refused = 0

    def __len__(self):
        return len(self._entries)

    def _sweep(self, now: float):
        # insertion order is expiry order while every nonce shares one TTL
        while self._entries:
            nonce, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[nonce]

    async def check_and_add(self, nonce: str, ttl_seconds: float) -> bool:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            expires_at = self._entries.get(nonce)
            if expires_at is not None:
                if expires_at > now:
                    return False
                del self._entries[nonce]
            if len(self._entries) >= self._max_entries:
                self.refused += 1
                raise NonceStoreFull("%d live nonces remembered" % len(self._entries))
            self._entries[nonce] = now + ttl_seconds
            return True


class RedisNonceStore(NonceStore):
    """``SET key 1 NX EX ttl``; Redis expires the keys."""

    def __init__(self, url: str, prefix: str = "omega:nonce:", client=None):
        self._url = url
        self._prefix = prefix
        self._redis = client
        self._redis_circuit_open_until = 0

    async def _ensure_redis(self):
        if self._redis is not None:
            return
        try:
            import redis.asyncio as aioredis

            client = aioredis.from_url(self._url)
            await client.ping()
            self._redis = client
        except Exception:
            logger.exception("redis nonce store could not connect to %s", self._url)
            self._redis = None

    async def check_and_add(self, nonce: str, ttl_seconds: float) -> bool:
        key = self._prefix + nonce
        res = await redis_op(self, lambda r, k, ttl: r.set(k, "1", ex=ttl, nx=True), key, max(1, int(ttl_seconds)))
        return bool(res.get("value"))

    async def close(self):
        if self._redis is not None:
            await self._redis.close()
            self._redis = None


def build_nonce_store(settings) -> NonceStore:
    if settings.REDIS_NONCE_ENABLED:
        return RedisNonceStore(settings.REDIS_URL, prefix=settings.REDIS_NONCE_PREFIX)
    return InMemoryNonceStore(max_entries=settings.NONCE_MAX_ENTRIES)
