"""
Fixed-window rate limiting for license validation endpoints.

Validation endpoints are reachable without a user session, so each key
(credential or client address) gets a bounded number of attempts per
window.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from entitlements.common.exceptions import PersistenceError
from entitlements.config.settings import RedisConfig
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)


class ValidationRateLimiter(ABC):
    """Counts hits per key within a fixed window."""

    def __init__(self, limit: int, window_seconds: int = 60):
        self.limit = limit
        self.window_seconds = window_seconds

    @abstractmethod
    async def hit(self, key: str) -> bool:
        """Record one attempt; False when ``key`` is over its budget."""

    async def close(self) -> None:
        return None


class InMemoryRateLimiter(ValidationRateLimiter):
    """Single-process limiter."""

    def __init__(self, limit: int, window_seconds: int = 60):
        super().__init__(limit, window_seconds)
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> bool:
        window = int(time.time()) // self.window_seconds
        async with self._lock:
            current_window, count = self._windows.get(key, (window, 0))
            if current_window != window:
                count = 0
            count += 1
            self._windows[key] = (window, count)
        return count <= self.limit


class RedisRateLimiter(ValidationRateLimiter):
    """Limiter shared across workers through Redis ``INCR`` + ``EXPIRE``."""

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        client: Optional[redis.Redis] = None,
        config: Optional[RedisConfig] = None,
        key_prefix: str = "entitlements:ratelimit"
    ):
        super().__init__(limit, window_seconds)
        if client is None:
            config = config or RedisConfig()
            client = redis.Redis(
                host=config.host,
                port=config.port,
                db=config.db,
                password=config.password,
                max_connections=config.max_connections,
                socket_timeout=config.socket_timeout,
                socket_connect_timeout=config.socket_timeout,
                decode_responses=True
            )
        self._redis = client
        self.key_prefix = key_prefix

    async def hit(self, key: str) -> bool:
        window = int(time.time()) // self.window_seconds
        redis_key = f"{self.key_prefix}:{key}:{window}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, self.window_seconds)
                count, _ = await pipe.execute()
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise PersistenceError("rate_limit", cause=e)

        if count > self.limit:
            logger.warning(f"Rate limit exceeded for {key} ({count}/{self.limit})")
            return False
        return True

    async def close(self) -> None:
        await self._redis.aclose()
