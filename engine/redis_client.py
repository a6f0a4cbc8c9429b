"""
Redis client with connection pooling and graceful fallback.

Provides:
- Async connection pool for lifecycle event publishing
- Circuit breaker pattern so a dead Redis never slows down job processing
- Graceful degradation when Redis is not configured or unavailable
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import REDIS_POOL_SIZE, REDIS_SOCKET_CONNECT_TIMEOUT, REDIS_SOCKET_TIMEOUT, REDIS_URL
from engine.metrics import REDIS_CIRCUIT_BREAKER_STATE, REDIS_OPERATIONS_TOTAL

logger = logging.getLogger(__name__)

CIRCUIT_FAILURE_THRESHOLD = 3


class RedisClient:
    """Redis connection owned by whoever publishes events."""

    def __init__(self, url: str = REDIS_URL) -> None:
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._consecutive_failures: int = 0
        self._circuit_open: bool = False
        self._circuit_open_until: Optional[datetime] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    async def connect(self) -> None:
        """Create the pool and ping once. A failed ping counts toward the circuit breaker."""
        if not self.url:
            logger.info("Redis URL not configured, event publishing disabled")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._record_failure()

    @property
    def is_available(self) -> bool:
        """Check if Redis is currently usable (respects circuit breaker)."""
        if not self.url or self._client is None:
            return False

        if self._circuit_open:
            if self._circuit_open_until and datetime.now(timezone.utc) < self._circuit_open_until:
                return False
            self._circuit_open = False
            logger.info("Redis circuit breaker closing, attempting reconnection")
            REDIS_CIRCUIT_BREAKER_STATE.set(0)

        return True

    async def publish(self, channel: str, payload: str) -> bool:
        """Publish ``payload`` on ``channel``. Returns False instead of raising."""
        if not self.is_available:
            return False
        try:
            await self._client.publish(channel, payload)
        except RedisError as e:
            logger.warning(f"Redis publish to {channel} failed: {e}")
            REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="failed").inc()
            self._record_failure()
            return False
        self._record_success()
        REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="success").inc()
        return True

    def _record_failure(self) -> None:
        self._consecutive_failures += 1

        if self._consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            self._circuit_open = True
            REDIS_CIRCUIT_BREAKER_STATE.set(1)
            # Exponential backoff: 30s, 60s, 120s, 240s, max 300s
            backoff = min(300, 30 * (2 ** (self._consecutive_failures - CIRCUIT_FAILURE_THRESHOLD)))
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )

    def _record_success(self) -> None:
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._circuit_open = False
        self._circuit_open_until = None
        REDIS_CIRCUIT_BREAKER_STATE.set(0)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
