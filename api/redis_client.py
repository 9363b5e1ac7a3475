"""
Redis client with connection pooling and a circuit breaker.

Provides:
- One async connection pool per process, passed explicitly to the queue,
  the status store and the worker pool
- Circuit breaker pattern to prevent cascade failures
- Cached health checks for readiness probes
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisUnavailableError(RuntimeError):
    """Raised when an operation needs Redis but the connection is down or the circuit is open."""


class RedisClient:
    """Redis connection with health monitoring."""

    def __init__(self, url: str = REDIS_URL, client: Optional[Redis] = None) -> None:
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = client
        self._healthy: bool = client is not None
        self._last_health_check: Optional[datetime] = None
        self._consecutive_failures: int = 0
        self._circuit_open: bool = False
        self._circuit_open_until: Optional[datetime] = None

    async def connect(self) -> bool:
        """
        Create the connection pool and verify it with a PING.

        Returns:
            True if Redis answered, False otherwise (the client stays usable
            and recovers through health checks)
        """
        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._record_failure()
            return False

        self._record_success()
        self._last_health_check = datetime.now(timezone.utc)
        logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        return True

    @property
    def is_available(self) -> bool:
        """Check if Redis is currently available (respects circuit breaker)."""
        if self._client is None:
            return False

        if self._circuit_open:
            now = datetime.now(timezone.utc)
            if self._circuit_open_until and now < self._circuit_open_until:
                return False
            # Half-open: let the next operation through
            self._circuit_open = False
            logger.info("Redis circuit breaker closing, attempting reconnection")
            return True

        return self._healthy or self._consecutive_failures < 3

    def require(self) -> Redis:
        """
        Get the Redis client for an operation.

        Raises:
            RedisUnavailableError: If the client is not connected or the circuit is open
        """
        if not self.is_available:
            raise RedisUnavailableError("Redis is unavailable")
        return self._client

    async def execute(self, redis_fn: Callable[[Redis], Awaitable[T]]) -> T:
        """
        Run a Redis operation and feed the outcome to the circuit breaker.

        Args:
            redis_fn: Async function taking the Redis client

        Raises:
            RedisUnavailableError: If Redis is down or the operation failed
        """
        client = self.require()
        try:
            result = await redis_fn(client)
        except (RedisError, OSError) as e:
            self._record_failure()
            raise RedisUnavailableError(f"Redis operation failed: {e}") from e
        self._record_success()
        return result

    def _record_failure(self) -> None:
        """Record a failure and potentially open circuit breaker."""
        self._consecutive_failures += 1
        self._healthy = False

        if self._consecutive_failures >= 3:
            self._circuit_open = True
            # Exponential backoff: 30s, 60s, 120s, 240s, max 300s
            backoff = min(300, 30 * (2 ** (self._consecutive_failures - 3)))
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )

    def _record_success(self) -> None:
        """Record a successful operation."""
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._healthy = True
        self._circuit_open = False
        self._circuit_open_until = None

    async def health_check(self, force: bool = False) -> bool:
        """
        Perform health check on Redis connection.

        Args:
            force: Ping even if a check ran within REDIS_HEALTH_CHECK_INTERVAL

        Returns:
            True if healthy, False otherwise
        """
        if not self._client:
            return False

        # Skip if recently checked
        if self._last_health_check and not force:
            elapsed = (datetime.now(timezone.utc) - self._last_health_check).total_seconds()
            if elapsed < REDIS_HEALTH_CHECK_INTERVAL:
                return self._healthy

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            self._record_failure()
            return False

        self._record_success()
        self._last_health_check = datetime.now(timezone.utc)
        return True

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                # Ignore close errors during shutdown
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool:
            try:
                await self._pool.disconnect()
            except (RedisError, OSError) as e:
                # Ignore disconnect errors during shutdown
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False
