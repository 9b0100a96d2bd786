# app/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Pooled Redis client shared by pub/sub notifications, counters and queues."""

    def __init__(self, url: str | None = None, max_connections: int = 20):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                # Blocking list pops wait up to CONSUMER_POLL_TIMEOUT_SECONDS
                socket_timeout=max(10, settings.CONSUMER_POLL_TIMEOUT_SECONDS + 5),
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized successfully", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def publish(self, channel: str, message: str) -> bool:
        """Publish to a pub/sub channel. Returns False on failure."""
        try:
            await self._ensure_initialized()
            await self.client.publish(channel, message)
            return True
        except Exception as e:
            logger.error("Redis PUBLISH failed", channel=channel[:60], error=str(e))
            return False

    # Count a message once per window. A redelivered message returns the
    # count recorded on its first delivery instead of incrementing again.
    COUNT_ONCE_LUA_SCRIPT = """
    local counter_key = KEYS[1]
    local marker_key = KEYS[2]
    local window_seconds = tonumber(ARGV[1])
    local marker_ttl = tonumber(ARGV[2])

    local seen = redis.call('GET', marker_key)
    if seen then
        return tonumber(seen)
    end

    -- Window TTL is fixed when the counter is created
    redis.call('SET', counter_key, 0, 'NX', 'EX', window_seconds)
    local count = redis.call('INCR', counter_key)

    redis.call('SET', marker_key, count, 'EX', marker_ttl)
    return count
    """

    async def incr_in_window_once(
        self, counter_key: str, marker_key: str, window_s: int, marker_ttl_s: int
    ) -> int | None:
        """
        Increment a windowed counter unless `marker_key` was already counted.

        Returns the count attributed to the marker, or None when Redis is
        unreachable.
        """
        try:
            await self._ensure_initialized()
            result = await self.client.eval(
                self.COUNT_ONCE_LUA_SCRIPT,
                2,  # Number of keys
                counter_key,  # KEYS[1]
                marker_key,  # KEYS[2]
                window_s,  # ARGV[1]
                marker_ttl_s,  # ARGV[2]
            )
            return int(result) if result is not None else None
        except Exception as e:
            logger.error("Redis windowed count failed", key=counter_key[:60], error=str(e))
            return None

    async def add_to_set(self, key: str, value: str) -> bool:
        try:
            await self._ensure_initialized()
            await self.client.sadd(key, value)
            return True
        except Exception as e:
            logger.error("Redis SADD failed", key=key[:60], error=str(e))
            return False

    async def set_members(self, key: str) -> set[str] | None:
        """Return set members, or None when Redis is unreachable."""
        try:
            await self._ensure_initialized()
            return set(await self.client.smembers(key))
        except Exception as e:
            logger.error("Redis SMEMBERS failed", key=key[:60], error=str(e))
            return None

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list (used as a queue)."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except Exception as e:
            logger.error(
                "Redis LIST push failed", key=key[:60], value_preview=value[:30], error=str(e)
            )
            return False

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        """
        Pop a value from a list and push to an in-flight list (acked queue).

        Uses BRPOPLPUSH for blocking behavior to avoid losing jobs on worker crash.
        Returns None when the poll times out; raises ConnectionError when Redis
        cannot be reached, so callers can tell an empty queue from an outage.
        """
        try:
            await self._ensure_initialized()
            if timeout > 0:
                payload = await self.client.brpoplpush(source_key, inflight_key, timeout=timeout)
            else:
                payload = await self.client.rpoplpush(source_key, inflight_key)
            return payload
        except Exception as e:
            logger.error(
                "Redis LIST inflight pop failed",
                source_key=source_key[:60],
                inflight_key=inflight_key[:60],
                error=str(e),
            )
            raise ConnectionError("Redis inflight pop failed") from e

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        """Remove a processed item from the in-flight list."""
        try:
            await self._ensure_initialized()
            removed = await self.client.lrem(inflight_key, 1, value)
            return removed > 0
        except Exception as e:
            logger.error(
                "Redis inflight ack failed",
                inflight_key=inflight_key[:60],
                value_preview=value[:30],
                error=str(e),
            )
            return False

    async def requeue_from_inflight(
        self, inflight_key: str, destination_key: str, value: str
    ) -> bool:
        """Move an item from the in-flight list back to the main queue."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 1, value)
                pipe.rpush(destination_key, value)
                results = await pipe.execute()
            return bool(results and results[-1] is not None)
        except Exception as e:
            logger.error(
                "Redis inflight requeue failed",
                inflight_key=inflight_key[:60],
                destination_key=destination_key[:60],
                value_preview=value[:30],
                error=str(e),
            )
            return False

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Return a range of values from a list."""
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis LRANGE failed", key=key[:60], error=str(e))
            return []


# Global instance
redis_client = RedisClient()
