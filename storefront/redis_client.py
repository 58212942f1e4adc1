"""
Redis client wrapper with connection pooling, retry logic, and error handling.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, List, Set
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError
)

from storefront.config import Config
from storefront.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None
        self._connect()

    def _redis_url(self) -> str:
        scheme = "rediss" if Config.REDIS_USE_TLS else "redis"
        auth = f":{Config.REDIS_AUTH_TOKEN}@" if Config.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}"

    def _connect(self):
        """Initialize Redis connection pool"""
        try:
            options = dict(
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )
            if Config.REDIS_USE_TLS:
                # ElastiCache presents self-signed certificates
                options["ssl_cert_reqs"] = None

            self.pool = redis.ConnectionPool.from_url(self._redis_url(), **options)
            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            self.client.ping()

        except (ConnectionError, TimeoutError, AuthenticationError) as e:
            raise StoreUnavailableError(f"Failed to connect to Redis: {e}")

    def _retry_with_backoff(
        self,
        func: Callable,
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute function with exponential backoff retry.

        Args:
            func: Function to execute
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            StoreUnavailableError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise StoreUnavailableError(f"Redis operation failed after {max_retries} retries: {e}")

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                time.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

                try:
                    self._connect()
                except StoreUnavailableError as reconnect_error:
                    logger.warning(f"Redis reconnect attempt {attempt + 1} failed: {reconnect_error}")

            except RedisError as e:
                # Non-retryable errors
                raise StoreUnavailableError(f"Redis error: {e}")

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        def _get():
            return self.client.get(key)
        return self._retry_with_backoff(_get)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        """Set value in Redis with optional TTL"""
        def _set():
            return self.client.set(key, value, ex=ex)
        return self._retry_with_backoff(_set)

    def delete(self, *keys: str) -> int:
        """Delete one or more keys"""
        def _delete():
            return self.client.delete(*keys)
        return self._retry_with_backoff(_delete)

    def hget(self, key: str, field: str) -> Optional[str]:
        """Get field from hash"""
        def _hget():
            return self.client.hget(key, field)
        return self._retry_with_backoff(_hget)

    def hgetall(self, key: str) -> dict:
        """Get all fields from hash"""
        def _hgetall():
            return self.client.hgetall(key)
        return self._retry_with_backoff(_hgetall)

    def hmget(self, key: str, fields: List[str]) -> List[Optional[str]]:
        """Get several fields from hash"""
        def _hmget():
            return self.client.hmget(key, fields)
        return self._retry_with_backoff(_hmget)

    def sadd(self, key: str, *members: str) -> int:
        """Add members to set"""
        def _sadd():
            return self.client.sadd(key, *members)
        return self._retry_with_backoff(_sadd)

    def srem(self, key: str, *members: str) -> int:
        """Remove members from set"""
        def _srem():
            return self.client.srem(key, *members)
        return self._retry_with_backoff(_srem)

    def smembers(self, key: str) -> Set[str]:
        """Get all members of set"""
        def _smembers():
            return self.client.smembers(key)
        return self._retry_with_backoff(_smembers)

    def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Execute Lua script"""
        def _eval():
            return self.client.eval(script, num_keys, *keys_and_args)
        return self._retry_with_backoff(_eval)

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return self.client.ping()
        except RedisError:
            return False

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.disconnect()


# Global Redis client instance
_redis_client: Optional[RedisClient] = None

def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
