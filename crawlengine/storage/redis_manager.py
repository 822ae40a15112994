"""
Redis connection management for the shared duplicate store.
"""

import logging
import time
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..utils.config import RedisConfig

MAX_RECONNECT_DELAY = 30.0
RECONNECT_DELAY_STEP = 5.0


class RedisManager:
    """
    Owns one Redis client and tracks whether it is reachable.

    ``get_client`` never raises: while Redis is down it returns None and
    callers fall back to their fail-open behavior. Reconnects are attempted
    lazily with a growing cooldown. After ``max_retries`` consecutive failed
    reconnects (or the first failure when ``retry_on_failure`` is off) the
    manager gives up and stays unavailable until closed.
    """

    def __init__(self, config: RedisConfig, client: Optional[redis.Redis] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._client: Optional[redis.Redis] = client
        self._connected = False
        self._reconnect_attempts = 0
        self._next_attempt_at = 0.0
        self._gave_up = False
        self._closed = False

    def _build_client(self) -> redis.Redis:
        return redis.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.db,
            password=self.config.password,
            ssl=self.config.ssl,
            socket_connect_timeout=self.config.connection_timeout,
            socket_timeout=self.config.operation_timeout,
            max_connections=self.config.max_connections,
            decode_responses=False
        )

    async def get_client(self) -> Optional[redis.Redis]:
        """Return a connected client, or None when Redis is unavailable."""
        if self._closed or self._gave_up:
            return None
        if self._connected:
            return self._client
        if time.monotonic() < self._next_attempt_at:
            return None
        await self._connect()
        return self._client if self._connected else None

    async def _connect(self):
        try:
            if self._client is None:
                self._client = self._build_client()
            await self._client.ping()
            self._connected = True
            self._reconnect_attempts = 0
            self._next_attempt_at = 0.0
            self.logger.info(f"Redis connected: {self.connection_info}")
        except (RedisError, OSError) as e:
            self._connected = False
            self._reconnect_attempts += 1
            self.logger.error(f"Failed to connect to Redis at {self.connection_info}: {e}")
            if not self.config.retry_on_failure or self._reconnect_attempts > self.config.max_retries:
                self._gave_up = True
                self.logger.warning(
                    f"Giving up on Redis after {self._reconnect_attempts} failed connects, "
                    "continuing without it"
                )
                return
            delay = min(RECONNECT_DELAY_STEP * self._reconnect_attempts, MAX_RECONNECT_DELAY)
            self._next_attempt_at = time.monotonic() + delay

    def mark_unavailable(self, error: Exception):
        """Record a failed operation so the next call reconnects."""
        if self._connected:
            self.logger.warning(f"Redis became unavailable: {error}")
        self._connected = False
        self._next_attempt_at = time.monotonic() + RECONNECT_DELAY_STEP

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def connection_info(self) -> str:
        return f"{self.config.host}:{self.config.port}/{self.config.db}"

    async def health_check(self) -> bool:
        """Ping Redis and report whether it answered."""
        client = await self.get_client()
        if client is None:
            return False
        try:
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            self.mark_unavailable(e)
            self.logger.error(f"Redis health check failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            'connected': self._connected,
            'connection_info': self.connection_info,
            'reconnect_attempts': self._reconnect_attempts,
            'gave_up': self._gave_up
        }

    async def close(self):
        """Close the Redis connection pool."""
        self._closed = True
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.error(f"Error closing Redis connection: {e}")
            self._client = None
        self._connected = False
        self.logger.info("Redis connection closed")
