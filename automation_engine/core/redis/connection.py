"""Conexión Redis compartida por la cache de últimas lecturas."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit

import redis

logger = logging.getLogger(__name__)


class RedisConnection:
    """Cliente Redis perezoso sobre un pool propio.

    `client` es None hasta que `connect()` confirma el servidor con PING;
    la cache trata ese caso como miss.
    """

    def __init__(self, url: str, socket_timeout: float = 5.0, health_check_interval: int = 30):
        self._url = url
        self._pool = redis.ConnectionPool.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            health_check_interval=health_check_interval,
        )
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client

    @property
    def location(self) -> str:
        """host:port/db, sin credenciales (para logs)."""
        parts = urlsplit(self._url)
        return f"{parts.hostname}:{parts.port or 6379}{parts.path or '/0'}"

    def connect(self) -> bool:
        candidate = redis.Redis(connection_pool=self._pool)
        try:
            candidate.ping()
        except redis.RedisError as e:
            logger.warning("[REDIS] %s unreachable: %s", self.location, e)
            self._client = None
            return False
        self._client = candidate
        logger.info("[REDIS] Latest-reading cache at %s", self.location)
        return True

    def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def disconnect(self) -> None:
        self._client = None
        self._pool.disconnect()
