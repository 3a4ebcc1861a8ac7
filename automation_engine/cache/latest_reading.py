"""Cache de la última lectura por sensor.

Una entrada por sensor, sobrescrita en cada lectura con TTL renovado.
La expiración marca el sensor como "posiblemente offline" sin borrar
historial (el historial vive en sensor_readings).
"""

from __future__ import annotations

import logging
import threading
import time
import zlib
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

import redis

from ..core.domain.reading import Reading
from ..core.redis.connection import RedisConnection

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
KEY_PREFIX = "sensor_latest:"
SEEN_SET_KEY = "sensors_seen"


def normalize_sensor_id(sensor_id: str) -> str:
    """Clave de cache: ambos backends ignoran mayúsculas."""
    return sensor_id.strip().lower()


class SensorStatus(Enum):
    ONLINE = "online"
    POSSIBLY_OFFLINE = "possibly_offline"
    UNKNOWN = "unknown"


class LatestReadingCache(ABC):
    """Interfaz del cache de últimas lecturas."""

    @abstractmethod
    def get(self, sensor_id: str) -> Optional[Reading]:
        """Última lectura vigente o None (miss o expirada)."""

    @abstractmethod
    def set(self, sensor_id: str, reading: Reading) -> None:
        """Sobrescritura incondicional con TTL renovado."""

    @abstractmethod
    def expire(self, sensor_id: str) -> None:
        """Expira la entrada de inmediato."""

    @abstractmethod
    def status(self, sensor_id: str) -> SensorStatus:
        """online | possibly_offline (visto y expirado) | unknown."""


class InMemoryLatestReadingCache(LatestReadingCache):
    """Cache embebido en proceso.

    Usa lock striping: claves independientes casi nunca comparten lock,
    sin coordinación global entre sensores.
    """

    STRIPES = 16

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Reading, float]] = {}
        self._seen: Set[str] = set()
        self._locks = [threading.Lock() for _ in range(self.STRIPES)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode()) % self.STRIPES]

    def get(self, sensor_id: str) -> Optional[Reading]:
        key = normalize_sensor_id(sensor_id)
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                return None
            reading, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                logger.info("[CACHE] sensor=%s expired (possibly offline)", sensor_id)
                return None
            return reading

    def set(self, sensor_id: str, reading: Reading) -> None:
        key = normalize_sensor_id(sensor_id)
        with self._lock_for(key):
            self._entries[key] = (reading, self._clock() + self._ttl)
            self._seen.add(key)

    def expire(self, sensor_id: str) -> None:
        key = normalize_sensor_id(sensor_id)
        with self._lock_for(key):
            self._entries.pop(key, None)

    def status(self, sensor_id: str) -> SensorStatus:
        if self.get(sensor_id) is not None:
            return SensorStatus.ONLINE
        key = normalize_sensor_id(sensor_id)
        with self._lock_for(key):
            return SensorStatus.POSSIBLY_OFFLINE if key in self._seen else SensorStatus.UNKNOWN

    def possibly_offline(self) -> List[str]:
        """Sensores vistos alguna vez cuya entrada ya expiró (claves normalizadas)."""
        return sorted(
            sid for sid in list(self._seen) if self.status(sid) is SensorStatus.POSSIBLY_OFFLINE
        )


class RedisLatestReadingCache(LatestReadingCache):
    """Cache en Redis: hash `sensor_latest:{sensor_id}` con EXPIRE.

    El set `sensors_seen` permite distinguir "offline" de "nunca visto".
    Errores de Redis se loguean y se tratan como miss: el cache nunca
    corta la ingesta.
    """

    def __init__(self, connection: RedisConnection, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._conn = connection
        self._ttl = int(ttl_seconds)

    @staticmethod
    def _key(sensor_id: str) -> str:
        return f"{KEY_PREFIX}{normalize_sensor_id(sensor_id)}"

    def get(self, sensor_id: str) -> Optional[Reading]:
        client = self._conn.client
        if client is None:
            return None
        try:
            data = client.hgetall(self._key(sensor_id))
        except redis.RedisError as e:
            logger.warning("[CACHE] get failed sensor=%s: %s", sensor_id, e)
            return None
        if not data:
            return None
        try:
            return Reading.from_cache_data(sensor_id, data)
        except ValueError as e:
            logger.warning("[CACHE] corrupt entry sensor=%s: %s", sensor_id, e)
            return None

    def set(self, sensor_id: str, reading: Reading) -> None:
        client = self._conn.client
        if client is None:
            return
        key = self._key(sensor_id)
        try:
            # Reemplazo atómico del hash: no quedan campos de lecturas previas
            pipe = client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=reading.to_cache_data())
            pipe.expire(key, self._ttl)
            pipe.sadd(SEEN_SET_KEY, normalize_sensor_id(sensor_id))
            pipe.execute()
        except redis.RedisError as e:
            logger.warning("[CACHE] set failed sensor=%s: %s", sensor_id, e)

    def expire(self, sensor_id: str) -> None:
        client = self._conn.client
        if client is None:
            return
        try:
            client.delete(self._key(sensor_id))
        except redis.RedisError as e:
            logger.warning("[CACHE] expire failed sensor=%s: %s", sensor_id, e)

    def status(self, sensor_id: str) -> SensorStatus:
        client = self._conn.client
        if client is None:
            return SensorStatus.UNKNOWN
        try:
            if client.exists(self._key(sensor_id)):
                return SensorStatus.ONLINE
            if client.sismember(SEEN_SET_KEY, normalize_sensor_id(sensor_id)):
                return SensorStatus.POSSIBLY_OFFLINE
        except redis.RedisError as e:
            logger.warning("[CACHE] status failed sensor=%s: %s", sensor_id, e)
        return SensorStatus.UNKNOWN
