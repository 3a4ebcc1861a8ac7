"""Estado de salud del motor de automatización.

El motor está *listo* cuando recibe telemetría (MQTT conectado) y puede
persistirla y auditar ejecuciones (BD accesible). La cache Redis es
opcional: si está configurada y no responde el motor sigue operando
pero se reporta como degradado.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..redis.connection import RedisConnection


@dataclass
class EngineHealth:
    mqtt_connected: bool
    database_reachable: bool
    cache_backend: str
    cache_reachable: Optional[bool]
    rules_active: int
    dispatch_pending: int
    readings_processed: int
    readings_failed: int

    @property
    def healthy(self) -> bool:
        return self.mqtt_connected and self.database_reachable

    @property
    def degraded(self) -> bool:
        return self.healthy and self.cache_reachable is False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "degraded": self.degraded,
            "mqtt_connected": self.mqtt_connected,
            "database_reachable": self.database_reachable,
            "cache": {"backend": self.cache_backend, "reachable": self.cache_reachable},
            "rules_active": self.rules_active,
            "dispatch_pending": self.dispatch_pending,
            "readings": {
                "processed": self.readings_processed,
                "failed": self.readings_failed,
            },
        }


class HealthChecker:
    """Sondea la BD y, si existe, la conexión Redis de la cache."""

    def __init__(self, engine: Engine, redis_conn: Optional[RedisConnection] = None):
        self._engine = engine
        self._redis = redis_conn

    def database_reachable(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def cache_reachable(self) -> Optional[bool]:
        # None = cache en memoria, nada que sondear
        return self._redis.ping() if self._redis else None

    def check(
        self,
        *,
        mqtt_connected: bool,
        cache_backend: str,
        rules_active: int = 0,
        dispatch_pending: int = 0,
        readings_processed: int = 0,
        readings_failed: int = 0,
    ) -> EngineHealth:
        return EngineHealth(
            mqtt_connected=mqtt_connected,
            database_reachable=self.database_reachable(),
            cache_backend=cache_backend,
            cache_reachable=self.cache_reachable(),
            rules_active=rules_active,
            dispatch_pending=dispatch_pending,
            readings_processed=readings_processed,
            readings_failed=readings_failed,
        )
