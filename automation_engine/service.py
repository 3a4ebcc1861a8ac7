"""Servicio de automatización - punto de ensamblado.

Componentes:
- MQTTClient: suscripción a telemetría y publicación de comandos
- MessageHandler → TelemetryIngestion: decodificación, auto-discovery, cache
- RuleEvaluator: reglas candidatas por sensor, cooldown por regla
- DispatchQueue → ActionExecutor: acciones fuera del hilo de ingesta
- NotificationDispatcher: webhook / telegram / email con reintentos
- ExecutionLog: auditoría de cada disparo
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from common.config import Settings, get_settings
from common.db import get_engine

from .actions.dispatch_queue import DispatchQueue, DispatchQueueConfig
from .actions.executor import ActionExecutor, NotificationDefaults
from .cache.latest_reading import (
    InMemoryLatestReadingCache,
    LatestReadingCache,
    RedisLatestReadingCache,
)
from .core.monitoring.health import HealthChecker
from .core.monitoring.stats import IngestStats
from .core.redis.connection import RedisConnection
from .core.transport.message_handler import MessageHandler
from .core.transport.mqtt_client import MQTTClient
from .infrastructure.audit.execution_log import ExecutionLog
from .infrastructure.persistence.repository import AutomationRepository, SqlAutomationRepository
from .infrastructure.persistence.schema import ensure_schema
from .ingest.ingestion import TelemetryIngestion
from .ingest.sensor_resolver import SensorResolver
from .notifications.dispatcher import NotificationDispatcher
from .notifications.retry import RetryPolicy
from .notifications.transports import build_transports
from .rules.conditions import resolve_timezone
from .rules.evaluator import RuleEvaluator
from .rules.service import RuleService

logger = logging.getLogger(__name__)


class AutomationService:
    """Ensambla y controla el ciclo de vida del motor."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        mqtt_client: Optional[MQTTClient] = None,
        cache: Optional[LatestReadingCache] = None,
    ):
        self._settings = settings or get_settings()
        self._engine = engine
        self._mqtt = mqtt_client
        self._cache = cache
        self._redis: Optional[RedisConnection] = None

        self._repository: Optional[AutomationRepository] = None
        self._handler: Optional[MessageHandler] = None
        self._evaluator: Optional[RuleEvaluator] = None
        self._dispatch = None
        self._execution_log: Optional[ExecutionLog] = None
        self._rule_service: Optional[RuleService] = None
        self._health: Optional[HealthChecker] = None

        self._running = False
        self._stop_event = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Ensamblado
    # ------------------------------------------------------------------

    def build(self) -> None:
        """Crea todos los componentes sin conectar a MQTT."""
        s = self._settings

        if self._engine is None:
            self._engine = get_engine(s)
        if s.bootstrap_schema:
            ensure_schema(self._engine)
        self._repository = SqlAutomationRepository(self._engine)

        if self._cache is None:
            self._cache = self._build_cache()

        if self._mqtt is None:
            self._mqtt = MQTTClient(
                broker_host=s.mqtt_host,
                broker_port=s.mqtt_port,
                username=s.mqtt_username,
                password=s.mqtt_password,
                client_id=s.mqtt_client_id,
                subscribe_topic=s.mqtt_subscribe_topic,
            )

        self._execution_log = ExecutionLog(self._repository)
        dispatcher = NotificationDispatcher(build_transports(s), RetryPolicy.from_settings(s))
        executor = ActionExecutor(
            repository=self._repository,
            publisher=self._mqtt,
            dispatcher=dispatcher,
            execution_log=self._execution_log,
            defaults=NotificationDefaults.from_settings(s),
            control_topic_prefix=s.control_topic_prefix,
            publish_timeout=s.mqtt_publish_timeout_seconds,
            publish_retry=RetryPolicy.for_device_control(s),
        )
        self._dispatch = DispatchQueue(executor, self._execution_log, DispatchQueueConfig.from_settings(s))

        self._evaluator = RuleEvaluator(
            repository=self._repository,
            cache=self._cache,
            sink=self._dispatch,
            execution_log=self._execution_log,
            record_misses=s.rules_record_misses,
            tz=resolve_timezone(s.rules_timezone),
        )
        self._rule_service = RuleService(self._repository, self._evaluator)

        ingestion = TelemetryIngestion(
            resolver=SensorResolver(self._repository, map_ttl_seconds=s.cache_ttl_seconds),
            cache=self._cache,
            repository=self._repository,
            evaluator=self._evaluator,
        )
        self._handler = MessageHandler(ingestion)
        self._mqtt.set_message_handler(self._handler.handle)
        self._health = HealthChecker(self._engine, self._redis)

    def _build_cache(self) -> LatestReadingCache:
        s = self._settings
        if s.cache_backend == "redis":
            self._redis = RedisConnection(s.redis_url)
            if self._redis.connect():
                return RedisLatestReadingCache(self._redis, s.cache_ttl_seconds)
            # Se conserva la conexión: health la sigue sondeando y reporta degradado
            logger.warning("[SERVICE] Redis unavailable, using in-memory latest-reading cache")
        return InMemoryLatestReadingCache(s.cache_ttl_seconds)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Inicia el servicio."""
        try:
            if self._handler is None:
                self.build()

            loaded = self._evaluator.refresh()
            logger.info("[SERVICE] %d rules active", loaded)

            self._dispatch.start()

            if not self._mqtt.connect():
                logger.error("[SERVICE] MQTT connection failed")
                self._dispatch.stop(drain=False)
                return False

            self._start_refresh_loop()
            self._running = True
            logger.info("[SERVICE] Started successfully")
            return True

        except SQLAlchemyError as e:
            logger.exception("[SERVICE] Start failed (database): %s", e)
            return False

    def stop(self) -> None:
        """Detiene el servicio: primero la entrada, luego drena las acciones."""
        self._running = False
        self._stop_event.set()

        if self._mqtt:
            self._mqtt.disconnect()
        if self._dispatch:
            self._dispatch.stop(drain=True)
        if self._refresh_thread:
            self._refresh_thread.join(timeout=2.0)
            self._refresh_thread = None
        if self._redis:
            self._redis.disconnect()

        if self._handler:
            logger.info("[SERVICE] Stopped. %s", self._handler.stats)

    def _start_refresh_loop(self) -> None:
        interval = self._settings.rules_refresh_seconds
        if interval <= 0 or self._refresh_thread is not None:
            return
        self._stop_event.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop, args=(interval,), name="rules-refresh", daemon=True
        )
        self._refresh_thread.start()

    def _refresh_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self._evaluator.refresh()
            except SQLAlchemyError as e:
                logger.warning("[SERVICE] Rules refresh failed: %s", e)

    # ------------------------------------------------------------------
    # Accesores
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._mqtt.is_connected if self._mqtt else False

    @property
    def repository(self) -> Optional[AutomationRepository]:
        return self._repository

    @property
    def evaluator(self) -> Optional[RuleEvaluator]:
        return self._evaluator

    @property
    def rule_service(self) -> Optional[RuleService]:
        return self._rule_service

    @property
    def handler(self) -> Optional[MessageHandler]:
        return self._handler

    @property
    def stats(self) -> dict:
        handler_stats = self._handler.stats if self._handler else IngestStats()
        return {
            "running": self._running,
            "mqtt_connected": self.is_connected,
            "mqtt_reconnects": self._mqtt.reconnect_count if self._mqtt else 0,
            "cache_backend": type(self._cache).__name__ if self._cache else None,
            "handler": handler_stats.to_dict(),
            "rules": self._evaluator.stats if self._evaluator else {},
            "dispatch": self._dispatch.stats if self._dispatch else {},
            "execution_log": self._execution_log.stats if self._execution_log else {},
        }

    def health_check(self) -> dict:
        if not self._health or not self._handler:
            return {"healthy": False, "reason": "Not initialized"}

        rules = self._evaluator.stats if self._evaluator else {}
        dispatch = self._dispatch.stats if self._dispatch else {}
        status = self._health.check(
            mqtt_connected=self.is_connected,
            cache_backend=type(self._cache).__name__,
            rules_active=rules.get("rules", 0),
            dispatch_pending=dispatch.get("current_size", 0),
            readings_processed=self._handler.stats.processed,
            readings_failed=self._handler.stats.failed,
        )
        return status.to_dict()


# Singleton
_service: Optional[AutomationService] = None


def get_service() -> Optional[AutomationService]:
    """Obtiene el servicio singleton."""
    return _service


def start_service(settings: Optional[Settings] = None) -> bool:
    """Inicia el servicio singleton."""
    global _service

    if _service is not None:
        return _service.is_running

    _service = AutomationService(settings)
    return _service.start()


def stop_service() -> None:
    """Detiene el servicio singleton."""
    global _service

    if _service is not None:
        _service.stop()
        _service = None
