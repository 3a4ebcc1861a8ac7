"""Puente entre el callback de paho y la ingesta de telemetría."""

from __future__ import annotations

import logging

from ...ingest.ingestion import TelemetryIngestion
from ..monitoring.metrics import READINGS_TOTAL
from ..monitoring.stats import DROPPED, FAILED, PROCESSED, IngestStats

logger = logging.getLogger(__name__)


class MessageHandler:
    """Corre en el hilo de red de paho: un mensaje defectuoso se cuenta
    y se loguea, nunca corta el loop MQTT."""

    def __init__(self, ingestion: TelemetryIngestion, log_every: int = 100):
        self._ingestion = ingestion
        self._log_every = log_every
        self._stats = IngestStats()

    def handle(self, topic: str, payload: bytes) -> None:
        self._stats.message_received(topic)
        try:
            stored = self._ingestion.ingest(topic, payload)
        except Exception as e:
            # Frontera del hilo de paho
            logger.exception("[HANDLER] Ingest failed topic=%s: %s", topic, e)
            self._finish(FAILED)
            return

        count = self._finish(PROCESSED if stored is not None else DROPPED)
        if stored is not None and self._log_every and count % self._log_every == 0:
            logger.info("[HANDLER] %s", self._stats)

    def _finish(self, result: str) -> int:
        READINGS_TOTAL.labels(status=result).inc()
        return self._stats.outcome(result)

    @property
    def stats(self) -> IngestStats:
        return self._stats
