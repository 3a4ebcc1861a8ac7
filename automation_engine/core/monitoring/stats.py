"""Contadores de ingesta por mensaje MQTT."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

PROCESSED = "processed"
DROPPED = "dropped"
FAILED = "failed"


@dataclass
class IngestStats:
    """Cada mensaje recibido termina en exactamente un resultado:

    - processed: lectura guardada y evaluada
    - dropped: payload no decodificable (sin lectura)
    - failed: error inesperado en ingesta o evaluación
    """

    received: int = 0
    processed: int = 0
    dropped: int = 0
    failed: int = 0
    last_topic: Optional[str] = None
    last_message_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def message_received(self, topic: str) -> None:
        with self._lock:
            self.received += 1
            self.last_topic = topic
            self.last_message_at = datetime.now(timezone.utc)

    def outcome(self, result: str) -> int:
        """Suma un resultado; devuelve el nuevo total de ese resultado."""
        if result not in (PROCESSED, DROPPED, FAILED):
            raise ValueError(f"unknown ingest result: {result}")
        with self._lock:
            value = getattr(self, result) + 1
            setattr(self, result, value)
            return value

    @property
    def in_flight(self) -> int:
        return self.received - self.processed - self.dropped - self.failed

    def __str__(self) -> str:
        return (
            f"ingest received={self.received} processed={self.processed} "
            f"dropped={self.dropped} failed={self.failed}"
        )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "received": self.received,
                "processed": self.processed,
                "dropped": self.dropped,
                "failed": self.failed,
                "last_topic": self.last_topic,
                "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            }
