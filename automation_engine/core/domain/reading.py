"""Modelo de dominio para lecturas de sensores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Reading:
    """Lectura decodificada de un sensor - inmutable una vez creada.

    Este es el contrato que fluye por todo el pipeline:
    MQTT → Decodificación → Cache/BD → Reglas
    """
    sensor_id: str
    fields: Mapping[str, float]
    received_at: datetime = field(default_factory=utcnow)
    topic: Optional[str] = None
    out_of_range: Tuple[str, ...] = ()

    def __post_init__(self):
        # Vista de solo lectura sobre una copia
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def get(self, name: str) -> Optional[float]:
        return self.fields.get(name)

    def to_cache_data(self) -> dict:
        """Convierte a formato hash de Redis."""
        data = {name: repr(float(value)) for name, value in self.fields.items()}
        data["_received_at"] = self.received_at.isoformat()
        if self.topic:
            data["_topic"] = self.topic
        return data

    @classmethod
    def from_cache_data(cls, sensor_id: str, data: Mapping) -> "Reading":
        """Reconstruye una lectura desde un hash de Redis (bytes o str)."""
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        received_raw = decoded.pop("_received_at", None)
        topic = decoded.pop("_topic", None)
        received_at = datetime.fromisoformat(received_raw) if received_raw else utcnow()
        fields = {name: float(value) for name, value in decoded.items()}
        return cls(sensor_id=sensor_id, fields=fields, received_at=received_at, topic=topic)
