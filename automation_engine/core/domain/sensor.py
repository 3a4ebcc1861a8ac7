"""Identidades de sensores y dispositivos."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


class SensorOrigin(Enum):
    """Cómo se creó el sensor."""
    MANUAL = "manual"
    AUTO_DISCOVERED = "auto_discovered"


@dataclass(frozen=True)
class FieldRange:
    """Rango declarado de un campo (None = abierto)."""
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def to_dict(self) -> dict:
        return {"min": self.min_value, "max": self.max_value}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FieldRange":
        data = data or {}
        return cls(min_value=data.get("min"), max_value=data.get("max"))


# Rangos físicos conocidos para campos habituales del invernadero
KNOWN_FIELD_RANGES: Dict[str, FieldRange] = {
    "ph": FieldRange(0.0, 14.0),
    "humedad": FieldRange(0.0, 100.0),
    "humidity": FieldRange(0.0, 100.0),
    "ec": FieldRange(0.0, None),
    "ppm": FieldRange(0.0, None),
    "light": FieldRange(0.0, None),
    "lux": FieldRange(0.0, None),
    "pressure": FieldRange(0.0, None),
}


@dataclass
class SensorIdentity:
    """Sensor registrado. `hardware_id` es el id del sensor en todo el motor."""
    hardware_id: str
    topic: str
    schema: Dict[str, FieldRange] = field(default_factory=dict)
    active: bool = True
    origin: SensorOrigin = SensorOrigin.MANUAL
    name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sensor_id(self) -> str:
        return self.hardware_id

    @staticmethod
    def schema_from_dict(data: Optional[dict]) -> Dict[str, FieldRange]:
        return {name: FieldRange.from_dict(rng) for name, rng in (data or {}).items()}


@dataclass
class DeviceIdentity:
    """Actuador controlable por MQTT."""
    device_id: str
    name: Optional[str] = None
    device_type: str = "generic"
    control_topic: Optional[str] = None
    state_field: str = "state"
    active: bool = True
    # Último estado conocido: confirmado por publicación o reportado en su topic
    state: Optional[bool] = None
