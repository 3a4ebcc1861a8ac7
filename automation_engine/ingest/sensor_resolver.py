"""Resolver de identidad de sensores con auto-descubrimiento.

Hot path: mapa en memoria topic → sensor con TTL. En miss se consulta la
BD por tópico y, si el sensor no existe, se crea con un upsert atómico
(ON CONFLICT DO NOTHING + relectura). Dos mensajes concurrentes del mismo
sensor nuevo producen un único registro.

Los tópicos de control (`.../sw`, `.../control`) identifican actuadores,
no sensores: se resuelven contra la tabla de dispositivos.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..core.domain.sensor import KNOWN_FIELD_RANGES, DeviceIdentity, FieldRange, SensorIdentity, SensorOrigin
from ..core.monitoring.metrics import DEVICES_DISCOVERED_TOTAL, SENSORS_DISCOVERED_TOTAL
from ..errors import DecodeError
from ..infrastructure.persistence.repository import AutomationRepository
from .decoder import numeric_fields

logger = logging.getLogger(__name__)

DEFAULT_MAP_TTL_SECONDS = 300.0

# Segmentos de sufijo que no identifican al hardware
_IGNORED_SEGMENTS = {"data", "sw", "control"}
# Sufijos de tópicos de actuadores (comandos y estado), no telemetría
CONTROL_SUFFIXES = {"sw", "control"}
AUTO_DEVICE_TYPE = "auto_discovered"
_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def derive_hardware_id(topic: str) -> str:
    """`Invernadero/TemHum1/data` → `invernadero-temhum1`."""
    segments = [s for s in topic.split("/") if s and s.lower() not in _IGNORED_SEGMENTS]
    return _INVALID_CHARS.sub("", "-".join(segments).lower())


def control_device_id(topic: str) -> Optional[str]:
    """`Invernadero/bomba01/sw` → `bomba01`; None si no es un tópico de control."""
    segments = [s for s in topic.split("/") if s]
    if len(segments) < 2 or segments[-1].lower() not in CONTROL_SUFFIXES:
        return None
    return segments[-2]


def is_control_topic(topic: str) -> bool:
    return control_device_id(topic) is not None


def infer_schema(payload: Mapping[str, Any]) -> Dict[str, FieldRange]:
    """Esquema a partir de los campos numéricos del primer mensaje."""
    return {
        name: KNOWN_FIELD_RANGES.get(name.lower(), FieldRange())
        for name in numeric_fields(payload)
    }


class SensorResolver:
    """Mapea tópicos MQTT a sensores registrados."""

    def __init__(
        self,
        repository: AutomationRepository,
        map_ttl_seconds: float = DEFAULT_MAP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self._ttl = map_ttl_seconds
        self._clock = clock
        self._map: Dict[str, Tuple[SensorIdentity, float]] = {}
        self._map_lock = threading.Lock()
        self._creation_locks: Dict[str, threading.Lock] = {}
        self._creation_guard = threading.Lock()

    def _lookup(self, topic: str) -> Optional[SensorIdentity]:
        with self._map_lock:
            entry = self._map.get(topic)
            if entry is None:
                return None
            sensor, expires_at = entry
            if expires_at <= self._clock():
                del self._map[topic]
                return None
            return sensor

    def _remember(self, topic: str, sensor: SensorIdentity) -> None:
        with self._map_lock:
            self._map[topic] = (sensor, self._clock() + self._ttl)

    def _creation_lock(self, hardware_id: str) -> threading.Lock:
        with self._creation_guard:
            lock = self._creation_locks.get(hardware_id)
            if lock is None:
                lock = self._creation_locks[hardware_id] = threading.Lock()
            return lock

    def registered_sensor(self, topic: str) -> Optional[SensorIdentity]:
        """Sensor ya registrado para el tópico, sin auto-descubrimiento."""
        sensor = self._lookup(topic)
        if sensor is None:
            sensor = self._repository.get_sensor_by_topic(topic)
            if sensor is not None:
                self._remember(topic, sensor)
        return sensor

    def resolve(self, topic: str, payload: Mapping[str, Any]) -> SensorIdentity:
        """Devuelve el sensor del tópico, creándolo en el primer mensaje.

        Solo se registra un sensor nuevo si el payload trae al menos un
        campo numérico: un mensaje que no se podría decodificar no deja
        rastro en la BD.

        Raises:
            DecodeError: tópico sin hardware id o primer payload sin campos numéricos
        """
        sensor = self.registered_sensor(topic)
        if sensor is not None:
            return sensor

        hardware_id = derive_hardware_id(topic)
        if not hardware_id:
            raise DecodeError(f"cannot derive hardware id from topic {topic!r}", topic)
        schema = infer_schema(payload)
        if not schema:
            raise DecodeError("first payload has no numeric fields, sensor not registered", topic)

        with self._creation_lock(hardware_id):
            # Otro hilo pudo registrarlo mientras esperábamos
            sensor = self._lookup(topic)
            if sensor is not None:
                return sensor

            sensor, created = self._repository.upsert_sensor(
                hardware_id,
                topic,
                schema,
                origin=SensorOrigin.AUTO_DISCOVERED,
                name=f"Auto {hardware_id}",
            )
            if created:
                SENSORS_DISCOVERED_TOTAL.inc()
                logger.info(
                    "[RESOLVER] Auto-registered sensor=%s topic=%s fields=%s",
                    sensor.hardware_id,
                    topic,
                    sorted(sensor.schema),
                )
            self._remember(topic, sensor)
            return sensor

    def resolve_device(self, topic: str, payload: Mapping[str, Any]) -> Optional[DeviceIdentity]:
        """Tópico de control → dispositivo, registrándolo si es nuevo.

        Los comandos que publica el propio motor vuelven por la suscripción:
        si el tópico ya corresponde a un dispositivo conocido no se hace nada.
        Un tópico desconocido solo se registra si el payload trae un campo
        booleano (el estado del actuador); si no, se ignora.
        """
        segment = control_device_id(topic)
        if not segment:
            return None

        known = self._repository.get_device(segment)
        if known is not None:
            return known
        for device in self._repository.list_devices():
            if device.control_topic and device.control_topic.lower() == topic.lower():
                return device

        state_field = next((k for k, v in payload.items() if isinstance(v, bool)), None)
        if state_field is None:
            logger.debug("[RESOLVER] Ignoring control topic=%s without boolean state", topic)
            return None
        device_id = _INVALID_CHARS.sub("", segment.lower())
        if not device_id:
            return None

        with self._creation_lock(f"device:{device_id}"):
            known = self._repository.get_device(device_id)
            if known is not None:
                return known
            device = DeviceIdentity(
                device_id=device_id,
                name=f"Auto {device_id}",
                device_type=AUTO_DEVICE_TYPE,
                control_topic=topic,
                state_field=state_field,
            )
            self._repository.upsert_device(device)
        DEVICES_DISCOVERED_TOTAL.inc()
        logger.info("[RESOLVER] Auto-registered device=%s topic=%s field=%s", device_id, topic, state_field)
        return device
