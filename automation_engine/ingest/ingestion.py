"""Ruta de ingesta de telemetría: payload MQTT → lectura → cache/BD → reglas."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..cache.latest_reading import LatestReadingCache
from ..core.domain.execution import ExecutionRecord
from ..core.domain.reading import Reading, utcnow
from ..core.domain.sensor import DeviceIdentity
from ..core.monitoring.metrics import DECODE_ERRORS_TOTAL
from ..errors import DecodeError
from ..infrastructure.persistence.repository import AutomationRepository
from ..rules.evaluator import RuleEvaluator
from .decoder import TelemetryDecoder
from .sensor_resolver import SensorResolver, is_control_topic

logger = logging.getLogger(__name__)


def parse_payload(payload: Union[bytes, str, dict], topic: Optional[str] = None) -> Any:
    """JSON crudo → objeto Python."""
    if isinstance(payload, dict):
        return payload
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        return json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"invalid JSON: {e}", topic) from e


class TelemetryIngestion:
    """Procesa un mensaje de telemetría de punta a punta.

    Pasos:
    1. Parseo JSON
    2. Resolución de identidad (auto-descubrimiento en primer mensaje).
       Los tópicos de control sin sensor registrado van al registro de
       dispositivos (y actualizan su último estado) sin producir lectura.
    3. Decodificación contra el esquema del sensor
    4. Cache de última lectura + append en sensor_readings
    5. Evaluación síncrona de reglas candidatas

    Los mensajes inválidos se descartan sin reintento.
    """

    def __init__(
        self,
        resolver: SensorResolver,
        cache: LatestReadingCache,
        repository: AutomationRepository,
        evaluator: RuleEvaluator,
        decoder: Optional[TelemetryDecoder] = None,
    ):
        self._resolver = resolver
        self._cache = cache
        self._repository = repository
        self._evaluator = evaluator
        self._decoder = decoder or TelemetryDecoder()

    def ingest(self, topic: str, payload: Union[bytes, str, dict]) -> Optional[List[ExecutionRecord]]:
        """Returns:
            Registros de las reglas disparadas, o None si el mensaje se descartó
        """
        try:
            data = parse_payload(payload, topic)
            if not isinstance(data, dict):
                raise DecodeError("payload must be a JSON object", topic)
            if is_control_topic(topic) and self._resolver.registered_sensor(topic) is None:
                device = self._resolver.resolve_device(topic, data)
                if device is not None:
                    self._track_device_state(device, data)
                return []
            sensor = self._resolver.resolve(topic, data)
            fields = self._decoder.decode(data, sensor.schema, topic=topic)
        except DecodeError as e:
            DECODE_ERRORS_TOTAL.inc()
            logger.warning("[INGEST] Dropped message topic=%s: %s", topic, e)
            return None

        if not sensor.active:
            logger.info("[INGEST] Sensor %s inactive, dropping reading", sensor.hardware_id)
            return None

        out_of_range = self._decoder.out_of_range(fields, sensor.schema)
        if out_of_range:
            logger.info(
                "[INGEST] sensor=%s fields out of declared range: %s",
                sensor.hardware_id,
                ", ".join(out_of_range),
            )

        reading = Reading(
            sensor_id=sensor.hardware_id,
            fields=fields,
            received_at=utcnow(),
            topic=topic,
            out_of_range=out_of_range,
        )

        self._cache.set(reading.sensor_id, reading)
        try:
            self._repository.insert_reading(reading.sensor_id, reading.fields, reading.received_at)
        except SQLAlchemyError as e:
            logger.error("[INGEST] Failed to store reading sensor=%s: %s", reading.sensor_id, e)

        return self._evaluator.on_reading(reading)

    def _track_device_state(self, device: DeviceIdentity, data: dict) -> None:
        state = data.get(device.state_field)
        if not isinstance(state, bool) or state == device.state:
            return
        try:
            self._repository.set_device_state(device.device_id, state)
        except SQLAlchemyError as e:
            logger.error("[INGEST] Failed to store state device=%s: %s", device.device_id, e)
            return
        logger.debug("[INGEST] device=%s state=%s", device.device_id, state)
