"""Ingesta de telemetría: decodificación, auto-descubrimiento y orquestación."""

from .decoder import TelemetryDecoder
from .ingestion import TelemetryIngestion, parse_payload
from .sensor_resolver import SensorResolver, derive_hardware_id, infer_schema

__all__ = [
    "SensorResolver",
    "TelemetryDecoder",
    "TelemetryIngestion",
    "derive_hardware_id",
    "infer_schema",
    "parse_payload",
]
