"""Decodificación de payloads de telemetría contra el esquema del sensor.

El esquema declara qué campos existen y su rango físico. Los campos
declarados deben ser números finitos (se aceptan strings numéricos, no
booleanos). Los campos numéricos no declarados se conservan; el resto
(strings de metadata) se ignora.
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model, field_validator

from ..core.domain.sensor import FieldRange
from ..errors import DecodeError

logger = logging.getLogger(__name__)


class _TelemetryPayload(BaseModel):
    """Base de los modelos generados por esquema."""

    model_config = ConfigDict(extra="allow", populate_by_name=False)

    @field_validator("*", mode="before")
    @classmethod
    def _reject_booleans(cls, v):
        if isinstance(v, bool):
            raise ValueError("boolean is not a numeric reading")
        return v


@lru_cache(maxsize=256)
def _model_for(field_names: Tuple[str, ...]) -> Type[_TelemetryPayload]:
    # Nombres internos f0..fn: los nombres reales pueden no ser identificadores
    definitions: Dict[str, Any] = {
        f"f{i}": (Optional[float], Field(None, alias=name, allow_inf_nan=False))
        for i, name in enumerate(field_names)
    }
    return create_model("TelemetryPayload", __base__=_TelemetryPayload, **definitions)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class TelemetryDecoder:
    """Valida un payload JSON ya parseado y devuelve sus campos numéricos."""

    def decode(
        self,
        payload: Any,
        schema: Mapping[str, FieldRange],
        topic: Optional[str] = None,
    ) -> Dict[str, float]:
        if not isinstance(payload, dict):
            raise DecodeError(f"payload must be a JSON object, got {type(payload).__name__}", topic)

        declared = tuple(sorted(schema))
        model = _model_for(declared)
        try:
            parsed = model.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise DecodeError(f"invalid payload: {problems}", topic) from e

        fields: Dict[str, float] = {}
        for i, name in enumerate(declared):
            value = getattr(parsed, f"f{i}")
            if value is not None:
                fields[name] = float(value)

        for name, value in (parsed.model_extra or {}).items():
            if name not in fields and _is_number(value):
                fields[name] = float(value)

        if not fields:
            raise DecodeError("payload has no numeric fields", topic)
        return fields

    @staticmethod
    def out_of_range(fields: Mapping[str, float], schema: Mapping[str, FieldRange]) -> Tuple[str, ...]:
        """Campos fuera de su rango declarado (informativo, nunca rechaza)."""
        return tuple(
            sorted(name for name, value in fields.items() if name in schema and not schema[name].contains(value))
        )


def numeric_fields(payload: Mapping[str, Any]) -> Dict[str, float]:
    """Campos numéricos de un payload crudo (inferencia de esquema)."""
    out: Dict[str, float] = {}
    for name, value in payload.items():
        if _is_number(value):
            out[name] = float(value)
        elif isinstance(value, str):
            try:
                parsed = float(value)
            except ValueError:
                continue
            if math.isfinite(parsed):
                out[name] = parsed
    return out
