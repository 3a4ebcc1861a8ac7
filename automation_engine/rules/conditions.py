"""Evaluación de árboles de condiciones.

Las hojas del sensor disparador se resuelven con la lectura recibida; el
resto, con el cache de últimas lecturas. Las hojas de tiempo usan el reloj
del evaluador y las de dispositivo el último estado conocido del actuador.
Un dato ausente hace que la hoja sea falsa y genera un SoftIssue
(informativo, no error).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Callable, List, Optional, Union
from zoneinfo import ZoneInfo

from ..core.domain.reading import Reading, utcnow
from ..core.domain.rules import ConditionGroup, ConditionLeaf, DeviceStateCondition, TimeCondition
from ..core.domain.sensor import DeviceIdentity
from ..errors import EvaluationError

logger = logging.getLogger(__name__)

ReadingLookup = Callable[[str], Optional[Reading]]
DeviceLookup = Callable[[str], Optional[DeviceIdentity]]

# Nombres en inglés usados en reglas antiguas → campo real del payload
FIELD_ALIASES = {
    "temperature": "temperatura",
    "humidity": "humedad",
    "waterTemperature": "temperaturaAgua",
    "heatIndex": "heatindex",
    "dewPoint": "dewpoint",
}


def _no_devices(device_id: str) -> Optional[DeviceIdentity]:
    return None


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Zona horaria de las condiciones de tiempo (UTC por defecto)."""
    if not name or name.strip().upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name.strip())


@dataclass(frozen=True)
class EvaluationContext:
    readings: ReadingLookup
    now: datetime = field(default_factory=utcnow)
    devices: DeviceLookup = _no_devices
    tz: tzinfo = timezone.utc

    @property
    def local_now(self) -> datetime:
        return self.now.astimezone(self.tz)


@dataclass(frozen=True)
class SoftIssue:
    """Condición no evaluable por falta de datos."""
    subject: str
    field: Optional[str]
    reason: str
    kind: str = "sensor"

    def __str__(self) -> str:
        if self.field is None:
            return f"{self.kind}={self.subject}: {self.reason}"
        return f"{self.kind}={self.subject} field={self.field}: {self.reason}"


def resolve_field(reading: Reading, field: str) -> Optional[float]:
    """Valor del campo: exacto, luego alias, luego sin distinguir mayúsculas."""
    value = reading.get(field)
    if value is not None:
        return value
    alias = FIELD_ALIASES.get(field)
    if alias is not None and reading.get(alias) is not None:
        return reading.get(alias)
    lowered = field.lower()
    for name, candidate in reading.fields.items():
        if name.lower() == lowered:
            return candidate
    return None


def compare(actual: float, operator: str, threshold: float) -> bool:
    if operator == "<":
        return actual < threshold
    if operator == "<=":
        return actual <= threshold
    if operator == ">":
        return actual > threshold
    if operator == ">=":
        return actual >= threshold
    if operator == "==":
        return math.isclose(actual, threshold, abs_tol=1e-9)
    if operator == "!=":
        return not math.isclose(actual, threshold, abs_tol=1e-9)
    raise EvaluationError(f"unknown operator {operator!r}")


def leaf_value(leaf: ConditionLeaf, lookup: ReadingLookup, issues: List[SoftIssue]) -> Optional[float]:
    reading = lookup(leaf.sensor_id)
    if reading is None:
        issues.append(SoftIssue(leaf.sensor_id, leaf.field, "no current reading"))
        return None
    value = resolve_field(reading, leaf.field)
    if value is None:
        issues.append(SoftIssue(leaf.sensor_id, leaf.field, "field missing from reading"))
    return value


def time_matches(leaf: TimeCondition, context: EvaluationContext) -> bool:
    local = context.local_now
    if leaf.time_type == "daily_window":
        current = local.time().replace(second=0, microsecond=0)
        if leaf.start_time <= leaf.end_time:
            return leaf.start_time <= current <= leaf.end_time
        # Ventana nocturna: 22:00-06:00
        return current >= leaf.start_time or current <= leaf.end_time
    if leaf.time_type == "day_of_week":
        # isoweekday: lunes=1 ... domingo=7 → domingo=0
        return local.isoweekday() % 7 in leaf.days_of_week
    if leaf.time_type == "datetime_range":
        return leaf.start <= context.now <= leaf.end
    raise EvaluationError(f"unknown time_type {leaf.time_type!r}")


def device_state(
    leaf: DeviceStateCondition, context: EvaluationContext, issues: List[SoftIssue]
) -> Optional[bool]:
    device = context.devices(leaf.device_id)
    if device is None:
        issues.append(SoftIssue(leaf.device_id, None, "unknown device", kind="device"))
        return None
    if device.state is None:
        issues.append(SoftIssue(leaf.device_id, None, "state not yet known", kind="device"))
    return device.state


def _leaf_matches(leaf, context: EvaluationContext, issues: List[SoftIssue]) -> bool:
    if isinstance(leaf, ConditionLeaf):
        actual = leaf_value(leaf, context.readings, issues)
        if actual is None:
            return False
        return compare(actual, leaf.operator, leaf.threshold)
    if isinstance(leaf, TimeCondition):
        return time_matches(leaf, context)
    if isinstance(leaf, DeviceStateCondition):
        state = device_state(leaf, context, issues)
        if state is None:
            return False
        return (state == leaf.state) if leaf.operator == "==" else (state != leaf.state)
    raise EvaluationError(f"unsupported condition node {type(leaf).__name__}")


def evaluate(
    node: Union[ConditionGroup, ConditionLeaf, TimeCondition, DeviceStateCondition],
    context: EvaluationContext,
    issues: List[SoftIssue],
) -> bool:
    """Evalúa un nodo con cortocircuito AND/OR. Grupo vacío → False.

    Raises:
        EvaluationError: nodo u operador mal formado
    """
    if isinstance(node, ConditionGroup):
        if not node.conditions:
            return False
        if node.operator == "AND":
            return all(evaluate(child, context, issues) for child in node.conditions)
        if node.operator == "OR":
            return any(evaluate(child, context, issues) for child in node.conditions)
        raise EvaluationError(f"unknown group operator {node.operator!r}")

    return _leaf_matches(node, context, issues)


def _describe(leaf, context: EvaluationContext, issues: List[SoftIssue]) -> dict:
    if isinstance(leaf, ConditionLeaf):
        actual = leaf_value(leaf, context.readings, issues)
        return {
            "type": "sensor",
            "sensor_id": leaf.sensor_id,
            "field": leaf.field,
            "operator": leaf.operator,
            "threshold": leaf.threshold,
            "actual": actual,
        }
    if isinstance(leaf, TimeCondition):
        return {
            "type": "time",
            "time_type": leaf.time_type,
            "actual": context.local_now.isoformat(),
        }
    return {
        "type": "device",
        "device_id": leaf.device_id,
        "operator": leaf.operator,
        "state": leaf.state,
        "actual": device_state(leaf, context, issues),
    }


def explain(group: ConditionGroup, context: EvaluationContext) -> dict:
    """Evaluación completa (sin cortocircuito) para pruebas en seco."""
    issues: List[SoftIssue] = []
    results = []
    for leaf in group.leaves():
        entry = _describe(leaf, context, issues)
        try:
            entry["result"] = entry["actual"] is not None and _leaf_matches(leaf, context, [])
            entry["error"] = None
        except EvaluationError as e:
            entry["result"], entry["error"] = False, str(e)
        results.append(entry)

    try:
        all_met = evaluate(group, context, [])
    except EvaluationError:
        all_met = False

    return {
        "all_met": all_met,
        "results": results,
        "issues": [str(i) for i in issues],
    }
