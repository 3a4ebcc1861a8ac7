"""Modelo de reglas: árbol de condiciones + lista ordenada de acciones.

Formatos aceptados al cargar (filas históricas de la tabla rules):
- Condiciones como lista simple (AND implícito) o
  {"operator": "AND"|"OR", "conditions"|"rules": [...]}
- Hojas con sensorId/sensor_id/sensor, threshold/value
- Hojas `type: time` (daily_window, day_of_week, datetime_range) y
  `type: device` (estado on/off de un actuador)
- Operadores GT, LT, GTE, LTE, EQ, NEQ normalizados a símbolos
- Acciones con tags legacy (device_control, device_status, notification)

Cualquier tag de acción desconocido se rechaza en carga, no en ejecución.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ...errors import RuleValidationError


OPERATORS = ("<", "<=", ">", ">=", "==", "!=")

OPERATOR_ALIASES: Dict[str, str] = {
    "GT": ">",
    "LT": "<",
    "GTE": ">=",
    "LTE": "<=",
    "EQ": "==",
    "NEQ": "!=",
    "=": "==",
}

# Cooldown por prioridad cuando la regla no define uno (segundos)
PRIORITY_COOLDOWNS: Dict[int, float] = {
    1: 300.0,
    2: 600.0,
    3: 1800.0,
    4: 3600.0,
    5: 7200.0,
}

ACTION_TAG_ALIASES: Dict[str, str] = {
    "DEVICE_CONTROL": "DEVICE_CONTROL",
    "DEVICE_STATUS": "DEVICE_CONTROL",
    "NOTIFY": "NOTIFY",
    "NOTIFICATION": "NOTIFY",
}

NOTIFY_PRIORITIES = ("low", "medium", "high", "critical")


def normalize_operator(op: Any) -> str:
    op = str(op).strip()
    op = OPERATOR_ALIASES.get(op.upper(), op)
    if op not in OPERATORS:
        raise ValueError(f"unsupported operator: {op!r}")
    return op


def parse_switch(v: Any) -> bool:
    """on/off, true/false, 1/0, encender/apagar → bool."""
    if isinstance(v, bool):
        return v
    value = str(v).strip().lower()
    if value in ("on", "true", "1", "encender"):
        return True
    if value in ("off", "false", "0", "apagar"):
        return False
    raise ValueError(f"unsupported switch state: {v!r}")


class ConditionLeaf(BaseModel):
    """Comparación `sensor.field <op> threshold`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sensor_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("sensor_id", "sensorId", "sensor", "sensorType"),
    )
    field: str = Field(..., min_length=1)
    operator: str
    threshold: float = Field(..., validation_alias=AliasChoices("threshold", "value"))

    @model_validator(mode="before")
    @classmethod
    def _only_sensor_conditions(cls, data: Any) -> Any:
        if isinstance(data, dict):
            kind = data.get("type")
            if kind is not None and str(kind).lower() != "sensor":
                raise ValueError(f"unsupported condition type: {kind!r}")
        return data

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v):
        return normalize_operator(v)


class TimeCondition(BaseModel):
    """Condición de calendario evaluada con el reloj del motor.

    - daily_window: start_time <= hora local <= end_time; si start > end la
      ventana cruza medianoche (22:00-06:00)
    - day_of_week: días 0-6 con 0 = domingo
    - datetime_range: instante entre `start` y `end` (inclusive)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["time"] = "time"
    time_type: Literal["daily_window", "day_of_week", "datetime_range"] = Field(
        ..., validation_alias=AliasChoices("time_type", "timeType")
    )
    start_time: Optional[time] = Field(None, validation_alias=AliasChoices("start_time", "startTime"))
    end_time: Optional[time] = Field(None, validation_alias=AliasChoices("end_time", "endTime"))
    days_of_week: Optional[List[int]] = Field(
        None, validation_alias=AliasChoices("days_of_week", "daysOfWeek")
    )
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shapes(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["type"] = str(data.get("type", "time")).strip().lower()
            window = data.pop("datetime", None)
            if isinstance(window, dict):
                data.setdefault("start", window.get("start"))
                data.setdefault("end", window.get("end"))
        return data

    @field_validator("days_of_week")
    @classmethod
    def _valid_days(cls, v):
        if v is not None:
            bad = [d for d in v if not 0 <= d <= 6]
            if bad:
                raise ValueError(f"days_of_week must be 0-6 (0 = sunday), got {bad}")
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def _wall_clock(cls, v):
        return v.replace(tzinfo=None) if v is not None else v

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _required_for_type(self) -> "TimeCondition":
        if self.time_type == "daily_window" and (self.start_time is None or self.end_time is None):
            raise ValueError("daily_window requires start_time and end_time")
        if self.time_type == "day_of_week" and not self.days_of_week:
            raise ValueError("day_of_week requires days_of_week")
        if self.time_type == "datetime_range":
            if self.start is None or self.end is None:
                raise ValueError("datetime_range requires datetime.start and datetime.end")
            if self.start > self.end:
                raise ValueError("datetime_range start is after end")
        return self


class DeviceStateCondition(BaseModel):
    """Compara el último estado conocido de un actuador (== o !=)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["device"] = "device"
    device_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("device_id", "deviceId", "device")
    )
    operator: Literal["==", "!="] = "=="
    state: bool = Field(..., validation_alias=AliasChoices("state", "value", "status"))

    @model_validator(mode="before")
    @classmethod
    def _normalize_type(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = {**data, "type": str(data.get("type", "device")).strip().lower()}
        return data

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v):
        op = normalize_operator(v)
        if op not in ("==", "!="):
            raise ValueError(f"device conditions only support == and !=, got {op!r}")
        return op

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, v):
        return parse_switch(v)


Condition = Union[ConditionLeaf, TimeCondition, DeviceStateCondition]

CONDITION_TYPES = {"time": TimeCondition, "device": DeviceStateCondition}


class ConditionGroup(BaseModel):
    """Combinador AND/OR con evaluación en cortocircuito."""

    model_config = ConfigDict(frozen=True)

    operator: Literal["AND", "OR"] = "AND"
    conditions: List[Union[ConditionLeaf, TimeCondition, DeviceStateCondition, "ConditionGroup"]] = Field(
        default_factory=list
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shapes(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"operator": "AND", "conditions": data}
        if isinstance(data, dict):
            data = dict(data)
            if "conditions" not in data and "rules" in data:
                data["conditions"] = data.pop("rules")
            if isinstance(data.get("operator"), str):
                data["operator"] = data["operator"].strip().upper()
        return data

    @field_validator("conditions", mode="before")
    @classmethod
    def _parse_children(cls, items):
        if not isinstance(items, list):
            raise ValueError("conditions must be a list")
        parsed = []
        for item in items:
            if isinstance(item, (ConditionLeaf, TimeCondition, DeviceStateCondition, ConditionGroup)):
                parsed.append(item)
            elif isinstance(item, list) or (
                isinstance(item, dict) and ("conditions" in item or "rules" in item)
            ):
                parsed.append(ConditionGroup.model_validate(item))
            else:
                kind = str(item.get("type", "")).strip().lower() if isinstance(item, dict) else ""
                parsed.append(CONDITION_TYPES.get(kind, ConditionLeaf).model_validate(item))
        return parsed

    def leaves(self) -> List[Condition]:
        """Todas las hojas del árbol (orden de aparición)."""
        out: List[Condition] = []
        for node in self.conditions:
            if isinstance(node, ConditionGroup):
                out.extend(node.leaves())
            else:
                out.append(node)
        return out

    def sensor_leaves(self) -> List[ConditionLeaf]:
        return [leaf for leaf in self.leaves() if isinstance(leaf, ConditionLeaf)]

    def device_leaves(self) -> List[DeviceStateCondition]:
        return [leaf for leaf in self.leaves() if isinstance(leaf, DeviceStateCondition)]


ConditionGroup.model_rebuild()


class DeviceControlAction(BaseModel):
    """Publica un comando on/off al tópico de control del dispositivo."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["DEVICE_CONTROL"] = "DEVICE_CONTROL"
    device_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("device_id", "deviceId")
    )
    command: Literal["on", "off"] = Field(
        ..., validation_alias=AliasChoices("command", "status", "action")
    )

    @field_validator("command", mode="before")
    @classmethod
    def _normalize_command(cls, v):
        return "on" if parse_switch(v) else "off"

    @property
    def state(self) -> bool:
        return self.command == "on"


class NotifyAction(BaseModel):
    """Notificación. `channel`/`target_channel` pueden omitirse: los defaults
    se aplican en un único lugar (actions.executor.build_notification_request).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["NOTIFY"] = "NOTIFY"
    channel: Optional[str] = Field(None, validation_alias=AliasChoices("channel", "canal"))
    target_channel: Optional[str] = Field(
        None, validation_alias=AliasChoices("target_channel", "targetChannel")
    )
    template: str = Field("", validation_alias=AliasChoices("template", "message"))
    title: Optional[str] = None
    priority: Literal["low", "medium", "high", "critical"] = "medium"

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, v):
        return str(v).strip().lower() if v is not None else "medium"


Action = Annotated[Union[DeviceControlAction, NotifyAction], Field(discriminator="type")]


class Rule(BaseModel):
    """Regla de automatización."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    enabled: bool = True
    priority: int = Field(3, ge=1, le=5)
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: List[Action] = Field(default_factory=list)
    cooldown_seconds: Optional[float] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("cooldown_seconds", "cooldownSeconds", "cooldown"),
    )
    last_triggered_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("last_triggered_at", "lastTriggered", "last_triggered")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return str(v) if v is not None else v

    @field_validator("last_triggered_at")
    @classmethod
    def _as_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("actions", mode="before")
    @classmethod
    def _normalize_action_tags(cls, items):
        if items is None:
            return []
        if not isinstance(items, list):
            raise ValueError("actions must be a list")
        normalized = []
        for item in items:
            if isinstance(item, dict):
                tag = str(item.get("type", "")).strip().upper()
                if tag not in ACTION_TAG_ALIASES:
                    raise ValueError(f"unknown action type: {item.get('type')!r}")
                item = {**item, "type": ACTION_TAG_ALIASES[tag]}
            normalized.append(item)
        return normalized

    @property
    def effective_cooldown(self) -> float:
        if self.cooldown_seconds is not None:
            return float(self.cooldown_seconds)
        return PRIORITY_COOLDOWNS.get(self.priority, PRIORITY_COOLDOWNS[3])

    def referenced_sensor_ids(self) -> Set[str]:
        return {leaf.sensor_id for leaf in self.conditions.sensor_leaves()}

    def referenced_device_ids(self) -> Set[str]:
        """Dispositivos controlados por las acciones o leídos por las condiciones."""
        controlled = {a.device_id for a in self.actions if isinstance(a, DeviceControlAction)}
        return controlled | {leaf.device_id for leaf in self.conditions.device_leaves()}

    def to_row(self) -> dict:
        """Formato para persistir (condiciones y acciones como dict JSON-able)."""
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "priority": self.priority,
            "conditions": self.conditions.model_dump(mode="json"),
            "actions": [a.model_dump(mode="json") for a in self.actions],
            "cooldown_seconds": self.cooldown_seconds,
        }


def parse_rule(data: Any) -> Rule:
    """Valida una regla y traduce errores de pydantic a RuleValidationError."""
    if isinstance(data, Rule):
        return data
    try:
        return Rule.model_validate(data)
    except ValidationError as e:
        rule_id = data.get("id") if isinstance(data, dict) else None
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        ]
        raise RuleValidationError(problems, rule_id=str(rule_id) if rule_id is not None else None) from e
