"""Modelos de dominio del motor."""

from .execution import ActionOutcome, DeliveryOutcome, ExecutionRecord
from .notification import NotificationRequest
from .reading import Reading, utcnow
from .rules import (
    Action,
    ConditionGroup,
    ConditionLeaf,
    DeviceControlAction,
    DeviceStateCondition,
    NotifyAction,
    Rule,
    TimeCondition,
    parse_rule,
)
from .sensor import DeviceIdentity, FieldRange, SensorIdentity, SensorOrigin

__all__ = [
    "Action",
    "ActionOutcome",
    "ConditionGroup",
    "ConditionLeaf",
    "DeliveryOutcome",
    "DeviceControlAction",
    "DeviceIdentity",
    "DeviceStateCondition",
    "ExecutionRecord",
    "FieldRange",
    "NotificationRequest",
    "NotifyAction",
    "Reading",
    "Rule",
    "SensorIdentity",
    "SensorOrigin",
    "TimeCondition",
    "parse_rule",
    "utcnow",
]
