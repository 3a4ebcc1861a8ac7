"""Registro de auditoría por evaluación de regla."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


@dataclass
class DeliveryOutcome:
    """Resultado de entrega por transporte de notificación."""
    transport: str
    success: bool
    attempts: int = 0
    latency_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "transport": self.transport,
            "success": self.success,
            "attempts": self.attempts,
            "latency_ms": round(self.latency_ms, 2),
            "error": self.error,
        }


@dataclass
class ActionOutcome:
    """Resultado de una acción individual de la regla."""
    index: int
    action_type: str
    target: Optional[str]
    success: bool
    error: Optional[str] = None
    latency_ms: float = 0.0
    deliveries: List[DeliveryOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "action_type": self.action_type,
            "target": self.target,
            "success": self.success,
            "error": self.error,
            "latency_ms": round(self.latency_ms, 2),
            "deliveries": [d.to_dict() for d in self.deliveries],
        }


@dataclass
class ExecutionRecord:
    """Entrada append-only del log de ejecuciones.

    `matched` refleja la evaluación; los resultados de las acciones se
    agregan después y nunca lo modifican.
    """
    rule_id: str
    matched: bool
    rule_name: Optional[str] = None
    trigger_sensor_id: Optional[str] = None
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcomes: List[ActionOutcome] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def actions_succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def actions_failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "matched": self.matched,
            "trigger_sensor_id": self.trigger_sensor_id,
            "triggered_at": self.triggered_at.isoformat(),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
        }
