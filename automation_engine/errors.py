"""Jerarquía de errores del motor de automatización.

Cada tipo corresponde a una política distinta:
- DecodeError: se descarta el mensaje, sin reintento
- DeviceNotFound: la acción falla y se registra
- TransportTimeout / TransportError: reintento acotado, luego fallo registrado
- EvaluationError: la regla no coincide en este ciclo (warning de configuración)
- RuleValidationError: la regla se rechaza al crearla/actualizarla
"""

from __future__ import annotations

from typing import Iterable, List


class AutomationError(Exception):
    """Error base del motor."""


class DecodeError(AutomationError):
    """Payload de telemetría malformado o fuera del esquema del sensor."""

    def __init__(self, message: str, topic: str | None = None):
        super().__init__(message)
        self.topic = topic


class EntityNotFound(AutomationError):
    """Una regla referencia una entidad que no existe."""

    kind = "entity"

    def __init__(self, entity_id: str):
        super().__init__(f"{self.kind} not found: {entity_id}")
        self.entity_id = entity_id


class DeviceNotFound(EntityNotFound):
    kind = "device"


class TransportError(AutomationError):
    """Fallo en una llamada saliente (MQTT, webhook, Telegram). Reintentable."""


class TransportTimeout(TransportError):
    """La llamada saliente excedió su deadline."""


class NotificationConfigError(AutomationError):
    """Transporte sin configuración (URL/token). No reintentable."""


class EvaluationError(AutomationError):
    """Árbol de condiciones malformado detectado en evaluación."""


class RuleValidationError(AutomationError):
    """Regla rechazada en carga, creación o actualización."""

    def __init__(self, problems: Iterable[str], rule_id: str | None = None):
        self.problems: List[str] = list(problems)
        self.rule_id = rule_id
        prefix = f"rule {rule_id}: " if rule_id else ""
        super().__init__(prefix + "; ".join(self.problems))
