"""Solicitud de notificación saliente."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


DEFAULT_USER = "sistema"
DEFAULT_SOURCE = "iot-greenhouse"


@dataclass
class NotificationRequest:
    """Notificación lista para despachar.

    - channel: audiencia lógica (telegram, whatsapp, email...)
    - target_channel: mecanismo de entrega (webhook, telegram, email)

    Ambos ejes son independientes y siempre explícitos en el payload.
    """
    message: str
    priority: str
    channel: str
    target_channel: str
    title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    usuario: str = DEFAULT_USER
    source: str = DEFAULT_SOURCE

    @property
    def full_message(self) -> str:
        return f"{self.title}\n\n{self.message}" if self.title else self.message

    def to_payload(self) -> dict:
        """Contrato del webhook (n8n)."""
        return {
            "usuario": self.usuario,
            "canal": self.channel,
            "targetChannel": self.target_channel,
            "mensaje": self.full_message,
            "timestamp": self.created_at.isoformat(),
            "priority": self.priority,
            "source": self.source,
            "metadata": dict(self.metadata),
        }
