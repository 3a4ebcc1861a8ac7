"""Notificaciones salientes: transportes HTTP con reintento acotado."""

from .dispatcher import NotificationDispatcher, split_targets
from .retry import RetryPolicy
from .transports import (
    EmailTransport,
    NotificationTransport,
    TelegramTransport,
    WebhookTransport,
    build_transports,
)

__all__ = [
    "EmailTransport",
    "NotificationDispatcher",
    "NotificationTransport",
    "RetryPolicy",
    "TelegramTransport",
    "WebhookTransport",
    "build_transports",
    "split_targets",
]
