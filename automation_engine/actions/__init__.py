"""Ejecución de acciones de reglas disparadas."""

from .dispatch_queue import DROPPED_ERROR, DispatchJob, DispatchQueue, DispatchQueueConfig
from .executor import (
    ActionExecutor,
    NotificationDefaults,
    build_context,
    build_notification_request,
    render_template,
)

__all__ = [
    "ActionExecutor",
    "DROPPED_ERROR",
    "DispatchJob",
    "DispatchQueue",
    "DispatchQueueConfig",
    "NotificationDefaults",
    "build_context",
    "build_notification_request",
    "render_template",
]
