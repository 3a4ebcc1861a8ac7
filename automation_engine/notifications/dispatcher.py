"""Despacho de notificaciones a uno o varios transportes.

`target_channel` puede nombrar un transporte o una lista separada por
comas ("webhook,telegram"). Cada transporte se reintenta de forma
independiente; el resultado de cada uno queda en un DeliveryOutcome.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

from ..core.domain.execution import DeliveryOutcome
from ..core.domain.notification import NotificationRequest
from ..core.monitoring.metrics import DELIVERIES_TOTAL
from ..errors import NotificationConfigError, TransportError
from .retry import RetryPolicy
from .transports import NotificationTransport

logger = logging.getLogger(__name__)


def split_targets(target_channel: str) -> List[str]:
    seen: List[str] = []
    for part in target_channel.split(","):
        name = part.strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


class NotificationDispatcher:
    """Entrega NotificationRequest a los transportes registrados. Nunca lanza."""

    def __init__(
        self,
        transports: Dict[str, NotificationTransport],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._transports = {name.lower(): t for name, t in transports.items()}
        self._retry = retry_policy or RetryPolicy()

    def dispatch(self, request: NotificationRequest) -> List[DeliveryOutcome]:
        targets = split_targets(request.target_channel)
        if not targets:
            return [DeliveryOutcome(transport="", success=False, error="no target channel")]
        return [self._deliver(name, request) for name in targets]

    def _deliver(self, name: str, request: NotificationRequest) -> DeliveryOutcome:
        transport = self._transports.get(name)
        if transport is None:
            logger.warning("[NOTIFY] Unknown transport %r", name)
            DELIVERIES_TOTAL.labels(transport=name, status="failed").inc()
            return DeliveryOutcome(transport=name, success=False, error=f"unknown transport {name!r}")

        attempts = 0

        def attempt() -> None:
            nonlocal attempts
            attempts += 1
            transport.send(request)

        started = time.perf_counter()
        error: Optional[str] = None
        try:
            self._retry.run(attempt, label=f"notify:{name}")
        except (TransportError, NotificationConfigError) as e:
            error = str(e)
        latency_ms = (time.perf_counter() - started) * 1000

        success = error is None
        DELIVERIES_TOTAL.labels(transport=name, status="success" if success else "failed").inc()
        if success:
            logger.info(
                "[NOTIFY] Delivered via %s canal=%s priority=%s attempts=%d",
                name, request.channel, request.priority, attempts,
            )
        else:
            logger.warning("[NOTIFY] Delivery via %s failed after %d attempts: %s", name, attempts, error)

        return DeliveryOutcome(
            transport=name,
            success=success,
            attempts=attempts,
            latency_ms=latency_ms,
            error=error,
        )
