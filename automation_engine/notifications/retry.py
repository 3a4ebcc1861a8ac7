"""Política de reintento con backoff exponencial para entregas salientes."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

from common.config import Settings

from ..errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuración para retry con backoff."""

    max_attempts: int = 3
    base_delay: float = 0.5  # segundos
    max_delay: float = 10.0  # segundos
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = (TransportError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.notify_max_attempts),
            base_delay=settings.notify_base_delay_seconds,
            max_delay=settings.notify_max_delay_seconds,
        )

    @classmethod
    def for_device_control(cls, settings: Settings) -> "RetryPolicy":
        """Reintento acotado de publicaciones MQTT a actuadores (timeouts o broker caído)."""
        return cls(
            max_attempts=max(1, settings.control_max_attempts),
            base_delay=settings.control_base_delay_seconds,
            max_delay=settings.control_base_delay_seconds * 4,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay tras el intento `attempt` (1-indexed), con jitter de ±25%."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def run(self, func: Callable[[], T], label: str = "call") -> T:
        """Ejecuta `func` con reintentos.

        Raises:
            La última excepción si se agotan los intentos. Las excepciones
            no reintentables se propagan de inmediato.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except self.retryable_exceptions as e:
                if attempt == self.max_attempts:
                    logger.error("[RETRY] %s exhausted after %d attempts: %s", label, attempt, e)
                    raise
                delay = self.calculate_delay(attempt)
                logger.warning(
                    "[RETRY] %s attempt=%d/%d delay=%.2fs err=%s",
                    label, attempt, self.max_attempts, delay, e,
                )
                self.sleep(delay)
        raise RuntimeError("Retry loop completed without result")
