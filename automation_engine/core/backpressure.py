"""Cola acotada con backpressure (backlog de despacho de acciones).

Cuando se llena descarta el elemento más antiguo y lo entrega al
callback `on_drop`.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackpressureStats:
    """Estadísticas de backpressure."""
    enqueued: int = 0
    dequeued: int = 0
    dropped: int = 0
    current_size: int = 0
    max_size: int = 0

    def to_dict(self) -> dict:
        return {
            "enqueued": self.enqueued,
            "dequeued": self.dequeued,
            "dropped": self.dropped,
            "current_size": self.current_size,
            "max_size": self.max_size,
        }


class BackpressureQueue(Generic[T]):
    """Cola thread-safe con límite y drop-oldest.

    Uso:
        queue = BackpressureQueue[Job](max_size=1000, name="dispatch")

        # Productor
        queue.put(job)

        # Consumidor
        job = queue.get(timeout=1.0)
    """

    def __init__(
        self,
        max_size: int,
        name: str = "queue",
        on_drop: Optional[Callable[[T], None]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._name = name
        self._max_size = max_size
        self._on_drop = on_drop
        self._queue: Deque[T] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._stats = BackpressureStats(max_size=max_size)

    def put(self, item: T) -> Optional[T]:
        """Agrega un item. Si la cola está llena descarta el más antiguo.

        Returns:
            El item descartado, o None
        """
        dropped: Optional[T] = None
        with self._lock:
            if len(self._queue) >= self._max_size:
                dropped = self._queue.popleft()
                self._stats.dropped += 1

            self._queue.append(item)
            self._stats.enqueued += 1
            self._stats.current_size = len(self._queue)
            self._not_empty.notify()

        if dropped is not None:
            logger.warning(
                "[BACKPRESSURE] %s full (max=%d): dropped oldest item",
                self._name,
                self._max_size,
            )
            if self._on_drop:
                self._on_drop(dropped)
        return dropped

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Obtiene un item de la cola.

        Args:
            timeout: Segundos a esperar (None = bloquear indefinidamente)

        Returns:
            Item o None si timeout
        """
        with self._not_empty:
            if not self._queue:
                self._not_empty.wait(timeout)

            if not self._queue:
                return None

            item = self._queue.popleft()
            self._stats.dequeued += 1
            self._stats.current_size = len(self._queue)
            return item

    def wake_all(self) -> None:
        """Despierta consumidores bloqueados (shutdown)."""
        with self._not_empty:
            self._not_empty.notify_all()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def stats(self) -> BackpressureStats:
        return self._stats
