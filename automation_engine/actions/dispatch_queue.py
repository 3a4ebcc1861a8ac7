"""Backlog acotado de reglas disparadas pendientes de ejecutar.

El evaluador encola y vuelve; workers dedicados ejecutan las acciones.
Si el backlog se llena se descarta el trabajo más antiguo y su registro
queda en el Execution Log con el error "dropped: dispatch backlog full".
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from common.config import Settings

from ..core.backpressure import BackpressureQueue
from ..core.domain.execution import ExecutionRecord
from ..core.domain.reading import Reading
from ..core.domain.rules import Rule
from ..core.monitoring.metrics import DISPATCH_DROPPED_TOTAL, DISPATCH_QUEUE_SIZE
from ..infrastructure.audit.execution_log import ExecutionLog
from .executor import ActionExecutor

logger = logging.getLogger(__name__)

DROPPED_ERROR = "dropped: dispatch backlog full"


@dataclass
class DispatchJob:
    rule: Rule
    record: ExecutionRecord
    reading: Optional[Reading] = None
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class DispatchQueueConfig:
    """Las acciones nunca corren en el hilo de ingesta: hace falta al menos
    un worker (un publish QoS 1 necesita el loop de paho libre para el PUBACK)."""

    max_size: int = 1000
    workers: int = 1
    poll_timeout: float = 0.5

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f"dispatch workers must be >= 1, got {self.workers}")
        if self.max_size < 1:
            raise ValueError(f"dispatch queue max_size must be >= 1, got {self.max_size}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "DispatchQueueConfig":
        return cls(max_size=settings.dispatch_queue_max_size, workers=settings.dispatch_workers)


class DispatchQueue:
    """Cola de despacho con workers en threads daemon."""

    def __init__(
        self,
        executor: ActionExecutor,
        execution_log: ExecutionLog,
        config: Optional[DispatchQueueConfig] = None,
    ):
        self._executor = executor
        self._execution_log = execution_log
        self._config = config or DispatchQueueConfig()
        self._queue: BackpressureQueue[DispatchJob] = BackpressureQueue(
            max_size=self._config.max_size,
            name="dispatch",
            on_drop=self._on_drop,
        )
        self._threads: List[threading.Thread] = []
        self._running = threading.Event()
        self._completed = 0
        self._max_wait_ms = 0.0
        self._completed_lock = threading.Lock()

    def submit(self, rule: Rule, record: ExecutionRecord, reading: Optional[Reading] = None) -> None:
        self._queue.put(DispatchJob(rule=rule, record=record, reading=reading))
        DISPATCH_QUEUE_SIZE.set(len(self._queue))

    def _on_drop(self, job: DispatchJob) -> None:
        DISPATCH_DROPPED_TOTAL.inc()
        job.record.error = DROPPED_ERROR
        logger.warning("[DISPATCH] Dropped pending actions rule=%s record=%s", job.rule.id, job.record.id)
        self._execution_log.append(job.record)

    def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        for i in range(self._config.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"dispatch-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("[DISPATCH] Started %d workers (max_size=%d)", self._config.workers, self._config.max_size)

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        """Detiene los workers. Con `drain` espera a vaciar el backlog."""
        if drain:
            deadline = time.monotonic() + timeout
            while self._pending() and time.monotonic() < deadline:
                time.sleep(0.05)
        self._running.clear()
        self._queue.wake_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        pending = len(self._queue)
        if pending:
            logger.warning("[DISPATCH] Stopped with %d pending jobs", pending)
        else:
            logger.info("[DISPATCH] Stopped")

    def _pending(self) -> bool:
        with self._completed_lock:
            completed = self._completed
        return len(self._queue) > 0 or self._queue.stats.dequeued > completed

    def _worker_loop(self) -> None:
        while self._running.is_set():
            job = self._queue.get(timeout=self._config.poll_timeout)
            if job is None:
                continue
            DISPATCH_QUEUE_SIZE.set(len(self._queue))
            waited_ms = (time.monotonic() - job.enqueued_at) * 1000
            with self._completed_lock:
                self._max_wait_ms = max(self._max_wait_ms, waited_ms)
            try:
                self._executor.execute(job.rule, job.record, job.reading)
            except Exception as e:
                logger.exception("[DISPATCH] Job crashed rule=%s: %s", job.rule.id, e)
            finally:
                with self._completed_lock:
                    self._completed += 1

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def stats(self) -> dict:
        return {
            **self._queue.stats.to_dict(),
            "workers": len(self._threads),
            "running": self._running.is_set(),
            "max_wait_ms": round(self._max_wait_ms, 1),
        }
