"""Evaluador de reglas.

Por cada lectura evalúa solo las reglas que referencian al sensor
(índice sensor_id → reglas). Al coincidir una regla se marca el disparo
bajo su lock, se crea el ExecutionRecord y las acciones se encolan para
los workers de despacho: la ingesta nunca espera a MQTT ni a HTTP.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..cache.latest_reading import LatestReadingCache
from ..core.domain.execution import ExecutionRecord
from ..core.domain.reading import Reading, utcnow
from ..core.domain.rules import ConditionGroup, Rule, parse_rule
from ..core.domain.sensor import DeviceIdentity
from ..core.monitoring.metrics import RULE_MATCHES_TOTAL
from ..errors import EvaluationError, RuleValidationError
from ..infrastructure.audit.execution_log import ExecutionLog
from ..infrastructure.persistence.repository import AutomationRepository
from .conditions import EvaluationContext, SoftIssue, evaluate, explain
from .state import RulePhase, RuleState

logger = logging.getLogger(__name__)


class JobSink(Protocol):
    """Destino de las reglas disparadas (cola de despacho)."""

    def submit(self, rule: Rule, record: ExecutionRecord, reading: Reading) -> None: ...


class RuleEvaluator:
    """Mantiene las reglas activas y las evalúa contra lecturas en vivo."""

    def __init__(
        self,
        repository: AutomationRepository,
        cache: LatestReadingCache,
        sink: Optional[JobSink] = None,
        execution_log: Optional[ExecutionLog] = None,
        clock: Callable[[], datetime] = utcnow,
        record_misses: bool = False,
        tz: tzinfo = timezone.utc,
    ):
        self._repository = repository
        self._cache = cache
        self._sink = sink
        self._execution_log = execution_log or ExecutionLog(repository)
        self._clock = clock
        self._record_misses = record_misses
        self._tz = tz

        self._rules: Dict[str, Rule] = {}
        self._index: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()
        self._state = RuleState()

        self._stats = {
            "evaluations": 0,
            "matches": 0,
            "cooldown_skips": 0,
            "errors": 0,
            "soft_issues": 0,
        }
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Gestión de reglas
    # ------------------------------------------------------------------

    def load(self, rules: Iterable[Union[Rule, dict]]) -> int:
        """Reemplaza el conjunto de reglas. Las inválidas se omiten con warning.

        Returns:
            Cantidad de reglas cargadas
        """
        parsed: List[Rule] = []
        for data in rules:
            try:
                parsed.append(parse_rule(data))
            except RuleValidationError as e:
                logger.warning("[RULES] Skipping invalid rule: %s", e)

        with self._lock:
            stale = set(self._rules) - {r.id for r in parsed}
            for rule_id in stale:
                self._remove_locked(rule_id)
            for rule in parsed:
                self._upsert_locked(rule)

        logger.info("[RULES] Loaded %d rules (%d sensors indexed)", len(parsed), len(self._index))
        return len(parsed)

    def refresh(self) -> int:
        """Recarga las reglas habilitadas desde el repositorio."""
        return self.load(self._repository.list_enabled_rules())

    def upsert(self, rule: Rule) -> None:
        with self._lock:
            self._upsert_locked(rule)

    def remove(self, rule_id: str) -> None:
        with self._lock:
            self._remove_locked(rule_id)

    def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            self._rules[rule_id] = rule.model_copy(update={"enabled": enabled})
        return self._state.set_enabled(rule_id, enabled)

    def _upsert_locked(self, rule: Rule) -> None:
        self._unindex_locked(rule.id)
        self._rules[rule.id] = rule
        for sensor_id in rule.referenced_sensor_ids():
            self._index[sensor_id].add(rule.id)
        self._state.ensure(rule)

    def _remove_locked(self, rule_id: str) -> None:
        self._unindex_locked(rule_id)
        self._rules.pop(rule_id, None)
        self._state.remove(rule_id)

    def _unindex_locked(self, rule_id: str) -> None:
        previous = self._rules.get(rule_id)
        if previous is None:
            return
        for sensor_id in previous.referenced_sensor_ids():
            ids = self._index.get(sensor_id)
            if ids is not None:
                ids.discard(rule_id)
                if not ids:
                    del self._index[sensor_id]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            return self._rules.get(rule_id)

    def candidates(self, sensor_id: str) -> List[Rule]:
        """Reglas que referencian al sensor, por prioridad."""
        with self._lock:
            rules = [self._rules[rid] for rid in self._index.get(sensor_id, ()) if rid in self._rules]
        return sorted(rules, key=lambda r: (r.priority, r.id))

    def phase(self, rule_id: str) -> Optional[RulePhase]:
        return self._state.phase(rule_id, self._clock())

    # ------------------------------------------------------------------
    # Evaluación
    # ------------------------------------------------------------------

    def _lookup_for(self, reading: Optional[Reading]) -> Callable[[str], Optional[Reading]]:
        def lookup(sensor_id: str) -> Optional[Reading]:
            if reading is not None and sensor_id == reading.sensor_id:
                return reading
            return self._cache.get(sensor_id)

        return lookup

    def _device(self, device_id: str) -> Optional[DeviceIdentity]:
        try:
            return self._repository.get_device(device_id)
        except SQLAlchemyError as e:
            logger.warning("[RULES] Device lookup failed device=%s: %s", device_id, e)
            return None

    def _context(self, reading: Optional[Reading], now: Optional[datetime] = None) -> EvaluationContext:
        return EvaluationContext(
            readings=self._lookup_for(reading),
            now=now or self._clock(),
            devices=self._device,
            tz=self._tz,
        )

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount

    def on_reading(self, reading: Reading) -> List[ExecutionRecord]:
        """Evalúa las reglas candidatas para una lectura.

        Returns:
            Registros de las reglas que coincidieron y se dispararon
        """
        fired: List[ExecutionRecord] = []

        for rule in self.candidates(reading.sensor_id):
            entry = self._state.get(rule.id)
            if entry is None:
                continue

            started = time.perf_counter()
            issues: List[SoftIssue] = []
            error: Optional[str] = None
            matched = False

            with entry.lock:
                now = self._clock()
                phase = entry.phase(now)
                if phase is RulePhase.DISABLED:
                    continue
                if phase is RulePhase.COOLDOWN:
                    self._count("cooldown_skips")
                    logger.debug(
                        "[RULES] rule=%s in cooldown (%.0fs left)",
                        rule.id,
                        entry.cooldown_remaining(now),
                    )
                    continue

                self._count("evaluations")
                try:
                    matched = evaluate(rule.conditions, self._context(reading, now), issues)
                except EvaluationError as e:
                    error = str(e)
                if matched:
                    entry.last_triggered_at = now

            for issue in issues:
                logger.info("[RULES] soft issue rule=%s %s", rule.id, issue)
            if issues:
                self._count("soft_issues", len(issues))

            if error is not None:
                self._count("errors")
                logger.warning("[RULES] rule=%s evaluation error: %s", rule.id, error)
                self._execution_log.append(
                    ExecutionRecord(
                        rule_id=rule.id,
                        rule_name=rule.name,
                        matched=False,
                        trigger_sensor_id=reading.sensor_id,
                        triggered_at=now,
                        error=error,
                        duration_ms=(time.perf_counter() - started) * 1000,
                    )
                )
                continue

            if not matched:
                if self._record_misses:
                    self._execution_log.append(
                        ExecutionRecord(
                            rule_id=rule.id,
                            rule_name=rule.name,
                            matched=False,
                            trigger_sensor_id=reading.sensor_id,
                            triggered_at=now,
                            duration_ms=(time.perf_counter() - started) * 1000,
                        )
                    )
                continue

            self._count("matches")
            RULE_MATCHES_TOTAL.inc()
            record = ExecutionRecord(
                rule_id=rule.id,
                rule_name=rule.name,
                matched=True,
                trigger_sensor_id=reading.sensor_id,
                triggered_at=now,
            )
            logger.info(
                "[RULES] rule=%s (%s) matched on sensor=%s, %d actions",
                rule.id,
                rule.name,
                reading.sensor_id,
                len(rule.actions),
            )

            try:
                self._repository.mark_rule_triggered(rule.id, now)
            except SQLAlchemyError as e:
                logger.error("[RULES] Failed to persist last trigger rule=%s: %s", rule.id, e)

            if self._sink is not None:
                self._sink.submit(rule, record, reading)
            else:
                self._execution_log.append(record)
            fired.append(record)

        return fired

    def test_conditions(
        self,
        target: Union[Rule, ConditionGroup, list, dict],
        reading: Optional[Reading] = None,
    ) -> dict:
        """Prueba en seco: evalúa sin cambiar estado ni ejecutar acciones."""
        if isinstance(target, Rule):
            group = target.conditions
        elif isinstance(target, ConditionGroup):
            group = target
        else:
            try:
                group = ConditionGroup.model_validate(target)
            except ValidationError as e:
                raise RuleValidationError([err["msg"] for err in e.errors()]) from e
        return explain(group, self._context(reading))

    @property
    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        with self._lock:
            stats["rules"] = len(self._rules)
            stats["indexed_sensors"] = len(self._index)
        return stats
