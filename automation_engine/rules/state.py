"""Estado en memoria de cada regla: habilitada, último disparo y lock.

La transición ARMED → COOLDOWN ocurre solo bajo el lock de la regla, de
modo que dos lecturas concurrentes no pueden disparar la misma regla dos
veces dentro de una ventana de cooldown.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from ..core.domain.rules import Rule


class RulePhase(Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    COOLDOWN = "cooldown"


@dataclass
class RuleStateEntry:
    enabled: bool
    cooldown_seconds: float
    last_triggered_at: Optional[datetime] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def phase(self, now: datetime) -> RulePhase:
        if not self.enabled:
            return RulePhase.DISABLED
        if self.last_triggered_at is not None and now - self.last_triggered_at < timedelta(
            seconds=self.cooldown_seconds
        ):
            return RulePhase.COOLDOWN
        return RulePhase.ARMED

    def cooldown_remaining(self, now: datetime) -> float:
        if self.last_triggered_at is None:
            return 0.0
        elapsed = (now - self.last_triggered_at).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)


class RuleState:
    """Mapa explícito rule_id → RuleStateEntry."""

    def __init__(self):
        self._entries: Dict[str, RuleStateEntry] = {}
        self._guard = threading.Lock()

    def ensure(self, rule: Rule) -> RuleStateEntry:
        """Crea o actualiza la entrada de una regla.

        El último disparo conocido nunca retrocede: recargar una regla
        desde BD no reabre una ventana de cooldown en curso.
        """
        with self._guard:
            entry = self._entries.get(rule.id)
            if entry is None:
                entry = RuleStateEntry(
                    enabled=rule.enabled,
                    cooldown_seconds=rule.effective_cooldown,
                    last_triggered_at=rule.last_triggered_at,
                )
                self._entries[rule.id] = entry
                return entry

        with entry.lock:
            entry.enabled = rule.enabled
            entry.cooldown_seconds = rule.effective_cooldown
            if rule.last_triggered_at is not None and (
                entry.last_triggered_at is None or rule.last_triggered_at > entry.last_triggered_at
            ):
                entry.last_triggered_at = rule.last_triggered_at
        return entry

    def get(self, rule_id: str) -> Optional[RuleStateEntry]:
        with self._guard:
            return self._entries.get(rule_id)

    def remove(self, rule_id: str) -> None:
        with self._guard:
            self._entries.pop(rule_id, None)

    def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        entry = self.get(rule_id)
        if entry is None:
            return False
        with entry.lock:
            entry.enabled = enabled
        return True

    def phase(self, rule_id: str, now: datetime) -> Optional[RulePhase]:
        entry = self.get(rule_id)
        if entry is None:
            return None
        with entry.lock:
            return entry.phase(now)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
