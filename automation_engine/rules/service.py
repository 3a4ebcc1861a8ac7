"""Alta y modificación de reglas con validación referencial.

Una regla que referencia un sensor o dispositivo inexistente se rechaza
aquí, al crearla o actualizarla, y no en el momento de ejecutarla.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping

from ..core.domain.rules import Rule, parse_rule
from ..errors import RuleValidationError
from ..infrastructure.persistence.repository import AutomationRepository
from .evaluator import RuleEvaluator
from .validation import find_reference_problems, validate_rule_references

logger = logging.getLogger(__name__)


class RuleService:
    """Operaciones de gestión de reglas."""

    def __init__(self, repository: AutomationRepository, evaluator: RuleEvaluator):
        self._repository = repository
        self._evaluator = evaluator

    def create_rule(self, data: Any) -> Rule:
        rule = parse_rule(data)
        if self._repository.get_rule(rule.id) is not None:
            raise RuleValidationError([f"rule {rule.id!r} already exists"], rule_id=rule.id)
        return self._save(rule)

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> Rule:
        current = self._repository.get_rule(rule_id)
        if current is None:
            raise RuleValidationError([f"rule {rule_id!r} not found"], rule_id=rule_id)
        merged = {**current, **dict(changes), "id": rule_id}
        return self._save(parse_rule(merged))

    def set_enabled(self, rule_id: str, enabled: bool) -> Rule:
        return self.update_rule(rule_id, {"enabled": enabled})

    def _save(self, rule: Rule) -> Rule:
        validate_rule_references(rule, self._repository)
        self._repository.save_rule(rule)
        if rule.enabled:
            self._evaluator.upsert(rule)
        else:
            self._evaluator.remove(rule.id)
        logger.info("[RULES] Saved rule=%s enabled=%s", rule.id, rule.enabled)
        return rule

    def check_rules(self) -> Dict[str, List[str]]:
        """Problemas de las reglas ya guardadas: rule_id → lista de problemas."""
        report: Dict[str, List[str]] = {}
        for row in self._repository.list_rules():
            rule_id = str(row.get("id"))
            try:
                rule = parse_rule(row)
            except RuleValidationError as e:
                report[rule_id] = e.problems
                continue
            problems = find_reference_problems(rule, self._repository)
            if problems:
                report[rule_id] = problems
        return report

    def rule_stats(self, rule_id: str, days: int = 7) -> dict:
        end = datetime.now(timezone.utc)
        return self._repository.get_rule_stats(rule_id, end - timedelta(days=days), end)
