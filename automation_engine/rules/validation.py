"""Validación referencial de reglas contra sensores y dispositivos registrados."""

from __future__ import annotations

from typing import List

from ..core.domain.rules import Rule
from ..errors import RuleValidationError
from ..infrastructure.persistence.repository import AutomationRepository


def find_reference_problems(rule: Rule, repository: AutomationRepository) -> List[str]:
    """Lista de problemas (vacía si la regla es válida)."""
    problems: List[str] = []

    for sensor_id in sorted(rule.referenced_sensor_ids()):
        if repository.get_sensor(sensor_id) is None:
            problems.append(f"unknown sensor {sensor_id!r}")

    for device_id in sorted(rule.referenced_device_ids()):
        device = repository.get_device(device_id)
        if device is None:
            problems.append(f"unknown device {device_id!r}")
        elif not device.active:
            problems.append(f"device {device_id!r} is inactive")

    if not rule.conditions.leaves():
        problems.append("rule has no conditions")
    elif not rule.conditions.sensor_leaves():
        # Solo las lecturas disparan la evaluación
        problems.append("rule needs at least one sensor condition")

    return problems


def validate_rule_references(rule: Rule, repository: AutomationRepository) -> None:
    """Raises:
        RuleValidationError: con todos los problemas encontrados
    """
    problems = find_reference_problems(rule, repository)
    if problems:
        raise RuleValidationError(problems, rule_id=rule.id)
