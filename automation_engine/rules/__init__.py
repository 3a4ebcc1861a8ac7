"""Evaluación y gestión de reglas de automatización."""

from .conditions import FIELD_ALIASES, EvaluationContext, SoftIssue, evaluate, explain
from .evaluator import RuleEvaluator
from .service import RuleService
from .state import RulePhase, RuleState
from .validation import find_reference_problems, validate_rule_references

__all__ = [
    "EvaluationContext",
    "FIELD_ALIASES",
    "RuleEvaluator",
    "RulePhase",
    "RuleService",
    "RuleState",
    "SoftIssue",
    "evaluate",
    "explain",
    "find_reference_problems",
    "validate_rule_references",
]
