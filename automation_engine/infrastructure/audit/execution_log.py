"""Execution Log - registro append-only de evaluaciones de reglas.

Cada coincidencia (y opcionalmente cada no-coincidencia) deja una entrada
con el resultado de todas sus acciones. Si la escritura en BD falla se
escribe al logger estructurado "audit" para no perder la traza.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ...core.domain.execution import ExecutionRecord
from ..persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)


class ExecutionLog:
    """Append de ExecutionRecord sobre el repositorio."""

    def __init__(self, repository: Optional[AutomationRepository]):
        self._repository = repository
        self._fallback_logger = logging.getLogger("audit")
        self._appended = 0
        self._fallbacks = 0

    def append(self, record: ExecutionRecord) -> None:
        if self._repository is not None:
            try:
                self._repository.append_execution_record(record)
                self._appended += 1
                logger.debug(
                    "[AUDIT] rule=%s matched=%s ok=%d failed=%d",
                    record.rule_id,
                    record.matched,
                    record.actions_succeeded,
                    record.actions_failed,
                )
                return
            except SQLAlchemyError as e:
                logger.warning("[AUDIT] Failed to write execution record: %s", e)

        self._fallbacks += 1
        self._fallback_logger.info("EXECUTION", extra={"execution": record.to_dict()})

    @property
    def stats(self) -> dict:
        return {"appended": self._appended, "fallbacks": self._fallbacks}
