from .repository import AutomationRepository, SqlAutomationRepository
from .schema import ensure_schema

__all__ = ["AutomationRepository", "SqlAutomationRepository", "ensure_schema"]
