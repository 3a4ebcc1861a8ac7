from .execution_log import ExecutionLog

__all__ = ["ExecutionLog"]
