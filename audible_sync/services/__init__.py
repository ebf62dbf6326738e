"""
audible-sync 服务层
"""

from .logger import LoggerInterface, PythonLogger, RedactingFilter, configure_logging, get_logger
from .operations import AudibleOperations, OperationResult

__all__ = [
    "LoggerInterface",
    "PythonLogger",
    "get_logger",
    "RedactingFilter",
    "configure_logging",
    "AudibleOperations",
    "OperationResult",
]
