# src/common/__init__.py
"""
Общие утилиты: константы, ошибки, деньги, логгер.
"""

from src.common.logger import get_logger, log_info, log_error, log_warning, log_debug, log_critical
from src.common.constants import TypeMsg
from src.common.errors import CoreError

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "log_critical",
    "TypeMsg",
    "CoreError",
]
