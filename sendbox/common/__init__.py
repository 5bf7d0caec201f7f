# sendbox/common/__init__.py
"""
Общие утилиты, константы, ошибки и логгер.
"""

from sendbox.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from sendbox.common.constants import TypeMsg
from sendbox.common.errors import DomainError
from sendbox.common.localization import get_text, load_lang_dict

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "DomainError",
    "get_text",
    "load_lang_dict",
]
