"""Shared infrastructure: logging, configuration files and asyncio helpers."""

from .asyncio_utils import cancel_tasks, create_logged_task
from .config_manager import ConfigManager, get_config_manager
from .logging_utils import StructuredLogger, get_module_logger

__all__ = [
    "ConfigManager",
    "StructuredLogger",
    "cancel_tasks",
    "create_logged_task",
    "get_config_manager",
    "get_module_logger",
]
