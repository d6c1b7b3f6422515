"""
Common utilities for m365-inventory-hub
"""

from .config import config, ConfigError
from .db import get_db, session_scope, init_db, check_db_connection
from .logging import setup_logging, get_logger, log_context

__all__ = [
    'config',
    'ConfigError',
    'get_db',
    'session_scope',
    'init_db',
    'check_db_connection',
    'setup_logging',
    'get_logger',
    'log_context',
]
