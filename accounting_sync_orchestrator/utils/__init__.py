"""
Utilities package for Accounting Sync Orchestrator

Contains utility modules for persistence, configuration, logging and metrics.
"""

from .database import DatabaseManager, InMemoryMigrationStore, MigrationStore
from .config import OrchestratorSettings
from .logger import setup_logger, get_logger, set_log_context, LoggerContext

__all__ = [
    "DatabaseManager",
    "InMemoryMigrationStore",
    "MigrationStore",
    "OrchestratorSettings",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext"
]
