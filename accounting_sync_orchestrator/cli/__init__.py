"""
CLI package for Accounting Sync Orchestrator

Provides command-line interface for analysing, validating and running migrations.
"""

from .main import main, cli

__all__ = ["main", "cli"]
