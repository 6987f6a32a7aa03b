"""
Connectors for Accounting Sync Orchestrator

Interfaces and implementations for the record source, the accounting
system client and the audit sink.
"""

from .base import RecordSource, AccountingClient, AuditSink
from .memory import InMemoryRecordSource, FileRecordSource, InMemoryAuditSink, LoggingAuditSink
from .accounting_api import HttpAccountingClient
from .audit import DatabaseAuditSink

__all__ = [
    "RecordSource",
    "AccountingClient",
    "AuditSink",
    "InMemoryRecordSource",
    "FileRecordSource",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "HttpAccountingClient",
    "DatabaseAuditSink"
]
