"""Storage module."""

from storage.sink import AuditLogSink
from storage.sqlite import SQLiteAuditExporter, SQLiteAuditStore

__all__ = ["SQLiteAuditStore", "SQLiteAuditExporter", "AuditLogSink"]
