"""Structured logging utilities."""

from .audit import (
    AuditEvent,
    IndexEvent,
    IndexEventLog,
    JsonlAuditLogger,
    sanitize_arguments,
    utc_timestamp,
)

__all__ = [
    "AuditEvent",
    "IndexEvent",
    "IndexEventLog",
    "JsonlAuditLogger",
    "sanitize_arguments",
    "utc_timestamp",
]
