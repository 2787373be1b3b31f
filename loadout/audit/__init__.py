"""Audit history with undo/redo over explicit key snapshots."""

from .audit_log import HISTORY_LIMIT, AuditAction, AuditEntry, AuditLog, UndoPayload

__all__ = ["HISTORY_LIMIT", "AuditAction", "AuditEntry", "AuditLog", "UndoPayload"]
