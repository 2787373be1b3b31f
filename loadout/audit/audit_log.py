"""Bounded audit history with snapshot-based undo and redo.

Each reversible entry carries the exact prior values of the keys its
mutation could touch. Undo restores those values; the values that were
current just before the undo become the redo payload, and vice versa.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable

from ..events import REASON_REDO, REASON_UNDO, StateEvents
from ..storage.state_store import StateStore
from ..storage.tracked_keys import AUDIT_LOG_KEY, AUDIT_REDO_KEY

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 2000

RESTORE_KEYS = "RESTORE_KEYS"


class AuditAction(str, Enum):
    """Kinds of audited mutation."""

    ADD_ITEM = "ADD_ITEM"
    DELETE_ITEM = "DELETE_ITEM"
    EDIT_ITEM = "EDIT_ITEM"
    ADJUST_QTY = "ADJUST_QTY"
    MOVE_QTY = "MOVE_QTY"
    ADD_TO_LOCATION = "ADD_TO_LOCATION"


@dataclass
class UndoPayload:
    """Exact prior values for a fixed key list; None means absent."""

    keys: dict[str, str | None]
    kind: str = RESTORE_KEYS

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "keys": dict(self.keys)}

    @classmethod
    def from_dict(cls, data: Any) -> "UndoPayload | None":
        if not isinstance(data, dict) or data.get("kind") != RESTORE_KEYS:
            return None
        keys = data.get("keys")
        if not isinstance(keys, dict):
            return None
        return cls(
            keys={
                k: v for k, v in keys.items() if v is None or isinstance(v, str)
            },
        )


@dataclass
class AuditEntry:
    """A single audited mutation."""

    id: str
    ts: int  # epoch milliseconds
    action: AuditAction
    actor: str = ""
    item_id: str | None = None
    item_name: str | None = None
    qty: float | None = None
    qty_before: float | None = None
    qty_after: float | None = None
    from_location: str | None = None
    to_location: str | None = None
    note: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    undo: UndoPayload | None = None

    @property
    def reversible(self) -> bool:
        return self.undo is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "ts": self.ts,
            "action": self.action.value,
            "actor": self.actor,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "qty": self.qty,
            "qty_before": self.qty_before,
            "qty_after": self.qty_after,
            "from_location": self.from_location,
            "to_location": self.to_location,
            "note": self.note,
            "details": self.details,
            "undo": self.undo.to_dict() if self.undo else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            ts=int(data["ts"]),
            action=AuditAction(data["action"]),
            actor=data.get("actor") or "",
            item_id=data.get("item_id"),
            item_name=data.get("item_name"),
            qty=data.get("qty"),
            qty_before=data.get("qty_before"),
            qty_after=data.get("qty_after"),
            from_location=data.get("from_location"),
            to_location=data.get("to_location"),
            note=data.get("note"),
            details=data.get("details") or {},
            undo=UndoPayload.from_dict(data.get("undo")),
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


class AuditLog:
    """Audit history plus undo/redo stacks persisted in a StateStore.

    Both lists are most-recent-first and capped at ``limit`` entries.
    """

    def __init__(
        self,
        store: StateStore,
        events: StateEvents | None = None,
        limit: int = HISTORY_LIMIT,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the audit log.

        Args:
            store: Store holding both the audited keys and the log itself.
            events: Receives a state change after every undo/redo.
            limit: Maximum entries kept in each of the two lists.
            clock: Millisecond clock, defaults to wall time.
        """
        self._store = store
        self._events = events
        self._limit = limit
        self._clock = clock or _now_ms
        self._entries = self._load(AUDIT_LOG_KEY)
        self._redo = self._load(AUDIT_REDO_KEY)

    # ==================== Persistence ====================

    def _load(self, storage_key: str) -> list[AuditEntry]:
        raw = self._store.get(storage_key)
        if not raw:
            return []

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable audit data under {storage_key}")
            return []

        if not isinstance(data, list):
            logger.warning(f"Discarding non-list audit data under {storage_key}")
            return []

        entries = []
        for item in data:
            try:
                entries.append(AuditEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed audit entry: {e}")
        return entries[: self._limit]

    def _save(self) -> None:
        self._store.set(
            AUDIT_LOG_KEY, json.dumps([e.to_dict() for e in self._entries])
        )
        self._store.set(
            AUDIT_REDO_KEY, json.dumps([e.to_dict() for e in self._redo])
        )

    # ==================== Snapshot / restore ====================

    def snapshot_keys(self, keys: Iterable[str]) -> dict[str, str | None]:
        """Read the current value of each key, None where absent."""
        return {key: self._store.get(key) for key in keys}

    def restore_keys(self, values: dict[str, str | None]) -> None:
        """Write each value back, removing keys whose value is None."""
        for key, value in values.items():
            if value is None:
                self._store.remove(key)
            else:
                self._store.set(key, value)

    def make_undo(self, keys: Iterable[str]) -> UndoPayload:
        """Capture an undo payload. Call before performing the mutation."""
        return UndoPayload(keys=self.snapshot_keys(keys))

    # ==================== Recording ====================

    def add_entry(
        self,
        action: AuditAction | str,
        actor: str = "",
        undo: UndoPayload | None = None,
        ts: int | None = None,
        **subject: Any,
    ) -> str:
        """Record an entry and clear the redo stack.

        Args:
            action: Kind of mutation.
            actor: User who performed it.
            undo: Payload from make_undo(), or None for informational entries.
            ts: Timestamp override in epoch milliseconds.
            **subject: AuditEntry subject fields (item_id, qty, note, ...).

        Returns:
            The new entry id.
        """
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            ts=ts if ts is not None else self._clock(),
            action=AuditAction(action),
            actor=actor,
            undo=undo,
            **subject,
        )

        self._entries = [entry, *self._entries][: self._limit]
        self._redo = []
        self._save()

        logger.debug(f"Recorded {entry.action.value} entry {entry.id}")
        return entry.id

    def record(
        self,
        action: AuditAction | str,
        keys: Iterable[str],
        mutate: Callable[[], Any],
        actor: str = "",
        **subject: Any,
    ) -> str:
        """Run mutate() and record it as a reversible entry over keys."""
        undo = self.make_undo(keys)
        mutate()
        return self.add_entry(action, actor=actor, undo=undo, **subject)

    # ==================== Undo / redo ====================

    def undo_last(self) -> bool:
        """Revert the most recent entry.

        Returns:
            False if there is no entry or it cannot be reversed.
        """
        if not self._entries or self._entries[0].undo is None:
            return False

        last = self._entries[0]
        keys = list(last.undo.keys)
        redo_payload = self.make_undo(keys)

        self.restore_keys(last.undo.keys)

        self._entries = self._entries[1:]
        self._redo = [replace(last, undo=redo_payload), *self._redo][: self._limit]
        self._save()

        logger.info(f"Undid {last.action.value} entry {last.id}")
        if self._events:
            self._events.emit(REASON_UNDO, keys)
        return True

    def redo_last(self) -> bool:
        """Reapply the most recently undone entry.

        Returns:
            False if nothing has been undone since the last new entry.
        """
        if not self._redo or self._redo[0].undo is None:
            return False

        last = self._redo[0]
        keys = list(last.undo.keys)
        undo_payload = self.make_undo(keys)

        self.restore_keys(last.undo.keys)

        self._redo = self._redo[1:]
        redone = replace(last, undo=undo_payload, ts=self._clock())
        self._entries = [redone, *self._entries][: self._limit]
        self._save()

        logger.info(f"Redid {last.action.value} entry {last.id}")
        if self._events:
            self._events.emit(REASON_REDO, keys)
        return True

    # ==================== Inspection ====================

    @property
    def entries(self) -> list[AuditEntry]:
        """Recorded entries, most recent first."""
        return list(self._entries)

    @property
    def redo_stack(self) -> list[AuditEntry]:
        """Undone entries available for redo, most recent first."""
        return list(self._redo)

    @property
    def can_undo(self) -> bool:
        return bool(self._entries) and self._entries[0].undo is not None

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)
