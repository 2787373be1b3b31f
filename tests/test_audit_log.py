"""Tests for the audit log and undo/redo."""

import json

import pytest

from loadout.audit import AuditAction, AuditEntry, AuditLog, UndoPayload
from loadout.events import StateEvents
from loadout.storage import MemoryStateStore


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000):
        self.now = start

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return StateEvents()


@pytest.fixture
def audit(store, events, clock):
    return AuditLog(store, events=events, clock=clock)


def set_qty(store, item_id: str, qty: int) -> None:
    """A stand-in business mutation touching one key."""
    store.set(f"inventory.qty.{item_id}", str(qty))


class TestSnapshotRestore:
    """Tests for key snapshots."""

    def test_snapshot_keys(self, audit, store):
        """Test reading present and absent keys."""
        store.set("x", "1")

        assert audit.snapshot_keys(["x", "y"]) == {"x": "1", "y": None}

    def test_snapshot_has_no_side_effects(self, audit, store):
        """Test that snapshotting never writes."""
        audit.snapshot_keys(["x"])

        assert store.list_keys() == []

    def test_restore_keys(self, audit, store):
        """Test writing values and removing null keys."""
        store.set("y", "present")

        audit.restore_keys({"x": "1", "y": None})

        assert store.get("x") == "1"
        assert store.get("y") is None

    def test_make_undo(self, audit, store):
        """Test that make_undo captures the current values."""
        store.set("x", "before")

        payload = audit.make_undo(["x", "y"])

        assert payload.kind == "RESTORE_KEYS"
        assert payload.keys == {"x": "before", "y": None}


class TestAddEntry:
    """Tests for recording entries."""

    def test_add_entry_assigns_id_and_ts(self, audit, clock):
        """Test that entries get an id and the current timestamp."""
        entry_id = audit.add_entry(AuditAction.ADD_ITEM, actor="sam", item_name="Drill")

        entry = audit.entries[0]
        assert entry.id == entry_id
        assert entry.ts == clock.now
        assert entry.actor == "sam"
        assert entry.item_name == "Drill"
        assert entry.undo is None

    def test_add_entry_explicit_ts(self, audit):
        """Test overriding the timestamp."""
        audit.add_entry(AuditAction.EDIT_ITEM, ts=42)

        assert audit.entries[0].ts == 42

    def test_add_entry_accepts_string_action(self, audit):
        """Test that action names are accepted as strings."""
        audit.add_entry("MOVE_QTY", from_location="A", to_location="B", qty=2)

        entry = audit.entries[0]
        assert entry.action is AuditAction.MOVE_QTY
        assert entry.from_location == "A"
        assert entry.qty == 2

    def test_add_entry_rejects_unknown_action(self, audit):
        """Test that unknown action kinds are rejected."""
        with pytest.raises(ValueError):
            audit.add_entry("BURN_ITEM")

    def test_entries_most_recent_first(self, audit):
        """Test entry ordering."""
        audit.add_entry(AuditAction.ADD_ITEM, item_id="1")
        audit.add_entry(AuditAction.ADD_ITEM, item_id="2")

        assert [e.item_id for e in audit.entries] == ["2", "1"]

    def test_capacity_drops_oldest(self, store, clock):
        """Test that the entry list is bounded."""
        audit = AuditLog(store, limit=3, clock=clock)
        for i in range(5):
            audit.add_entry(AuditAction.ADD_ITEM, item_id=str(i))

        assert [e.item_id for e in audit.entries] == ["4", "3", "2"]

    def test_record_captures_pre_mutation_state(self, audit, store):
        """Test that record() snapshots before mutating."""
        set_qty(store, "drill", 5)

        audit.record(
            AuditAction.ADJUST_QTY,
            ["inventory.qty.drill"],
            lambda: set_qty(store, "drill", 3),
            qty_before=5,
            qty_after=3,
        )

        entry = audit.entries[0]
        assert entry.undo.keys == {"inventory.qty.drill": "5"}
        assert store.get("inventory.qty.drill") == "3"

    def test_record_failing_mutation_records_nothing(self, audit):
        """Test that a failed mutation leaves no entry."""

        def boom():
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            audit.record(AuditAction.EDIT_ITEM, ["x"], boom)

        assert audit.entries == []


class TestUndoRedo:
    """Tests for undo and redo."""

    def test_undo_restores_prior_values(self, audit, store):
        """Test undo with a present and an absent prior value."""
        store.set("x", "new")
        store.set("y", "added")
        audit.add_entry(
            AuditAction.EDIT_ITEM,
            undo=UndoPayload(keys={"x": "old", "y": None}),
        )

        assert audit.undo_last() is True

        assert store.get("x") == "old"
        assert store.get("y") is None
        assert audit.entries == []
        redo = audit.redo_stack[0]
        assert redo.undo.keys == {"x": "new", "y": "added"}

    def test_undo_then_redo_restores_post_state(self, audit, store):
        """Test that undo followed by redo gives the post-mutation state."""
        set_qty(store, "drill", 5)
        keys = ["inventory.qty.drill", "inventory.qty.saw"]

        def mutate():
            set_qty(store, "drill", 2)
            set_qty(store, "saw", 3)

        audit.record(AuditAction.MOVE_QTY, keys, mutate)
        post_state = audit.snapshot_keys(keys)

        audit.undo_last()
        assert audit.snapshot_keys(keys) == {
            "inventory.qty.drill": "5",
            "inventory.qty.saw": None,
        }

        assert audit.redo_last() is True
        assert audit.snapshot_keys(keys) == post_state

    def test_redo_with_nothing_undone(self, audit, store):
        """Test that redo without a prior undo returns False."""
        audit.record(AuditAction.ADD_ITEM, ["x"], lambda: store.set("x", "1"))

        assert audit.redo_last() is False
        assert store.get("x") == "1"

    def test_new_entry_invalidates_redo(self, audit, store):
        """Test that a new mutation after undo clears the redo stack."""
        audit.record(AuditAction.ADD_ITEM, ["x"], lambda: store.set("x", "1"))
        audit.undo_last()
        assert audit.can_redo

        audit.record(AuditAction.ADD_ITEM, ["y"], lambda: store.set("y", "1"))

        assert audit.redo_last() is False
        assert audit.redo_stack == []

    def test_undo_informational_entry(self, audit, store):
        """Test that entries without undo payload cannot be undone."""
        store.set("x", "1")
        audit.add_entry(AuditAction.EDIT_ITEM, note="info only")

        assert audit.can_undo is False
        assert audit.undo_last() is False
        assert store.get("x") == "1"
        assert len(audit.entries) == 1

    def test_undo_empty_log(self, audit):
        """Test undo on an empty log."""
        assert audit.undo_last() is False

    def test_redo_gets_fresh_timestamp(self, audit, store, clock):
        """Test that a redone entry is re-stamped."""
        audit.record(AuditAction.ADD_ITEM, ["x"], lambda: store.set("x", "1"))
        audit.undo_last()

        clock.now = 5_000
        audit.redo_last()

        assert audit.entries[0].ts == 5_000

    def test_multiple_undos_in_order(self, audit, store):
        """Test undoing several entries walks back through history."""
        audit.record(AuditAction.ADJUST_QTY, ["q"], lambda: store.set("q", "1"))
        audit.record(AuditAction.ADJUST_QTY, ["q"], lambda: store.set("q", "2"))

        audit.undo_last()
        assert store.get("q") == "1"
        audit.undo_last()
        assert store.get("q") is None

        audit.redo_last()
        assert store.get("q") == "1"
        audit.redo_last()
        assert store.get("q") == "2"

    def test_redo_stack_is_bounded(self, store, clock):
        """Test that the redo stack is capped."""
        audit = AuditLog(store, limit=2, clock=clock)
        for i in range(2):
            audit.record(AuditAction.ADD_ITEM, [f"k{i}"], lambda i=i: store.set(f"k{i}", "v"))

        audit.undo_last()
        audit.undo_last()

        assert len(audit.redo_stack) == 2
        assert audit.undo_last() is False

    def test_undo_emits_state_change(self, audit, store, events):
        """Test that undo and redo signal a refresh."""
        received = []
        events.subscribe(received.append)
        audit.record(AuditAction.ADD_ITEM, ["x"], lambda: store.set("x", "1"))

        audit.undo_last()
        audit.redo_last()

        assert [c.reason for c in received] == ["undo", "redo"]
        assert received[0].keys == ("x",)


class TestPersistence:
    """Tests for persisted history."""

    def test_entries_survive_reload(self, store, clock):
        """Test that a new AuditLog sees saved entries and redo stack."""
        audit = AuditLog(store, clock=clock)
        audit.record(AuditAction.ADD_ITEM, ["x"], lambda: store.set("x", "1"), item_id="x")
        audit.record(AuditAction.ADD_ITEM, ["y"], lambda: store.set("y", "1"), item_id="y")
        audit.undo_last()

        reloaded = AuditLog(store, clock=clock)

        assert [e.item_id for e in reloaded.entries] == ["x"]
        assert [e.item_id for e in reloaded.redo_stack] == ["y"]
        assert reloaded.redo_last() is True
        assert store.get("y") == "1"

    def test_corrupt_history_loads_empty(self, store):
        """Test that unreadable history is discarded."""
        store.set("audit.log.v1", "{not json")
        store.set("audit.redo.v1", json.dumps({"not": "a list"}))

        audit = AuditLog(store)

        assert audit.entries == []
        assert audit.redo_stack == []

    def test_malformed_entries_skipped(self, store):
        """Test that individual bad entries are dropped."""
        good = AuditEntry(id="a", ts=1, action=AuditAction.ADD_ITEM).to_dict()
        store.set("audit.log.v1", json.dumps([good, {"id": "b"}]))

        audit = AuditLog(store)

        assert [e.id for e in audit.entries] == ["a"]

    def test_entry_roundtrip_keeps_null_values(self):
        """Test that null prior values survive serialization."""
        entry = AuditEntry(
            id="e1",
            ts=10,
            action=AuditAction.DELETE_ITEM,
            details={"part_number": "PN-1"},
            undo=UndoPayload(keys={"x": None, "y": "1"}),
        )

        restored = AuditEntry.from_dict(json.loads(json.dumps(entry.to_dict())))

        assert restored.undo.keys == {"x": None, "y": "1"}
        assert restored.details == {"part_number": "PN-1"}

    def test_store_failure_propagates(self, clock):
        """Test that store errors surface to the caller."""

        class BrokenStore(MemoryStateStore):
            def set(self, key, value):
                raise OSError("read-only storage")

        audit = AuditLog(BrokenStore(), clock=clock)

        with pytest.raises(OSError):
            audit.add_entry(AuditAction.ADD_ITEM)
