"""Tests for CLI commands."""

import argparse
import json
from unittest.mock import patch

import pytest

from loadout.__main__ import cmd_history, cmd_redo, cmd_status, cmd_sync, cmd_undo
from loadout.audit import AuditAction, AuditLog
from loadout.storage import SQLiteStateStore
from loadout.storage.tracked_keys import DEVICE_ID_KEY, LAST_SYNC_TS_KEY


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for key in ("LOADOUT_SYNC_URL", "LOADOUT_SYNC_API_KEY", "LOADOUT_STORAGE_DB_PATH"):
        monkeypatch.delenv(key, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(f"storage:\n  db_path: {tmp_path / 'state.db'}\n")
    return path


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "state.db"


def make_args(config_path, **kwargs) -> argparse.Namespace:
    return argparse.Namespace(config=config_path, **kwargs)


class TestHistoryCommands:
    """Tests for history, undo and redo."""

    def test_undo_and_redo(self, config_path, db_path, capsys):
        """Test reverting and reapplying the last change from the CLI."""
        store = SQLiteStateStore(db_path)
        audit = AuditLog(store)
        audit.record(AuditAction.ADD_ITEM, ["inventory.a"], lambda: store.set("inventory.a", "1"))
        store.close()

        assert cmd_undo(make_args(config_path)) == 0
        assert cmd_undo(make_args(config_path)) == 1
        assert cmd_redo(make_args(config_path)) == 0

        reopened = SQLiteStateStore(db_path)
        assert reopened.get("inventory.a") == "1"
        reopened.close()
        assert "Undo: done" in capsys.readouterr().out

    def test_history(self, config_path, db_path, capsys):
        """Test listing entries."""
        store = SQLiteStateStore(db_path)
        AuditLog(store).add_entry(AuditAction.EDIT_ITEM, actor="sam", item_name="Drill")
        store.close()

        assert cmd_history(make_args(config_path, limit=5)) == 0

        out = capsys.readouterr().out
        assert "EDIT_ITEM" in out
        assert "Drill" in out
        assert "by sam" in out

    def test_history_empty(self, config_path, capsys):
        """Test listing an empty history."""
        assert cmd_history(make_args(config_path, limit=5)) == 0
        assert "No history" in capsys.readouterr().out


class TestStatusCommands:
    """Tests for status and sync."""

    def test_status_json(self, config_path, capsys):
        """Test machine-readable status."""
        assert cmd_status(make_args(config_path, json=True)) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["sync"]["configured"] is False
        assert status["audit"]["entries"] == 0
        assert status["storage"]["key_count"] == 0

    def test_status_reads_bookkeeping_without_connecting(
        self, config_path, tmp_path, db_path, capsys
    ):
        """Test that status opens no remote or broker connection."""
        path = tmp_path / "remote.yaml"
        path.write_text(
            f"storage:\n  db_path: {db_path}\n"
            "sync:\n  url: https://sync.example.test\n  api_key: k\n"
            "mqtt:\n  enabled: true\n"
        )
        store = SQLiteStateStore(db_path)
        store.set(DEVICE_ID_KEY, "abcd1234-xyz")
        store.set(LAST_SYNC_TS_KEY, "1700000000000")
        store.set("inventory.items.v2", "[]")
        store.close()

        with patch("loadout.mqtt_client.MQTTNotifier") as notifier, patch(
            "loadout.sync.engine.RestBackend"
        ) as rest_backend:
            assert cmd_status(make_args(path, json=True)) == 0

        notifier.assert_not_called()
        rest_backend.assert_not_called()
        sync = json.loads(capsys.readouterr().out)["sync"]
        assert sync["configured"] is True
        assert sync["device_id"] == "abcd1234-xyz"
        assert sync["last_synced"] == 1700000000000
        assert sync["tracked_keys"] == 1

    @pytest.mark.asyncio
    async def test_sync_disabled(self, config_path, capsys):
        """Test that a one-off sync without a remote fails cleanly."""
        assert await cmd_sync(make_args(config_path)) == 1
        assert "disabled" in capsys.readouterr().out
