"""Backup and recovery of protected keys across app version upgrades.

On every start a copy of the protected keys is saved into a backup envelope.
When the app version changes, keys that went missing or hold corrupt JSON
are restored from the envelope saved by the previous version.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

from .state_store import StateStore
from .tracked_keys import (
    AUDIT_LOG_KEY,
    AUDIT_REDO_KEY,
    LAST_APP_VERSION_KEY,
    UPGRADE_BACKUP_KEY,
)

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1

DEFAULT_PROTECTED_KEYS = (
    "inventory.items.v2",
    "inventory.items.v1",
    "inventory.items",
    "inventory.items.v0",
    "inventory.categories.v2",
    "inventory.locations.v1",
    "inventory.jobs.v1",
    "inventory.jobUsage.v1",
    "inventory.jobNotifications.v1",
    "inventory.partsUsedDraft.v1",
    "inventory.activity.v1",
    "inventory.users.v1",
    "inventory.session.v1",
    "inventory.securitySettings.v1",
    AUDIT_LOG_KEY,
    AUDIT_REDO_KEY,
    "users.list.v1",
    "users.current.v1",
    "loadout.activeTab",
)

# Protected keys whose values must parse as JSON
DEFAULT_JSON_KEYS = frozenset(
    key
    for key in DEFAULT_PROTECTED_KEYS
    if key not in ("users.current.v1", "loadout.activeTab")
)


@dataclass
class BackupEnvelope:
    """Saved copy of the protected keys."""

    version: int
    saved_at: int
    entries: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "savedAt": self.saved_at,
            "entries": self.entries,
        }

    @classmethod
    def parse(cls, raw: str | None) -> "BackupEnvelope | None":
        """Parse a stored envelope, returning None if it is unusable."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None

        if not isinstance(data, dict):
            return None
        version = data.get("version")
        entries = data.get("entries")
        if not isinstance(version, (int, float)) or not isinstance(entries, dict):
            return None

        return cls(
            version=int(version),
            saved_at=int(data.get("savedAt") or 0),
            entries={k: v for k, v in entries.items() if isinstance(v, str)},
        )


class UpgradeDataGuard:
    """Protects stored data against loss during app upgrades."""

    def __init__(
        self,
        store: StateStore,
        protected_keys: Iterable[str] = DEFAULT_PROTECTED_KEYS,
        json_keys: Iterable[str] = DEFAULT_JSON_KEYS,
    ):
        self._store = store
        self._protected = tuple(protected_keys)
        self._json_keys = frozenset(json_keys)

    def is_corrupt(self, key: str, raw: str | None) -> bool:
        """Check whether a JSON key holds a value that does not parse."""
        if raw is None or key not in self._json_keys:
            return False
        try:
            json.loads(raw)
            return False
        except ValueError:
            return True

    def run(self, app_version: str) -> list[str]:
        """Recover on version change, then refresh the backup.

        Args:
            app_version: Version of the running application.

        Returns:
            Keys restored from the backup envelope.
        """
        restored: list[str] = []
        try:
            previous = self._store.get(LAST_APP_VERSION_KEY) or ""
            envelope = BackupEnvelope.parse(self._store.get(UPGRADE_BACKUP_KEY))

            if app_version and previous != app_version:
                restored = self._recover(app_version, envelope)
                self._store.set(LAST_APP_VERSION_KEY, app_version)

            self._save_backup()
        except Exception as e:
            logger.warning(f"Upgrade data guard failed: {e}")

        return restored

    def _recover(
        self, app_version: str, envelope: BackupEnvelope | None
    ) -> list[str]:
        if envelope is None:
            return []

        restored = []
        for key in self._protected:
            backup = envelope.entries.get(key)
            if not backup:
                continue
            current = self._store.get(key)
            if current is not None and not self.is_corrupt(key, current):
                continue
            self._store.set(key, backup)
            restored.append(key)

        if restored:
            logger.info(
                f"Restored {len(restored)} storage keys during upgrade to {app_version}"
            )
        return restored

    def _save_backup(self) -> None:
        entries = {}
        for key in self._protected:
            raw = self._store.get(key)
            if raw is None or self.is_corrupt(key, raw):
                continue
            entries[key] = raw

        envelope = BackupEnvelope(
            version=ENVELOPE_VERSION,
            saved_at=int(time.time() * 1000),
            entries=entries,
        )
        self._store.set(UPGRADE_BACKUP_KEY, json.dumps(envelope.to_dict()))
