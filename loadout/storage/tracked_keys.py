"""Classification of store keys into replicated and device-local."""

from dataclasses import dataclass, field
from typing import Iterable

# Bookkeeping owned by the sync engine, audit log and upgrade guard
DEVICE_ID_KEY = "loadout.syncDeviceId.v1"
LAST_SYNC_TS_KEY = "loadout.syncLastTimestamp.v1"
LAST_SIGNATURE_KEY = "loadout.syncLastSignature.v1"
AUDIT_LOG_KEY = "audit.log.v1"
AUDIT_REDO_KEY = "audit.redo.v1"
UPGRADE_BACKUP_KEY = "loadout.upgradeBackup.v1"
LAST_APP_VERSION_KEY = "loadout.lastAppVersion.v1"

BOOKKEEPING_KEYS = frozenset(
    {
        DEVICE_ID_KEY,
        LAST_SYNC_TS_KEY,
        LAST_SIGNATURE_KEY,
        AUDIT_LOG_KEY,
        AUDIT_REDO_KEY,
        UPGRADE_BACKUP_KEY,
        LAST_APP_VERSION_KEY,
    }
)

DEFAULT_PREFIXES = ("inventory.", "loadout.")

# Device-local by nature: session pointer, UI state, manual backup status
DEFAULT_EXCLUDED_KEYS = frozenset(
    {
        "inventory.session.v1",
        "loadout.activeTab",
        "loadout.pdfBackup.lastSyncAt.v1",
        "loadout.pdfBackup.lastError.v1",
    }
)


@dataclass(frozen=True)
class TrackedKeySpec:
    """Which keys belong to the replicated state.

    A key is tracked iff it starts with one of ``prefixes`` and is not
    listed in ``excluded``.
    """

    prefixes: tuple[str, ...] = DEFAULT_PREFIXES
    excluded: frozenset[str] = field(default=DEFAULT_EXCLUDED_KEYS)

    @classmethod
    def create(
        cls,
        prefixes: Iterable[str] = DEFAULT_PREFIXES,
        excluded: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
    ) -> "TrackedKeySpec":
        """Build and validate a spec from arbitrary iterables."""
        spec = cls(prefixes=tuple(prefixes), excluded=frozenset(excluded))
        spec.validate()
        return spec

    def validate(self) -> None:
        """Raise ValueError if the spec cannot classify keys sensibly."""
        if not self.prefixes:
            raise ValueError("TrackedKeySpec needs at least one key prefix")

        for prefix in self.prefixes:
            if not isinstance(prefix, str):
                raise ValueError(f"Key prefix must be a string, got {prefix!r}")
            if not prefix:
                raise ValueError("Empty key prefix would track every key")

        for key in self.excluded:
            if not isinstance(key, str):
                raise ValueError(f"Excluded key must be a string, got {key!r}")

    def matches(self, key: str) -> bool:
        """Check whether key is part of the replicated state."""
        if key in self.excluded:
            return False
        return key.startswith(self.prefixes)

    def filter(self, keys: Iterable[str]) -> list[str]:
        """Return the tracked subset of keys, sorted."""
        return sorted(key for key in keys if self.matches(key))

    def with_excluded(self, keys: Iterable[str]) -> "TrackedKeySpec":
        """Return a copy that additionally excludes keys."""
        return TrackedKeySpec(
            prefixes=self.prefixes,
            excluded=self.excluded | frozenset(keys),
        )
