"""Local device storage.

Provides:
- String key-value stores (in-memory and SQLite)
- Classification of keys into replicated and device-local
- Upgrade-time backup and recovery of protected keys
"""

from .state_store import MemoryStateStore, SQLiteStateStore, StateStore
from .tracked_keys import BOOKKEEPING_KEYS, TrackedKeySpec
from .upgrade_guard import UpgradeDataGuard

__all__ = [
    "BOOKKEEPING_KEYS",
    "MemoryStateStore",
    "SQLiteStateStore",
    "StateStore",
    "TrackedKeySpec",
    "UpgradeDataGuard",
]
