"""Local-first synchronization of tracked keys.

Replicates a whitelisted subset of the local key space to a single remote
row per synchronization space, with last-write-wins on snapshot timestamps.
"""

from .engine import SyncEngine, SyncStatus
from .remote import InMemoryBackend, RemoteBackend, RemoteError, RestBackend, Subscription
from .snapshot import Snapshot, signature_for

__all__ = [
    "InMemoryBackend",
    "RemoteBackend",
    "RemoteError",
    "RestBackend",
    "Snapshot",
    "Subscription",
    "SyncEngine",
    "SyncStatus",
    "signature_for",
]
