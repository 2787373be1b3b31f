"""Whole-snapshot replication of the tracked keys against a remote row.

The engine pushes a snapshot of every tracked key whenever their signature
changes and pulls the remote snapshot when it is newer than the last one
applied or pushed here. Conflicts resolve by last-write-wins on
``updatedAt``; equal timestamps count as "not newer".
"""

import asyncio
import hashlib
import logging
import secrets
import string
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from ..events import REASON_REMOTE, StateEvents
from ..storage.state_store import StateStore
from ..storage.tracked_keys import (
    BOOKKEEPING_KEYS,
    DEVICE_ID_KEY,
    LAST_SIGNATURE_KEY,
    LAST_SYNC_TS_KEY,
    TrackedKeySpec,
)
from .remote import RemoteBackend, RemoteError, RestBackend, Subscription
from .snapshot import Snapshot, signature_for

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 2.5

_BASE36 = string.digits + string.ascii_lowercase


class SyncStatus(Enum):
    """Outcome of the most recent remote call."""

    IDLE = "idle"
    SUCCESS = "success"
    FAILED = "failed"
    DISABLED = "disabled"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if number == 0:
            return "".join(reversed(digits))


def new_device_id(now_ms: int | None = None) -> str:
    """Random device identifier: 8 base36 chars, a dash, base36 millis."""
    prefix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"{prefix}-{_base36(now_ms if now_ms is not None else _now_ms())}"


def _digest(signature: str) -> str:
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()


class SyncEngine:
    """Keeps tracked local keys and one remote space eventually consistent.

    An engine built without a backend is inert: start() returns at once and
    push()/pull() do nothing. This is the normal mode when sync is not
    configured.
    """

    def __init__(
        self,
        store: StateStore,
        backend: RemoteBackend | None,
        app_version: str,
        space: str = "default",
        key_spec: TrackedKeySpec | None = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        events: StateEvents | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the engine.

        Args:
            store: Local key-value state.
            backend: Remote snapshot store, or None to disable sync.
            app_version: Version tag attached to every pushed snapshot.
            space: Synchronization space (remote row id).
            key_spec: Which keys are replicated. Bookkeeping keys are
                always excluded.
            interval: Seconds between polling ticks.
            events: Notified after a remote snapshot has been applied.
            clock: Millisecond wall clock.
        """
        spec = key_spec or TrackedKeySpec()
        spec.validate()

        self._store = store
        self._backend = backend
        self.app_version = app_version
        self.space = space
        self.key_spec = spec.with_excluded(BOOKKEEPING_KEYS)
        self.interval = interval
        self._events = events
        self._clock = clock or _now_ms

        self._device_id: str | None = None
        self._signature_digest: str | None = store.get(LAST_SIGNATURE_KEY)
        self._applying_remote = False
        self._pushing = False
        self._pull_deferred = False
        self._running = False
        self._closed = False
        self._task: asyncio.Task | None = None
        self._subscription: Subscription | None = None
        self._pending: set[asyncio.Task] = set()
        self._consecutive_failures = 0
        self._last_status = SyncStatus.IDLE if backend else SyncStatus.DISABLED
        self._last_error: str | None = None

    @classmethod
    def from_config(
        cls,
        store: StateStore,
        config: "Config",
        events: StateEvents | None = None,
        app_version: str | None = None,
    ) -> "SyncEngine":
        """Build an engine from configuration.

        Missing or malformed remote settings give an inert engine rather
        than an error.
        """
        sync = config.sync
        version = app_version or config.node.app_version
        interval = sync.poll_interval_seconds

        try:
            key_spec = TrackedKeySpec.create(sync.key_prefixes, sync.excluded_keys)
        except ValueError as e:
            logger.warning(f"Cloud sync disabled (invalid tracked key settings: {e})")
            return cls(store, None, version, space=sync.space, interval=interval, events=events)

        backend: RemoteBackend | None = None
        if not sync.enabled:
            logger.info("Cloud sync disabled by configuration")
        elif not sync.url or not sync.api_key:
            logger.info("Cloud sync disabled (missing sync url or api key)")
        elif not sync.url_valid:
            logger.warning(f"Cloud sync disabled (invalid sync url format: {sync.url!r})")
        else:
            notifier = None
            if config.mqtt.enabled:
                from ..mqtt_client import MQTTNotifier

                notifier = MQTTNotifier(config.mqtt)
            backend = RestBackend(
                url=sync.url,
                api_key=sync.api_key,
                table=sync.table,
                timeout=sync.timeout_seconds,
                notifier=notifier,
            )

        return cls(
            store,
            backend,
            version,
            space=sync.space,
            key_spec=key_spec,
            interval=interval,
            events=events,
        )

    # ==================== Bookkeeping ====================

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def device_id(self) -> str:
        """This device's identity, created and persisted on first use."""
        if self._device_id is None:
            existing = self._store.get(DEVICE_ID_KEY)
            if existing:
                self._device_id = existing
            else:
                self._device_id = new_device_id(self._clock())
                self._store.set(DEVICE_ID_KEY, self._device_id)
                logger.info(f"Created device id {self._device_id}")
        return self._device_id

    @property
    def last_synced(self) -> int:
        """Timestamp of the last snapshot pushed or applied here."""
        raw = self._store.get(LAST_SYNC_TS_KEY)
        try:
            return int(float(raw)) if raw else 0
        except ValueError:
            return 0

    def _set_last_synced(self, timestamp: int) -> None:
        self._store.set(LAST_SYNC_TS_KEY, str(int(timestamp or 0)))

    def _set_signature(self, signature: str) -> None:
        self._signature_digest = _digest(signature)
        self._store.set(LAST_SIGNATURE_KEY, self._signature_digest)

    def _next_timestamp(self) -> int:
        return max(self._clock(), self.last_synced + 1)

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._last_status = SyncStatus.SUCCESS
        self._last_error = None

    def _record_failure(self, error: str) -> None:
        self._consecutive_failures += 1
        self._last_status = SyncStatus.FAILED
        self._last_error = error

    # ==================== Local snapshot ====================

    def tracked_keys(self) -> list[str]:
        """Currently stored tracked keys, sorted."""
        return self.key_spec.filter(self._store.list_keys())

    def _collect_values(self) -> dict[str, str]:
        values = {}
        for key in self.tracked_keys():
            value = self._store.get(key)
            if value is not None:
                values[key] = value
        return values

    def compute_local_snapshot(self) -> Snapshot:
        """Snapshot of every tracked key, stamped for the next push."""
        return Snapshot(
            updated_at=self._next_timestamp(),
            updated_by=self.device_id,
            app_version=self.app_version,
            values=self._collect_values(),
        )

    # ==================== Push / pull ====================

    async def push(self) -> bool:
        """Upload the local snapshot if tracked state changed.

        Returns:
            True if a remote write happened.
        """
        if self._backend is None or self._applying_remote:
            return False

        snapshot = self.compute_local_snapshot()
        signature = snapshot.signature
        if _digest(signature) == self._signature_digest:
            logger.debug("Tracked state unchanged, skipping push")
            return False

        self._pushing = True
        try:
            await self._backend.upsert(
                self.space, snapshot.to_payload(), snapshot.updated_at_iso
            )
        except RemoteError as e:
            logger.warning(f"Push failed: {e}")
            self._record_failure(str(e))
            return False
        except Exception as e:
            logger.error(f"Push failed unexpectedly: {e}", exc_info=True)
            self._record_failure(str(e))
            return False
        finally:
            self._pushing = False
            self._resume_deferred_pull()

        if self._closed:
            return True

        self._set_signature(signature)
        self._set_last_synced(max(snapshot.updated_at, self.last_synced))
        self._record_success()
        logger.debug(
            f"Pushed {len(snapshot.values)} keys to {self.space} "
            f"(updatedAt={snapshot.updated_at})"
        )
        return True

    async def pull(self) -> bool:
        """Fetch the remote snapshot and apply it if newer.

        Returns:
            True if a remote snapshot was applied.
        """
        if self._backend is None:
            return False

        try:
            payload = await self._backend.select_one(self.space)
        except RemoteError as e:
            logger.warning(f"Pull failed: {e}")
            self._record_failure(str(e))
            return False
        except Exception as e:
            logger.error(f"Pull failed unexpectedly: {e}", exc_info=True)
            self._record_failure(str(e))
            return False

        if self._closed:
            return False

        self._record_success()

        snapshot = Snapshot.from_payload(payload)
        if snapshot is None:
            logger.debug(f"No usable remote snapshot for {self.space}")
            return False

        return self._apply_if_newer(snapshot)

    async def sync_once(self) -> None:
        """Pull, then push."""
        await self.pull()
        await self.push()

    def _apply_if_newer(self, snapshot: Snapshot) -> bool:
        if self._pushing:
            # The pushed values would be recorded over the applied ones
            logger.debug(f"Deferring remote snapshot {snapshot.updated_at} until push completes")
            self._pull_deferred = True
            return False

        if snapshot.updated_at <= self.last_synced:
            logger.debug(
                f"Remote snapshot not newer ({snapshot.updated_at} <= {self.last_synced})"
            )
            return False

        try:
            self._apply_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Applying remote snapshot failed: {e}", exc_info=True)
            return False
        return True

    def _apply_snapshot(self, snapshot: Snapshot) -> None:
        """Make the tracked key set equal to the snapshot's values."""
        self._applying_remote = True
        try:
            stale = set(self.tracked_keys())
            changed = []

            for key, value in snapshot.values.items():
                if not self.key_spec.matches(key):
                    continue
                if self._store.get(key) != value:
                    self._store.set(key, value)
                    changed.append(key)
                stale.discard(key)

            # The remote snapshot covers the full tracked set
            for key in sorted(stale):
                self._store.remove(key)
                changed.append(key)

            self._set_signature(signature_for(self._collect_values()))
            self._set_last_synced(snapshot.updated_at)

            logger.info(
                f"Applied remote snapshot from {snapshot.updated_by or 'unknown'} "
                f"(updatedAt={snapshot.updated_at}, {len(changed)} keys changed)"
            )
            if self._events:
                self._events.emit(REASON_REMOTE, changed)
        finally:
            self._applying_remote = False

    # ==================== Realtime ====================

    def _on_remote_change(self, payload: dict[str, Any] | None) -> None:
        """Handle a change notification for our space."""
        if self._closed or not self._running:
            return

        snapshot = Snapshot.from_payload(payload)
        if snapshot is None:
            self._spawn(self.pull())
            return

        if snapshot.updated_by == self.device_id:
            logger.debug(f"Ignoring echo of own snapshot {snapshot.updated_at}")
            return

        self._apply_if_newer(snapshot)

    def _resume_deferred_pull(self) -> None:
        """Re-read the row for a snapshot that arrived during a push."""
        if not self._pull_deferred:
            return
        self._pull_deferred = False
        if self._running and not self._closed:
            self._spawn(self.pull())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Run an initial sync, subscribe and start polling."""
        if self._backend is None:
            logger.info("Sync engine inert (no remote configured)")
            return
        if self._running:
            return

        try:
            device_id = self.device_id
        except Exception as e:
            logger.error(f"Sync engine disabled (device id setup failed): {e}")
            return

        self._closed = False
        self._running = True

        await self.sync_once()

        try:
            self._subscription = await self._backend.subscribe(
                self.space, self._on_remote_change
            )
        except Exception as e:
            logger.warning(f"Realtime subscription failed, relying on polling: {e}")
            self._subscription = None

        if self._subscription is not None:
            # Catch changes that landed between the initial pull and subscribing
            self._spawn(self.pull())

        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Sync engine started (space={self.space}, device={device_id}, "
            f"interval={self.interval}s, realtime={self._subscription is not None})"
        )

    async def stop(self) -> None:
        """Final best-effort pull and push, then tear down."""
        if not self._running:
            return

        try:
            await self.sync_once()
        except Exception as e:
            logger.warning(f"Final sync failed: {e}")

        self._running = False
        self._closed = True

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._subscription:
            self._subscription.close()
            self._subscription = None

        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

        try:
            await self._backend.close()
        except Exception as e:
            logger.warning(f"Closing remote backend failed: {e}")

        logger.info("Sync engine stopped")

    async def close(self) -> None:
        """Release the backend of an engine that was never started."""
        if self._running or self._backend is None:
            return
        self._closed = True
        await self._backend.close()

    async def _run_loop(self) -> None:
        """Polling fallback for missed notifications."""
        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break

            try:
                await self.sync_once()
            except Exception as e:
                logger.error(f"Sync tick failed: {e}", exc_info=True)

    def get_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync state.
        """
        return {
            "enabled": self.enabled,
            "running": self._running,
            "space": self.space,
            "device_id": self._device_id or self._store.get(DEVICE_ID_KEY),
            "last_synced": self.last_synced or None,
            "tracked_keys": len(self.tracked_keys()),
            "status": self._last_status.value,
            "last_error": self._last_error,
            "consecutive_failures": self._consecutive_failures,
            "realtime": self._subscription is not None,
        }
