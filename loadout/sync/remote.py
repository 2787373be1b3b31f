"""Remote snapshot stores.

A remote backend keeps one row per synchronization space holding the
latest snapshot document, and optionally notifies subscribers when that row
changes. No transactional guarantees are assumed beyond last-write-wins at
the row level.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable

import httpx

if TYPE_CHECKING:
    from ..mqtt_client import MQTTNotifier

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict[str, Any] | None], None]


class RemoteError(Exception):
    """A remote backend call failed."""


class Subscription:
    """Handle for a change subscription."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self._closed = False

    def close(self) -> None:
        """Stop receiving notifications. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._release()

    @property
    def closed(self) -> bool:
        return self._closed


class RemoteBackend(ABC):
    """Row store holding one snapshot document per space."""

    @abstractmethod
    async def upsert(self, space: str, payload: dict[str, Any], updated_at: str) -> None:
        """Insert or replace the row for space.

        Raises:
            RemoteError: If the write was not stored.
        """
        ...

    @abstractmethod
    async def select_one(self, space: str) -> dict[str, Any] | None:
        """Return the payload stored for space, or None if there is no row.

        Raises:
            RemoteError: If the read failed.
        """
        ...

    async def subscribe(
        self, space: str, on_change: ChangeCallback
    ) -> Subscription | None:
        """Subscribe to changes of the row for space.

        Returns:
            Subscription, or None if the backend has no change notifications.
        """
        return None

    async def close(self) -> None:
        """Release connections."""


class InMemoryBackend(RemoteBackend):
    """Shared in-process table.

    Several engines can share one instance to replicate between each other.
    Subscribers, including the writer itself, are notified synchronously
    after every upsert.
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[str, list[ChangeCallback]] = {}
        self.upsert_count = 0

    async def upsert(self, space: str, payload: dict[str, Any], updated_at: str) -> None:
        self._rows[space] = {
            "id": space,
            "payload": copy.deepcopy(payload),
            "updated_at": updated_at,
        }
        self.upsert_count += 1

        for callback in list(self._subscribers.get(space, [])):
            try:
                callback(copy.deepcopy(payload))
            except Exception as e:
                logger.error(f"Change subscriber failed: {e}", exc_info=True)

    async def select_one(self, space: str) -> dict[str, Any] | None:
        row = self._rows.get(space)
        return copy.deepcopy(row["payload"]) if row else None

    async def subscribe(self, space: str, on_change: ChangeCallback) -> Subscription:
        callbacks = self._subscribers.setdefault(space, [])
        callbacks.append(on_change)

        def release() -> None:
            if on_change in callbacks:
                callbacks.remove(on_change)

        return Subscription(release)

    def get_row(self, space: str) -> dict[str, Any] | None:
        """Return a copy of the full row for space."""
        row = self._rows.get(space)
        return copy.deepcopy(row) if row else None

    def subscriber_count(self, space: str) -> int:
        return len(self._subscribers.get(space, []))


class RestBackend(RemoteBackend):
    """PostgREST-style HTTP table backend.

    Rows are ``{id, payload, updated_at}``. Change notifications are not
    part of the REST interface; they are provided by an optional notifier.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "loadout_sync",
        timeout: float = 10.0,
        notifier: "MQTTNotifier | None" = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the backend.

        Args:
            url: Base URL of the service (e.g., "https://xyz.supabase.co").
            api_key: Access credential sent as apikey and bearer token.
            table: Name of the snapshot table.
            timeout: Request timeout in seconds.
            notifier: Optional change notification channel.
            transport: Optional httpx transport (e.g. for testing).
        """
        self.url = url.rstrip("/")
        self.table = table
        self.timeout = timeout
        self._api_key = api_key
        self._notifier = notifier
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "apikey": self._api_key,
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, f"/{self.table}", **kwargs)
        except httpx.HTTPError as e:
            raise RemoteError(f"{method} {self.table} failed: {e}") from e

        if not response.is_success:
            raise RemoteError(f"HTTP {response.status_code}: {response.text}")
        return response

    async def upsert(self, space: str, payload: dict[str, Any], updated_at: str) -> None:
        await self._request(
            "POST",
            json={"id": space, "payload": payload, "updated_at": updated_at},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

        if self._notifier:
            # The row is stored; a lost notification is covered by polling
            try:
                published = await self._notifier.publish(space, payload)
            except Exception as e:
                logger.warning(f"Change notification for {space} failed: {e}")
                return
            if not published:
                logger.debug(f"Change notification for {space} not published")

    async def select_one(self, space: str) -> dict[str, Any] | None:
        response = await self._request(
            "GET",
            params={"id": f"eq.{space}", "select": "payload", "limit": "1"},
        )

        try:
            rows = response.json()
        except ValueError as e:
            raise RemoteError(f"Malformed response body: {e}") from e

        if not isinstance(rows, list) or not rows:
            return None
        row = rows[0]
        return row.get("payload") if isinstance(row, dict) else None

    async def subscribe(
        self, space: str, on_change: ChangeCallback
    ) -> Subscription | None:
        if self._notifier is None:
            return None
        return await self._notifier.subscribe(space, on_change)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._notifier:
            await self._notifier.disconnect()
