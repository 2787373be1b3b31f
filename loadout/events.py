"""State invalidation events.

Anything holding derived in-memory state (caches, views, hooks) subscribes
here and refreshes from the store when the underlying keys were rewritten
by a sync pull or an undo/redo.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

REASON_REMOTE = "remote"
REASON_UNDO = "undo"
REASON_REDO = "redo"


@dataclass(frozen=True)
class StateChange:
    """Notification that stored state changed underneath readers."""

    reason: str
    keys: tuple[str, ...] = field(default_factory=tuple)


StateListener = Callable[[StateChange], None]


class StateEvents:
    """Synchronous fan-out of StateChange notifications."""

    def __init__(self) -> None:
        self._listeners: list[StateListener] = []

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, reason: str, keys: list[str] | tuple[str, ...] = ()) -> None:
        """Deliver a StateChange to every listener."""
        change = StateChange(reason=reason, keys=tuple(keys))
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"State listener failed on {reason!r}: {e}", exc_info=True)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
