"""Whole-space snapshots of the tracked keys and their signatures."""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


def signature_for(values: Mapping[str, str]) -> str:
    """Deterministic serialization of a key/value map.

    Equal signatures mean equal values over the tracked key set.
    """
    return json.dumps(dict(values), sort_keys=True, separators=(",", ":"))


def _safe_number(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(number)


def _safe_string(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


@dataclass(frozen=True)
class Snapshot:
    """State of every tracked key at one instant, from one device."""

    updated_at: int  # epoch milliseconds
    updated_by: str
    app_version: str
    values: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ordered = {key: self.values[key] for key in sorted(self.values)}
        object.__setattr__(self, "values", MappingProxyType(ordered))

    @property
    def signature(self) -> str:
        return signature_for(self.values)

    @property
    def updated_at_iso(self) -> str:
        """updated_at as an ISO-8601 UTC string for the remote row."""
        return datetime.fromtimestamp(
            self.updated_at / 1000, tz=timezone.utc
        ).isoformat()

    def to_payload(self) -> dict[str, Any]:
        """Convert to the document stored in the remote row."""
        return {
            "updatedAt": self.updated_at,
            "updatedBy": self.updated_by,
            "appVersion": self.app_version,
            "values": dict(self.values),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "Snapshot | None":
        """Normalize a remote document.

        Returns:
            Snapshot, or None if the document has no usable values map.
        """
        if not isinstance(payload, Mapping):
            return None
        raw_values = payload.get("values")
        if not isinstance(raw_values, Mapping):
            return None

        return cls(
            updated_at=_safe_number(payload.get("updatedAt")),
            updated_by=_safe_string(payload.get("updatedBy")),
            app_version=_safe_string(payload.get("appVersion")),
            values={
                key: value
                for key, value in raw_values.items()
                if isinstance(key, str) and isinstance(value, str)
            },
        )
