"""
Memory record and its supersession state.

A memory is live, superseded by another memory, or deleted (tombstoned).
On disk that is one nullable `superseded_by` column; in Python it is a small
tagged union so the ranking code can match on it instead of comparing strings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

DELETED_TOMBSTONE = "DELETED"
HANDOFF_ID = "00000000-0000-0000-0000-000000000000"


@dataclass(frozen=True)
class Live:
    pass


@dataclass(frozen=True)
class SupersededBy:
    memory_id: str


@dataclass(frozen=True)
class Deleted:
    pass


Supersession = Union[Live, SupersededBy, Deleted]

LIVE = Live()
DELETED = Deleted()


def supersession_from_column(value: Optional[str]) -> Supersession:
    if value is None or value == "":
        return LIVE
    if value == DELETED_TOMBSTONE:
        return DELETED
    return SupersededBy(str(value))


def supersession_to_column(state: Supersession) -> Optional[str]:
    if isinstance(state, Live):
        return None
    if isinstance(state, Deleted):
        return DELETED_TOMBSTONE
    return state.memory_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def datetime_to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def millis_to_datetime(value: Optional[Any]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def ensure_json_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of `metadata`, rejecting anything that is not a JSON object."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be a JSON object")
    try:
        return json.loads(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"metadata is not JSON-serializable: {exc}") from exc


@dataclass
class Memory:
    id: str
    content: str
    embedding: List[float]
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    supersession: Supersession = field(default_factory=Live)
    usefulness: float = 0.0
    access_count: int = 0
    last_accessed: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return isinstance(self.supersession, Live)

    @property
    def is_deleted(self) -> bool:
        return isinstance(self.supersession, Deleted)

    @property
    def superseded_by(self) -> Optional[str]:
        return supersession_to_column(self.supersession)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "supersededBy": self.superseded_by,
            "deleted": self.is_deleted,
            "usefulness": self.usefulness,
            "accessCount": self.access_count,
            "lastAccessed": _iso(self.last_accessed),
        }
