"""Events flowing from the reconcilers through the pipeline to the backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4


@dataclass(frozen=True)
class UpsertEvent:
    """A point-in-time snapshot of one object, or the record of its deletion.

    Produced by a reconciliation, owned by the batching pipeline until it is
    flushed and consumed exactly once by the upload client.
    """

    obj: dict[str, Any]
    preferred_version: str
    deleted_at: datetime | None = None
    request_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def metadata(self) -> dict[str, Any]:
        meta = self.obj.get("metadata")
        return meta if isinstance(meta, dict) else {}

    @property
    def identity(self) -> str:
        """Opaque unique id used for failure tracking.

        Deletion placeholders carry no uid, so they fall back to the object's
        fully qualified name.
        """
        uid = self.metadata.get("uid")
        if uid:
            return str(uid)
        return "/".join(
            (
                str(self.obj.get("apiVersion", "")),
                str(self.obj.get("kind", "")),
                str(self.metadata.get("namespace", "")),
                str(self.metadata.get("name", "")),
            )
        )

    @property
    def is_deletion(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Batch:
    """An ordered group of events shipped to the backend as one request."""

    events: list[UpsertEvent] = field(default_factory=list)
    request_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def event_request_ids(self) -> list[str]:
        """Request ids of the reconciliations that produced the events."""
        return [event.request_id for event in self.events]

    def __len__(self) -> int:
        return len(self.events)
