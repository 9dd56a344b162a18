"""Read-only query service over the materialized log.

Every call works on one LogSnapshot, so results are never torn by a
concurrent reconciliation. When reconciliation has halted on a finalized
consistency violation, every page says so through ``degraded``. While the
ledger cannot be read, pages carry ``stale`` instead.
"""

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, field_validator

from opsledger.core.errors import InvalidCursor, MalformedEvent
from opsledger.core.event import BuildEvent, BuildStatus
from opsledger.core.reconciler import LogSnapshot, MaterializedLog

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


def encode_cursor(sequence: int) -> str:
    raw = json.dumps({"after": sequence}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    """Return the sequence a cursor points after.

    Raises:
        InvalidCursor: If the cursor was not produced by encode_cursor().
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        doc = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        after = doc["after"]
    except (binascii.Error, UnicodeError, ValueError, TypeError, KeyError) as e:
        raise InvalidCursor(f"invalid cursor: {cursor!r}") from e
    if isinstance(after, bool) or not isinstance(after, int) or after < -1:
        raise InvalidCursor(f"invalid cursor: {cursor!r}")
    return after


def serialize_event(event: BuildEvent) -> dict[str, Any]:
    """Presentation-layer shape of a confirmed event."""
    return {
        "sequence": event.sequence,
        "buildId": event.build_id,
        "status": event.status.value,
        "developer": event.developer,
        "ledgerTimestamp": event.ledger_timestamp.isoformat() if event.ledger_timestamp else None,
    }


class EventFilter(BaseModel):
    """Optional equality filters; unset fields match everything."""

    build_id: str | None = None
    developer: str | None = None
    status: BuildStatus | None = None

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> BuildStatus | None:
        if v is None:
            return None
        try:
            return BuildStatus.parse(v)
        except MalformedEvent as e:
            raise ValueError(str(e)) from e

    def matches(self, event: BuildEvent) -> bool:
        if self.build_id is not None and event.build_id != self.build_id:
            return False
        if self.developer is not None and event.developer != self.developer:
            return False
        if self.status is not None and event.status is not self.status:
            return False
        return True


class EventPage(BaseModel):
    """One page of list() results."""

    events: list[BuildEvent]
    next_cursor: str | None = None
    finalized_height: int
    degraded: bool = False
    violation: str | None = None
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "events": [serialize_event(e) for e in self.events],
            "nextCursor": self.next_cursor,
            "finalizedHeight": self.finalized_height,
            "degraded": self.degraded,
            "stale": self.stale,
        }
        if self.violation:
            data["violation"] = self.violation
        return data


class QueryService:
    """list/get over a MaterializedLog. Never mutates it."""

    def __init__(
        self,
        log: MaterializedLog,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._log = log
        self.page_size = page_size
        self.max_page_size = max_page_size

    def _resolve_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.page_size
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError(f"limit must be an integer, got {type(limit).__name__}")
        if not 1 <= limit <= self.max_page_size:
            raise ValueError(f"limit must be between 1 and {self.max_page_size}, got {limit}")
        return limit

    @staticmethod
    def _visible(snapshot: LogSnapshot, finalized_only: bool) -> tuple[BuildEvent, ...]:
        return snapshot.finalized if finalized_only else snapshot.events

    def list(
        self,
        filter: EventFilter | None = None,
        cursor: str | None = None,
        limit: int | None = None,
        finalized_only: bool = False,
    ) -> EventPage:
        """Return events ordered by sequence, starting after ``cursor``.

        Args:
            filter: Optional equality filters.
            cursor: ``next_cursor`` from a previous page.
            limit: Page size, 1..max_page_size (default page_size).
            finalized_only: Only return entries at or below the finalized height.
        """
        limit = self._resolve_limit(limit)
        snapshot = self._log.snapshot()
        events = self._visible(snapshot, finalized_only)

        start = 0
        if cursor is not None:
            start = max(decode_cursor(cursor) - snapshot.start_position + 1, 0)

        matched: list[BuildEvent] = []
        for event in events[start:]:
            if filter is None or filter.matches(event):
                matched.append(event)
                if len(matched) > limit:
                    break

        page = matched[:limit]
        next_cursor = encode_cursor(page[-1].sequence) if len(matched) > limit else None
        return EventPage(
            events=page,
            next_cursor=next_cursor,
            finalized_height=snapshot.finalized_height,
            degraded=snapshot.degraded,
            violation=snapshot.violation,
            stale=snapshot.stale,
        )

    def get(self, build_id: str, finalized_only: bool = False) -> BuildEvent | None:
        """Return the highest-sequence event for ``build_id``, or None."""
        snapshot = self._log.snapshot()
        for event in reversed(self._visible(snapshot, finalized_only)):
            if event.build_id == build_id:
                return event
        return None

    def health(self) -> dict[str, Any]:
        snapshot = self._log.snapshot()
        return {
            "degraded": snapshot.degraded,
            "violation": snapshot.violation,
            "stale": snapshot.stale,
            "unavailable": snapshot.unavailable,
            "finalized_height": snapshot.finalized_height,
            "tip": snapshot.tip,
            "events": len(snapshot.events),
            "pending": len(snapshot.pending_tail),
        }
