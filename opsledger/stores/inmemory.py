"""In-memory state store.

No durability guarantees: state is lost if the process terminates. Tests
share one instance between two clients to simulate a restart.
"""

from typing import TYPE_CHECKING

from opsledger.core.event import BuildEvent

if TYPE_CHECKING:
    from opsledger.core.queue import SubmissionRecord


class InMemoryStateStore:
    """Keeps copies of records and finalized events in dicts and lists."""

    def __init__(self) -> None:
        self._records: dict[str, "SubmissionRecord"] = {}
        self._salt: str | None = None
        self._finalized: list[BuildEvent] = []
        self._watermark: int | None = None

    async def save_record(self, record: "SubmissionRecord") -> None:
        # Store a copy so later in-place mutation is not silently persisted
        self._records[record.idempotency_key] = record.model_copy()

    async def load_records(self) -> list["SubmissionRecord"]:
        # Dict order is insertion order, i.e. creation order
        return [r.model_copy() for r in self._records.values()]

    async def save_salt(self, salt: str) -> None:
        self._salt = salt

    async def load_salt(self) -> str | None:
        return self._salt

    async def append_finalized(self, events: list[BuildEvent]) -> None:
        self._finalized.extend(events)

    async def load_finalized(self) -> list[BuildEvent]:
        return list(self._finalized)

    async def save_watermark(self, height: int) -> None:
        self._watermark = height

    async def load_watermark(self) -> int | None:
        return self._watermark

    def __len__(self) -> int:
        return len(self._records)
