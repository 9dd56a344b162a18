"""StateStore protocol for durable client state.

Two pieces of state must survive a restart: the submission records (so
confirmed events are not re-submitted and unconfirmed ones resume) and
the finalized part of the materialized log with its watermark (so the
reconciler does not re-scan from genesis).
"""

from typing import TYPE_CHECKING, Protocol

from opsledger.core.event import BuildEvent

if TYPE_CHECKING:
    from opsledger.core.queue import SubmissionRecord


class StateStore(Protocol):
    """Interface for persisting queue and log state."""

    async def save_record(self, record: "SubmissionRecord") -> None:
        """Insert or replace the record stored under its idempotency key."""
        ...

    async def load_records(self) -> list["SubmissionRecord"]:
        """Return every stored record in creation order."""
        ...

    async def save_salt(self, salt: str) -> None: ...

    async def load_salt(self) -> str | None: ...

    async def append_finalized(self, events: list[BuildEvent]) -> None:
        """Append newly finalized events, in sequence order."""
        ...

    async def load_finalized(self) -> list[BuildEvent]: ...

    async def save_watermark(self, height: int) -> None: ...

    async def load_watermark(self) -> int | None: ...
