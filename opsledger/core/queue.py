"""Submission queue for build events awaiting ledger inclusion.

The queue holds one SubmissionRecord per idempotency key and is the only
place record state changes. The writer drives transitions by calling
``next_ready``, ``begin_attempt``, ``ack``, ``nack`` and ``release``;
producers only ``enqueue`` and read status.

State machine per key::

    Pending -> Submitted -> Confirmed | Failed | Abandoned
                   |
                   +-> Pending (release on shutdown)
"""

import asyncio
import hashlib
import logging
import secrets
from collections import Counter, deque
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel, Field

from opsledger.core.errors import (
    InvalidTransition,
    RetriesExhausted,
    UnknownSubmission,
)
from opsledger.core.event import BuildEvent

if TYPE_CHECKING:
    from opsledger.stores.base import StateStore

logger = logging.getLogger("opsledger.queue")

DEFAULT_MAX_IN_FLIGHT = 4


class SubmissionState(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    ABANDONED = "Abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SubmissionState.CONFIRMED, SubmissionState.FAILED, SubmissionState.ABANDONED}
)


def _now() -> datetime:
    return datetime.now(UTC)


class SubmissionRecord(BaseModel):
    """Mutable lifecycle record for one idempotency key."""

    idempotency_key: str
    event: BuildEvent
    nonce: str
    state: SubmissionState = SubmissionState.PENDING
    attempts: int = 0
    last_error: str | None = None
    transaction_ref: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = {"extra": "forbid"}

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class SubmissionStatus(BaseModel):
    """Producer-facing view of a submission."""

    idempotency_key: str
    state: SubmissionState
    sequence: int | None = None
    reason: str | None = None
    attempts: int = 0

    model_config = {"frozen": True}

    @classmethod
    def of(cls, record: SubmissionRecord) -> "SubmissionStatus":
        reason = None
        if record.state in (SubmissionState.FAILED, SubmissionState.ABANDONED):
            reason = record.last_error
        return cls(
            idempotency_key=record.idempotency_key,
            state=record.state,
            sequence=record.event.sequence,
            reason=reason,
            attempts=record.attempts,
        )

    def __str__(self) -> str:
        if self.state is SubmissionState.CONFIRMED:
            return f"Confirmed({self.sequence})"
        if self.state is SubmissionState.FAILED:
            return f"Failed({self.reason})"
        return self.state.value


def make_idempotency_key(event: BuildEvent, salt: str, nonce: str) -> str:
    """Derive the idempotency key from the submitted fields, salt and nonce."""
    material = "\x1f".join(
        (salt, event.build_id, event.status.value, event.developer, nonce)
    ).encode("utf-8")
    return hashlib.sha256(material).hexdigest()


class SubmissionQueue:
    """Owned, lock-protected registry of submission records.

    Args:
        store: Optional StateStore; every transition is persisted to it.
        max_in_flight: Global cap on Submitted records (backpressure).
        salt: Idempotency salt. Random per process unless given or loaded.
    """

    def __init__(
        self,
        store: "StateStore | None" = None,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        salt: str | None = None,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        self._store = store
        self.max_in_flight = max_in_flight
        self._fixed_salt = salt is not None
        self._salt = salt or secrets.token_hex(16)
        self._salt_persisted = False
        self._records: dict[str, SubmissionRecord] = {}
        self._ready: deque[str] = deque()
        self._in_flight: set[str] = set()
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)

    @property
    def salt(self) -> str:
        return self._salt

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def pending(self) -> int:
        return sum(1 for r in self._records.values() if r.state is SubmissionState.PENDING)

    def __len__(self) -> int:
        return len(self._records)

    def counts(self) -> dict[str, int]:
        """Number of records per state."""
        return dict(Counter(r.state.value for r in self._records.values()))

    async def _persist(self, record: SubmissionRecord) -> None:
        if self._store is not None:
            await self._store.save_record(record)

    async def _persist_salt(self) -> None:
        if self._store is not None and not self._salt_persisted:
            await self._store.save_salt(self._salt)
            self._salt_persisted = True

    def _require(self, key: str, *states: SubmissionState) -> SubmissionRecord:
        record = self._records.get(key)
        if record is None:
            raise UnknownSubmission(f"no submission with key {key}")
        if states and record.state not in states:
            raise InvalidTransition(
                f"submission {key} is {record.state.value}, "
                f"expected {'/'.join(s.value for s in states)}"
            )
        return record

    async def load(self) -> int:
        """Restore salt and records from the store.

        Records that were Submitted when the previous process stopped come
        back as Pending; their transaction ref is kept so the writer checks
        ledger status before resubmitting.

        Returns:
            Number of records restored.
        """
        if self._store is None:
            return 0
        async with self._lock:
            stored_salt = await self._store.load_salt()
            if stored_salt is not None and not self._fixed_salt:
                self._salt = stored_salt
                self._salt_persisted = True
            await self._persist_salt()

            records = await self._store.load_records()
            for record in records:
                if record.state is SubmissionState.SUBMITTED:
                    record.state = SubmissionState.PENDING
                    record.updated_at = _now()
                    await self._persist(record)
                self._records[record.idempotency_key] = record
                if record.state is SubmissionState.PENDING:
                    self._ready.append(record.idempotency_key)
            self._changed.notify_all()

        logger.info(
            f"Restored {len(records)} submission records",
            extra={"restored": len(records), "pending": len(self._ready)},
        )
        return len(records)

    async def enqueue(self, event: BuildEvent, nonce: str | None = None) -> str:
        """Accept an event for submission and return its idempotency key.

        Enqueuing again with the same nonce (and fields) returns the same key
        without creating a second record.
        """
        nonce = nonce or uuid4().hex
        event = event.unconfirmed()
        key = make_idempotency_key(event, self._salt, nonce)

        async with self._lock:
            if key in self._records:
                logger.info(
                    "Duplicate enqueue ignored",
                    extra={"idempotency_key": key, "build_id": event.build_id},
                )
                return key

            record = SubmissionRecord(idempotency_key=key, event=event, nonce=nonce)
            await self._persist_salt()
            await self._persist(record)
            self._records[key] = record
            self._ready.append(key)
            self._changed.notify_all()

        logger.info(
            f"Enqueued build {event.build_id} ({event.status.value})",
            extra={"idempotency_key": key, "build_id": event.build_id},
        )
        return key

    async def next_ready(self) -> SubmissionRecord | None:
        """Hand out the oldest Pending record, moving it to Submitted.

        Returns None when nothing is ready or the in-flight cap is reached.
        The returned record is a copy; changes go through the queue.
        """
        async with self._lock:
            if len(self._in_flight) >= self.max_in_flight:
                return None
            while self._ready:
                key = self._ready.popleft()
                record = self._records[key]
                # Stale entries: released twice or already picked up
                if record.state is not SubmissionState.PENDING or key in self._in_flight:
                    continue
                record.state = SubmissionState.SUBMITTED
                record.updated_at = _now()
                self._in_flight.add(key)
                await self._persist(record)
                return record.model_copy()
            return None

    async def begin_attempt(self, key: str) -> int:
        """Count a submission attempt for an in-flight record and return the new count."""
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            record.attempts += 1
            record.updated_at = _now()
            await self._persist(record)
            return record.attempts

    async def note_transaction(self, key: str, transaction_ref: str) -> None:
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            record.transaction_ref = transaction_ref
            record.updated_at = _now()
            await self._persist(record)

    async def note_error(self, key: str, error: Exception | str) -> None:
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            record.last_error = str(error)
            record.updated_at = _now()
            await self._persist(record)

    async def ack(self, key: str, sequence: int, ledger_timestamp: datetime) -> SubmissionRecord:
        """Mark an in-flight record Confirmed at ``sequence``."""
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            record.event = record.event.confirmed(sequence, ledger_timestamp)
            record.state = SubmissionState.CONFIRMED
            record.last_error = None
            await self._finish(record)
            return record.model_copy()

    async def nack(self, key: str, error: Exception) -> SubmissionRecord:
        """Move an in-flight record to a terminal failure state.

        RetriesExhausted yields Abandoned; any other error yields Failed.
        """
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            if isinstance(error, RetriesExhausted):
                record.state = SubmissionState.ABANDONED
            else:
                record.state = SubmissionState.FAILED
            record.last_error = str(error)
            await self._finish(record)
            return record.model_copy()

    async def release(self, key: str) -> None:
        """Return an in-flight record to Pending without counting it as a failure."""
        async with self._lock:
            record = self._require(key, SubmissionState.SUBMITTED)
            record.state = SubmissionState.PENDING
            record.updated_at = _now()
            self._in_flight.discard(key)
            self._ready.appendleft(key)
            try:
                await self._persist(record)
            finally:
                self._changed.notify_all()

    async def _finish(self, record: SubmissionRecord) -> None:
        # The slot is freed even if the store refuses the write
        record.updated_at = _now()
        self._in_flight.discard(record.idempotency_key)
        try:
            await self._persist(record)
        finally:
            self._changed.notify_all()

    def get(self, key: str) -> SubmissionRecord:
        """Return a copy of the record for ``key``."""
        return self._require(key).model_copy()

    def status(self, key: str) -> SubmissionStatus:
        return SubmissionStatus.of(self._require(key))

    def records(self) -> list[SubmissionRecord]:
        return [r.model_copy() for r in self._records.values()]

    def has_ready(self) -> bool:
        return bool(self._ready) and len(self._in_flight) < self.max_in_flight

    async def wait_ready(self, timeout: float) -> bool:
        """Wait until a record could be handed out, or ``timeout`` elapses."""
        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(self.has_ready), timeout)
            except TimeoutError:
                return False
            return True

    async def wait_terminal(self, key: str, timeout: float | None = None) -> SubmissionStatus:
        """Wait until ``key`` reaches a terminal state.

        Raises:
            UnknownSubmission: If the key was never enqueued.
            TimeoutError: If ``timeout`` elapses first.
        """
        self._require(key)
        async with self._changed:
            await asyncio.wait_for(
                self._changed.wait_for(lambda: self._records[key].is_terminal), timeout
            )
            return SubmissionStatus.of(self._records[key])
