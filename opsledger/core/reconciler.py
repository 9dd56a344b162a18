"""Materialized log and the reconciler that keeps it in step with the ledger.

The MaterializedLog is the single source of truth for what the ledger has
recorded. It is a gap-free run of confirmed BuildEvents indexed by
sequence, split by ``finalized_height`` into an immutable finalized
prefix and a ``pending_tail`` that a reorg may rewrite.

Only the Reconciler mutates the log. Readers take a LogSnapshot, an
immutable view, so a concurrent reconciliation never yields a torn read.
"""

import asyncio
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from opsledger.core.config import LedgerClientConfig
from opsledger.core.errors import (
    FinalizedConsistencyViolation,
    LedgerUnavailableError,
    MalformedEvent,
    ReorgConflict,
    TransientLedgerError,
)
from opsledger.core.event import BuildEvent, decode
from opsledger.core.logging import get_logger
from opsledger.ledgers.base import Ledger, LedgerEntry

if TYPE_CHECKING:
    from opsledger.stores.base import StateStore


@dataclass(frozen=True)
class LogSnapshot:
    """Immutable point-in-time view of the materialized log."""

    events: tuple[BuildEvent, ...]
    start_position: int
    finalized_height: int
    violation: str | None = None
    unavailable: str | None = None

    @property
    def degraded(self) -> bool:
        return self.violation is not None

    @property
    def stale(self) -> bool:
        """True while the ledger cannot be read and the log may be behind it."""
        return self.unavailable is not None

    @property
    def tip(self) -> int:
        """Sequence of the newest event (start_position - 1 when empty)."""
        return self.start_position + len(self.events) - 1

    @property
    def finalized(self) -> tuple[BuildEvent, ...]:
        return self.events[: self.finalized_height - self.start_position + 1]

    @property
    def pending_tail(self) -> tuple[BuildEvent, ...]:
        return self.events[self.finalized_height - self.start_position + 1 :]

    def event_at(self, position: int) -> BuildEvent | None:
        index = position - self.start_position
        if 0 <= index < len(self.events):
            return self.events[index]
        return None


class MaterializedLog:
    """Ordered, gap-free log of confirmed events with a finalized watermark."""

    def __init__(self, start_position: int = 0) -> None:
        self._start = start_position
        self._events: list[BuildEvent] = []
        self._finalized_height = start_position - 1
        self._violation: str | None = None
        self._unavailable: str | None = None
        self._lock = threading.Lock()

    @property
    def start_position(self) -> int:
        return self._start

    @property
    def finalized_height(self) -> int:
        return self._finalized_height

    @property
    def next_position(self) -> int:
        return self._start + len(self._events)

    @property
    def tip(self) -> int:
        return self.next_position - 1

    @property
    def degraded(self) -> bool:
        return self._violation is not None

    @property
    def violation(self) -> str | None:
        return self._violation

    @property
    def stale(self) -> bool:
        return self._unavailable is not None

    def __len__(self) -> int:
        return len(self._events)

    def snapshot(self) -> LogSnapshot:
        with self._lock:
            return LogSnapshot(
                events=tuple(self._events),
                start_position=self._start,
                finalized_height=self._finalized_height,
                violation=self._violation,
                unavailable=self._unavailable,
            )

    def event_at(self, position: int) -> BuildEvent | None:
        with self._lock:
            index = position - self._start
            if 0 <= index < len(self._events):
                return self._events[index]
            return None

    def restore(self, events: list[BuildEvent], finalized_height: int) -> None:
        """Replace the log with previously finalized events.

        Raises:
            ValueError: If the log is not empty or ``events`` has gaps.
        """
        with self._lock:
            if self._events:
                raise ValueError("cannot restore into a non-empty log")
            if events:
                start = events[0].sequence
                for offset, event in enumerate(events):
                    if event.sequence != start + offset:
                        raise ValueError(
                            f"restored events have a gap at {start + offset} "
                            f"(found {event.sequence})"
                        )
                self._start = start
                finalized_height = max(finalized_height, events[-1].sequence)
            else:
                self._start = max(self._start, finalized_height + 1)
            self._events = list(events)
            self._finalized_height = finalized_height

    def apply(self, divergence: int | None, events: list[BuildEvent]) -> list[BuildEvent]:
        """Evict the pending tail from ``divergence`` and append ``events``, atomically.

        Returns:
            The evicted events.

        Raises:
            ValueError: If the eviction would touch a finalized entry, or the
                appended events are not contiguous with the log.
        """
        with self._lock:
            evicted: list[BuildEvent] = []
            events_after = self._events
            if divergence is not None:
                if divergence <= self._finalized_height:
                    raise ValueError(
                        f"cannot evict from {divergence}: finalized through "
                        f"{self._finalized_height}"
                    )
                index = max(divergence - self._start, 0)
                evicted = events_after[index:]
                events_after = events_after[:index]

            expected = self._start + len(events_after)
            for event in events:
                if event.sequence != expected:
                    raise ValueError(f"expected sequence {expected}, got {event.sequence}")
                expected += 1

            self._events = events_after + list(events)
            return evicted

    def advance_finalized(self, height: int) -> None:
        """Move the watermark forward. Never moves backwards or past the tip."""
        with self._lock:
            height = min(height, self._start + len(self._events) - 1)
            if height > self._finalized_height:
                self._finalized_height = height

    def mark_violation(self, message: str) -> None:
        with self._lock:
            self._violation = message

    def mark_unavailable(self, message: str | None) -> None:
        """Flag the log as stale (or clear the flag with None)."""
        with self._lock:
            self._unavailable = message


@dataclass
class ReconcilerStats:
    """Statistics from reconciliation polls."""

    polls: int = 0
    appended: int = 0
    evicted: int = 0
    reorgs: int = 0
    gaps: int = 0
    gap_requeries: int = 0
    malformed_entries: int = 0
    ledger_errors: int = 0


class Reconciler:
    """Polls the ledger and keeps the MaterializedLog consistent with it."""

    def __init__(
        self,
        log: MaterializedLog,
        ledger: Ledger,
        config: LedgerClientConfig | None = None,
        store: "StateStore | None" = None,
    ) -> None:
        self.log = log
        self.ledger = ledger
        self.config = config or LedgerClientConfig()
        self.store = store
        self._log = get_logger("opsledger.reconciler")
        self._stop = asyncio.Event()
        self._stats = ReconcilerStats()
        self._violation: FinalizedConsistencyViolation | None = None
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._unavailable: LedgerUnavailableError | None = None
        # Highest sequence already appended to the store's finalized list
        self._persisted_height: int | None = None
        self._poll_lock = asyncio.Lock()

    def get_stats(self) -> ReconcilerStats:
        s = self._stats
        return ReconcilerStats(**vars(s))

    async def load(self) -> int:
        """Restore finalized events and watermark from the store.

        Returns:
            Number of finalized events restored.
        """
        if self.store is None:
            return 0
        events = await self.store.load_finalized()
        watermark = await self.store.load_watermark()
        if watermark is None and not events:
            return 0
        height = watermark if watermark is not None else events[-1].sequence
        self.log.restore(events, height)
        self._log.info(
            f"Restored {len(events)} finalized events (watermark {self.log.finalized_height})",
            extra={"restored": len(events), "position": self.log.finalized_height},
        )
        return len(events)

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.config.call_timeout)

    def _to_event(self, entry: LedgerEntry) -> BuildEvent | None:
        try:
            event = decode(entry.payload)
            if event.is_confirmed:
                raise MalformedEvent("on-chain payload carries a sequence")
        except MalformedEvent as e:
            self._stats.malformed_entries += 1
            self._log.error(
                f"Undecodable entry at position {entry.position}: {e}",
                extra={"position": entry.position},
            )
            return None
        return event.confirmed(entry.position, entry.timestamp)

    def _halt(self, violation: FinalizedConsistencyViolation) -> None:
        self._violation = violation
        self.log.mark_violation(str(violation))
        self._log.critical(
            f"Reconciliation halted: {violation}",
            extra={"position": violation.position},
        )

    async def poll_once(self) -> int:
        """Fetch from the ledger, repair the pending tail and advance finality.

        Returns:
            Number of events appended.

        Raises:
            FinalizedConsistencyViolation: The ledger contradicted a finalized
                entry. Reconciliation stays halted from then on.
            NetworkError, TimeoutError: The ledger could not be read.
        """
        async with self._poll_lock:
            return await self._poll()

    async def _poll(self) -> int:
        if self._violation is not None:
            raise self._violation
        self._stats.polls += 1

        ledger_finalized = await self._call(self.ledger.current_finalized_position())
        snapshot = self.log.snapshot()
        has_finalized = snapshot.finalized_height >= snapshot.start_position
        anchor = snapshot.finalized_height if has_finalized else snapshot.start_position
        first_open = snapshot.finalized_height + 1

        fetched = await self._call(self.ledger.query_appended(anchor))
        by_position = {e.position: e for e in fetched if e.position >= anchor}

        if has_finalized:
            by_position = await self._requery_missing(anchor, by_position)
            anchor_entry = by_position.get(anchor)
            if anchor_entry is None:
                self._log.warning(
                    f"Finalized anchor {anchor} missing from ledger response, skipping poll",
                    extra={"position": anchor},
                )
                return 0
            stored = snapshot.event_at(anchor)
            observed = self._to_event(anchor_entry)
            if observed != stored:
                violation = FinalizedConsistencyViolation(
                    anchor,
                    expected=stored.model_dump_json() if stored else None,
                    observed=observed.model_dump_json() if observed else None,
                )
                self._halt(violation)
                raise violation

        observed_events, complete = await self._contiguous_events(first_open, by_position)

        divergence = self._find_divergence(snapshot, first_open, observed_events, complete)
        if divergence is not None:
            conflict = ReorgConflict(divergence)
            self._stats.reorgs += 1
            self._log.warning(
                f"{conflict}, evicting pending tail",
                extra={"position": divergence},
            )
            next_position = divergence
        else:
            next_position = snapshot.tip + 1

        to_append = [e for e in observed_events if e.sequence >= next_position]
        evicted = self.log.apply(divergence, to_append)
        self._stats.evicted += len(evicted)
        self._stats.appended += len(to_append)
        if to_append:
            self._log.info(
                f"Appended {len(to_append)} events through position {to_append[-1].sequence}",
                extra={"appended": len(to_append), "position": to_append[-1].sequence},
            )

        await self._advance_finality(ledger_finalized)
        return len(to_append)

    async def _requery_missing(
        self, position: int, by_position: dict[int, LedgerEntry]
    ) -> dict[int, LedgerEntry]:
        """Re-query from ``position`` while it is missing, up to max_gap_requeries times."""
        requeries = 0
        while position not in by_position and requeries < self.config.max_gap_requeries:
            if not any(p > position for p in by_position):
                # Nothing above it either: the chain simply ends here
                break
            requeries += 1
            self._stats.gap_requeries += 1
            refetched = await self._call(self.ledger.query_appended(position))
            by_position = {p: e for p, e in by_position.items() if p < position}
            by_position.update({e.position: e for e in refetched if e.position >= position})
        return by_position

    async def _contiguous_events(
        self, first: int, by_position: dict[int, LedgerEntry]
    ) -> tuple[list[BuildEvent], bool]:
        """Decode the run of entries starting at ``first``.

        Returns:
            The decoded events and whether the run reached the end of the
            ledger response (False if it stopped at an unresolved gap or an
            undecodable entry).
        """
        events: list[BuildEvent] = []
        position = first
        while True:
            highest = max(by_position, default=first - 1)
            if position > highest:
                return events, True
            if position not in by_position:
                self._stats.gaps += 1
                by_position = await self._requery_missing(position, by_position)
                if position not in by_position:
                    if any(p > position for p in by_position):
                        self._log.warning(
                            f"Gap at position {position} unresolved after "
                            f"{self.config.max_gap_requeries} re-queries",
                            extra={"position": position},
                        )
                        return events, False
                    return events, True
            event = self._to_event(by_position[position])
            if event is None:
                return events, False
            events.append(event)
            position += 1

    @staticmethod
    def _find_divergence(
        snapshot: LogSnapshot,
        first_open: int,
        observed: list[BuildEvent],
        complete: bool,
    ) -> int | None:
        """First pending position whose event changed or disappeared, if any."""
        for existing in snapshot.pending_tail:
            index = existing.sequence - first_open
            if index < len(observed):
                if observed[index] != existing:
                    return existing.sequence
            elif complete:
                return existing.sequence
            else:
                # Beyond an unresolved gap nothing can be verified yet
                return None
        return None

    async def _advance_finality(self, ledger_finalized: int) -> None:
        snapshot = self.log.snapshot()
        if ledger_finalized < snapshot.finalized_height and snapshot.finalized:
            self._log.warning(
                f"Ledger finalized position {ledger_finalized} is behind local watermark "
                f"{snapshot.finalized_height}",
                extra={"position": ledger_finalized},
            )
            return
        target = min(ledger_finalized, snapshot.tip - self.config.confirmation_depth)
        if target <= snapshot.finalized_height:
            return
        newly_final = [e for e in snapshot.pending_tail if e.sequence <= target]
        if self.store is not None:
            persisted = self._persisted_height
            if persisted is None:
                persisted = snapshot.finalized_height
            # A failed save_watermark must not append the same events twice
            unsaved = [e for e in newly_final if e.sequence > persisted]
            await self.store.append_finalized(unsaved)
            if unsaved:
                self._persisted_height = unsaved[-1].sequence
            await self.store.save_watermark(target)
        self.log.advance_finalized(target)
        self._log.info(
            f"Finalized through position {target}",
            extra={"position": target, "finalized": len(newly_final)},
        )

    async def _sleep(self, delay: float) -> bool:
        if self._stop.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    def stop(self) -> None:
        self._stop.set()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def unavailable(self) -> LedgerUnavailableError | None:
        """Set while polls keep failing past max_consecutive_failures."""
        return self._unavailable

    def poll_delay(self) -> float:
        """Delay before the next poll: poll_interval, doubled per consecutive failure."""
        if not self._consecutive_failures:
            return self.config.poll_interval
        delay = self.config.poll_interval * (2 ** (self._consecutive_failures - 1))
        return min(self.config.max_poll_backoff, max(delay, self.config.poll_interval))

    def _record_failure(self, error: Exception) -> None:
        self._consecutive_failures += 1
        self._stats.ledger_errors += 1
        self._last_error = str(error) or type(error).__name__
        self._log.error(
            f"Ledger poll failed ({self._consecutive_failures}/"
            f"{self.config.max_consecutive_failures}): {self._last_error}",
            exc_info=not isinstance(error, (TransientLedgerError, TimeoutError)),
            extra={"consecutive_failures": self._consecutive_failures},
        )
        if (
            self._unavailable is None
            and self._consecutive_failures >= self.config.max_consecutive_failures
        ):
            self._unavailable = LedgerUnavailableError(
                f"Ledger unavailable after {self._consecutive_failures} failures",
                failure_count=self._consecutive_failures,
                last_error=self._last_error,
            )
            self.log.mark_unavailable(str(self._unavailable))
            self._log.critical(
                f"{self._unavailable}, serving possibly stale log",
                extra={"consecutive_failures": self._consecutive_failures},
            )

    def _record_success(self) -> None:
        if self._unavailable is not None:
            self._log.info(
                f"Ledger reachable again after {self._consecutive_failures} failed polls",
                extra={"consecutive_failures": self._consecutive_failures},
            )
            self._unavailable = None
            self.log.mark_unavailable(None)
        self._consecutive_failures = 0
        self._last_error = None

    async def run(self) -> ReconcilerStats:
        """Poll until stop() is called.

        Failed polls are retried with capped exponential backoff. After
        max_consecutive_failures in a row the log is marked stale until a
        poll succeeds again.

        Raises:
            FinalizedConsistencyViolation: Reconciliation halted.
        """
        while not self._stop.is_set():
            try:
                await self.poll_once()
                self._record_success()
            except FinalizedConsistencyViolation:
                raise
            except Exception as e:
                self._record_failure(e)
            if await self._sleep(self.poll_delay()):
                break
        return self._stats
