"""Ledger writer: drives submission records to a terminal state.

The writer pulls Submitted records from the queue and runs each one in
its own task, so a stuck transaction never blocks the others. Per record
it checks congestion, submits with the idempotency key as nonce, waits
for inclusion and classifies the outcome:

- included at a position      -> Confirmed
- NetworkError, RejectedTransient, timeouts -> backoff and retry
- RejectedPermanent           -> Failed, no retry
- attempts used up            -> Abandoned

It never resubmits after a timeout without first asking the ledger
where the earlier transaction went.
"""

import asyncio
import random
from collections import defaultdict
from dataclasses import dataclass, field

from opsledger.core.config import LedgerClientConfig
from opsledger.core.errors import (
    ConfirmationTimeout,
    RejectedPermanent,
    RetriesExhausted,
    TransactionDropped,
    TransientLedgerError,
)
from opsledger.core.event import encode_payload
from opsledger.core.logging import get_logger
from opsledger.core.queue import SubmissionQueue, SubmissionRecord, SubmissionState
from opsledger.ledgers.base import Ledger, TxState, TxStatus


def _describe(error: BaseException) -> str:
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name


@dataclass
class WriterStats:
    """Statistics from a writer run."""

    attempts: int = 0
    confirmed: int = 0
    failed: int = 0
    abandoned: int = 0
    released: int = 0
    congestion_deferrals: int = 0
    transient_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))


class LedgerWriter:
    """Submits queued build events to the ledger with bounded retries."""

    def __init__(
        self,
        queue: SubmissionQueue,
        ledger: Ledger,
        config: LedgerClientConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.queue = queue
        self.ledger = ledger
        self.config = config or LedgerClientConfig()
        self._rng = rng or random.Random()
        self._log = get_logger("opsledger.writer")
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._stats = WriterStats()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> WriterStats:
        """Return a copy of current statistics."""
        return WriterStats(
            attempts=self._stats.attempts,
            confirmed=self._stats.confirmed,
            failed=self._stats.failed,
            abandoned=self._stats.abandoned,
            released=self._stats.released,
            congestion_deferrals=self._stats.congestion_deferrals,
            transient_errors=defaultdict(int, self._stats.transient_errors),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Capped exponential backoff with jitter for the given attempt number (1-based)."""
        delay = min(self.config.backoff_cap, self.config.backoff_base * (2 ** max(attempt - 1, 0)))
        if self.config.backoff_jitter:
            delay *= 1.0 - self.config.backoff_jitter * self._rng.random()
        return delay

    async def _sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds. Returns True if stop was requested meanwhile."""
        if self._stop.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _spawn(self, record: SubmissionRecord) -> asyncio.Task:
        task = asyncio.create_task(
            self._drive(record), name=f"submit-{record.idempotency_key[:12]}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self) -> WriterStats:
        """Dequeue and drive records until stop() is called."""
        while not self._stop.is_set():
            record = await self.queue.next_ready()
            if record is not None:
                self._spawn(record)
                continue

            ready = asyncio.create_task(self.queue.wait_ready(timeout=self.config.poll_interval))
            stopping = asyncio.create_task(self._stop.wait())
            try:
                await asyncio.wait({ready, stopping}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (ready, stopping):
                    task.cancel()
                await asyncio.gather(ready, stopping, return_exceptions=True)
        return self._stats

    async def submit_pending(self) -> WriterStats:
        """Drive every ready record to completion, then return.

        Used by one-shot callers (CI steps, tests) that do not keep a
        background worker running.
        """
        while not self._stop.is_set():
            record = await self.queue.next_ready()
            if record is not None:
                self._spawn(record)
                continue
            if not self._tasks:
                break
            await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
        return self._stats

    def stop(self) -> None:
        """Stop dequeuing new records. In-flight records keep going."""
        self._stop.set()

    async def shutdown(self, drain_timeout: float | None = None) -> int:
        """Stop, wait for in-flight records, then cancel the stragglers.

        Cancelled records are released back to Pending.

        Returns:
            Number of records that did not finish within the drain timeout.
        """
        self.stop()
        timeout = self.config.drain_timeout if drain_timeout is None else drain_timeout
        tasks = set(self._tasks)
        if not tasks:
            return 0
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            self._log.warning(
                f"Cancelled {len(still_running)} in-flight submissions at shutdown",
                extra={"cancelled": len(still_running)},
            )
        return len(still_running)

    # ------------------------------------------------------------------
    # Per-record lifecycle
    # ------------------------------------------------------------------

    async def _drive(self, record: SubmissionRecord) -> None:
        key = record.idempotency_key
        try:
            await self._process(record)
        except asyncio.CancelledError:
            await self._release(key)
            raise
        except Exception as e:
            self._log.error(
                f"Unexpected error while submitting: {e}",
                exc_info=True,
                extra={"idempotency_key": key, "build_id": record.event.build_id},
            )
            if self.queue.get(key).state is SubmissionState.SUBMITTED:
                self._stats.failed += 1
                try:
                    await self.queue.nack(key, e)
                except Exception as nack_error:
                    self._log.error(
                        f"Could not record failure: {nack_error}",
                        exc_info=True,
                        extra={"idempotency_key": key, "build_id": record.event.build_id},
                    )

    async def _release(self, key: str) -> None:
        if self.queue.get(key).state is not SubmissionState.SUBMITTED:
            return
        self._stats.released += 1
        await self.queue.release(key)
        self._log.info("Released in-flight submission", extra={"idempotency_key": key})

    async def _process(self, record: SubmissionRecord) -> None:
        cfg = self.config
        key = record.idempotency_key
        build_id = record.event.build_id
        payload = encode_payload(record.event)
        attempts = record.attempts
        ref = record.transaction_ref
        last_error = record.last_error
        deferrals = 0
        failed_checks = 0
        # A ref carried over from before (restart) must be checked before resubmitting
        needs_check = ref is not None

        while True:
            try:
                if ref is not None and needs_check:
                    status = await self._check_status(key, ref)
                    if status is None:
                        # Where the earlier transaction went is still unknown
                        failed_checks += 1
                        if failed_checks >= cfg.max_attempts:
                            await self._abandon(
                                key, build_id, attempts, last_error or "ledger status unavailable"
                            )
                            return
                        if await self._sleep(self.backoff_delay(failed_checks)):
                            await self._release(key)
                            return
                        continue
                    needs_check = False
                    failed_checks = 0
                    if status.state is TxState.INCLUDED:
                        await self._confirm(key, build_id, status)
                        return
                    if status.state is TxState.NOT_FOUND:
                        ref = None

                if attempts >= cfg.max_attempts:
                    await self._abandon(key, build_id, attempts, last_error)
                    return

                if not await self._admit(key, build_id, deferrals):
                    deferrals += 1
                    self._stats.congestion_deferrals += 1
                    if deferrals > cfg.max_congestion_deferrals:
                        await self._abandon(
                            key, build_id, attempts, last_error or "ledger stayed congested"
                        )
                        return
                    if await self._sleep(self.backoff_delay(deferrals)):
                        await self._release(key)
                        return
                    continue

                attempts = await self.queue.begin_attempt(key)
                self._stats.attempts += 1
                self._log.info(
                    f"Submitting build {build_id} (attempt {attempts}/{cfg.max_attempts})",
                    extra={"idempotency_key": key, "build_id": build_id, "attempt": attempts},
                )
                ref = await asyncio.wait_for(
                    self.ledger.submit(payload, nonce=key, auth=cfg.auth),
                    timeout=cfg.submit_timeout,
                )
                await self.queue.note_transaction(key, ref)

                status = await self._await_inclusion(ref)
                if status.state is TxState.INCLUDED:
                    await self._confirm(key, build_id, status)
                    return
                if status.state is TxState.PENDING:
                    raise ConfirmationTimeout(
                        f"transaction {ref} not included within {cfg.confirm_timeout}s"
                    )
                raise TransactionDropped(f"transaction {ref} was dropped by the ledger")

            except RejectedPermanent as e:
                await self._fail(key, build_id, e)
                return

            except (TransientLedgerError, TimeoutError) as e:
                last_error = _describe(e)
                needs_check = True
                self._stats.transient_errors[type(e).__name__] += 1
                await self.queue.note_error(key, last_error)

                if attempts >= cfg.max_attempts:
                    if ref is not None:
                        status = await self._check_status(key, ref)
                        if status is not None and status.state is TxState.INCLUDED:
                            await self._confirm(key, build_id, status)
                            return
                    await self._abandon(key, build_id, attempts, last_error)
                    return

                delay = self.backoff_delay(attempts)
                self._log.warning(
                    f"Transient failure, retrying in {delay:.3f}s "
                    f"({attempts}/{cfg.max_attempts}): {last_error}",
                    extra={
                        "idempotency_key": key,
                        "build_id": build_id,
                        "attempt": attempts,
                        "error": last_error,
                    },
                )
                if await self._sleep(delay):
                    await self._release(key)
                    return

    async def _admit(self, key: str, build_id: str, deferrals: int) -> bool:
        """Return True if congestion is at or below the fee ceiling."""
        try:
            level = await asyncio.wait_for(
                self.ledger.estimate_congestion(), timeout=self.config.call_timeout
            )
        except (TransientLedgerError, TimeoutError) as e:
            self._log.warning(
                f"Congestion estimate failed: {_describe(e)}",
                extra={"idempotency_key": key, "build_id": build_id},
            )
            return False
        if level > self.config.fee_ceiling:
            self._log.info(
                f"Deferring submission: congestion {level:.2f} above ceiling "
                f"{self.config.fee_ceiling:.2f}",
                extra={
                    "idempotency_key": key,
                    "build_id": build_id,
                    "congestion": level,
                    "deferrals": deferrals + 1,
                },
            )
            return False
        return True

    async def _check_status(self, key: str, ref: str) -> TxStatus | None:
        """Ask the ledger about ``ref``. Returns None if the ledger could not answer."""
        try:
            return await asyncio.wait_for(
                self.ledger.get_status(ref), timeout=self.config.call_timeout
            )
        except (TransientLedgerError, TimeoutError) as e:
            self._log.warning(
                f"Status check failed for {ref}: {_describe(e)}",
                extra={"idempotency_key": key},
            )
            return None

    async def _await_inclusion(self, ref: str) -> TxStatus:
        """Poll until ``ref`` leaves PENDING or confirm_timeout elapses.

        After the deadline the status is checked once more, so a
        transaction that landed at the last moment is still seen.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirm_timeout
        while True:
            status = await asyncio.wait_for(
                self.ledger.get_status(ref), timeout=self.config.call_timeout
            )
            if status.state is not TxState.PENDING:
                return status
            remaining = deadline - loop.time()
            if remaining <= 0:
                return await asyncio.wait_for(
                    self.ledger.get_status(ref), timeout=self.config.call_timeout
                )
            await asyncio.sleep(min(self.config.status_poll_interval, remaining))

    async def _confirm(self, key: str, build_id: str, status: TxStatus) -> None:
        record = await self.queue.ack(key, status.position, status.timestamp)
        self._stats.confirmed += 1
        self._log.info(
            f"Build {build_id} confirmed at position {status.position}",
            extra={
                "idempotency_key": key,
                "build_id": build_id,
                "sequence": status.position,
                "attempt": record.attempts,
            },
        )

    async def _fail(self, key: str, build_id: str, error: RejectedPermanent) -> None:
        await self.queue.nack(key, error)
        self._stats.failed += 1
        self._log.error(
            f"Build {build_id} rejected permanently: {error}",
            extra={"idempotency_key": key, "build_id": build_id, "error": str(error)},
        )

    async def _abandon(
        self, key: str, build_id: str, attempts: int, last_error: str | None
    ) -> None:
        error = RetriesExhausted(
            f"gave up after {attempts} attempts", attempts=attempts, last_error=last_error
        )
        await self.queue.nack(key, error)
        self._stats.abandoned += 1
        self._log.error(
            f"Build {build_id} abandoned: {error}",
            extra={"idempotency_key": key, "build_id": build_id, "attempt": attempts},
        )
