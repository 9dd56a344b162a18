"""In-memory simulated chain.

This ledger is suitable for development and testing. It mimics the
behaviour the client has to cope with on a real chain: delayed inclusion,
fee/congestion rejections, network failures, nonce replay protection,
reorganizations of the non-final tail and flaky query results.
Nothing is durable; the chain is lost when the process terminates.
"""

import asyncio
import hashlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from opsledger.core.errors import (
    LedgerError,
    MalformedEvent,
    NetworkError,
    RejectedPermanent,
)
from opsledger.core.event import decode
from opsledger.ledgers.base import LedgerEntry, TxState, TxStatus


@dataclass
class _Tx:
    ref: str
    nonce: str
    payload: bytes
    state: TxState = TxState.PENDING
    position: int | None = None


@dataclass
class _Slot:
    payload: bytes
    timestamp: datetime
    tx_ref: str | None = None


class InMemoryLedger:
    """Append-only chain held in a Python list.

    Args:
        first_position: Position of the first entry (genesis).
        finality_depth: Entries this many positions below the tip are final.
            None means finality only moves via finalize_through().
        auto_include: Include transactions on submit. When False they stay
            pending until mine() is called.
        allowed_auth: If set, submissions whose auth is not in the set are
            rejected permanently.
        latency: Seconds every call sleeps before answering.
        clock: Source of block timestamps.
    """

    def __init__(
        self,
        first_position: int = 0,
        finality_depth: int | None = None,
        auto_include: bool = True,
        allowed_auth: set[str] | None = None,
        latency: float = 0.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.first_position = first_position
        self.finality_depth = finality_depth
        self.auto_include = auto_include
        self.allowed_auth = allowed_auth
        self.latency = latency
        self.congestion = 1.0
        self.network_down = False
        self._clock = clock or (lambda: datetime.now(UTC))
        self._slots: list[_Slot] = []
        self._txs: dict[str, _Tx] = {}
        self._by_nonce: dict[str, str] = {}
        self._mempool: deque[str] = deque()
        self._submit_failures: deque[Exception] = deque()
        self._status_failures: deque[Exception] = deque()
        self._fail_submit_always: Callable[[], Exception] | None = None
        self._hidden: dict[int, int] = {}
        self._explicit_finalized = first_position - 1
        self.submit_calls = 0
        self.status_calls = 0
        self.query_calls = 0
        self.last_query_from: int | None = None

    # ------------------------------------------------------------------
    # Ledger protocol
    # ------------------------------------------------------------------

    async def _call(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.network_down:
            raise NetworkError("ledger endpoint unreachable")

    async def submit(self, payload: bytes, *, nonce: str, auth: str | None = None) -> str:
        self.submit_calls += 1
        await self._call()

        if self._submit_failures:
            raise self._submit_failures.popleft()
        if self._fail_submit_always is not None:
            raise self._fail_submit_always()

        existing = self._by_nonce.get(nonce)
        if existing is not None:
            return existing

        if self.allowed_auth is not None and auth not in self.allowed_auth:
            raise RejectedPermanent(f"sender {auth!r} is not authorized")
        try:
            event = decode(payload)
        except MalformedEvent as e:
            raise RejectedPermanent(f"payload rejected by validator: {e}") from e
        if event.is_confirmed:
            raise RejectedPermanent("payload must not carry a ledger position")

        ref = "0x" + hashlib.sha256(nonce.encode("utf-8")).hexdigest()
        self._txs[ref] = _Tx(ref=ref, nonce=nonce, payload=bytes(payload))
        self._by_nonce[nonce] = ref
        self._mempool.append(ref)
        if self.auto_include:
            self.mine()
        return ref

    async def get_status(self, transaction_ref: str) -> TxStatus:
        self.status_calls += 1
        await self._call()
        if self._status_failures:
            raise self._status_failures.popleft()
        tx = self._txs.get(transaction_ref)
        if tx is None or tx.state is TxState.NOT_FOUND:
            return TxStatus.not_found()
        if tx.state is TxState.PENDING:
            return TxStatus.pending()
        slot = self._slots[tx.position - self.first_position]
        return TxStatus.included(tx.position, slot.timestamp)

    async def query_appended(self, from_position: int) -> list[LedgerEntry]:
        self.query_calls += 1
        self.last_query_from = from_position
        await self._call()
        entries = []
        start = max(from_position, self.first_position)
        for position in range(start, self.tip + 1):
            remaining = self._hidden.get(position, 0)
            if remaining:
                self._hidden[position] = remaining - 1
                continue
            slot = self._slots[position - self.first_position]
            entries.append(LedgerEntry(position, slot.payload, slot.timestamp))
        return entries

    async def current_finalized_position(self) -> int:
        await self._call()
        return self.finalized_position

    async def estimate_congestion(self) -> float:
        await self._call()
        return self.congestion

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    @property
    def tip(self) -> int:
        """Position of the newest entry (first_position - 1 when empty)."""
        return self.first_position + len(self._slots) - 1

    @property
    def finalized_position(self) -> int:
        finalized = self._explicit_finalized
        if self.finality_depth is not None:
            finalized = max(finalized, self.tip - self.finality_depth)
        return min(finalized, self.tip)

    def entries(self) -> list[bytes]:
        """Payloads currently on-chain, in position order."""
        return [slot.payload for slot in self._slots]

    def append_raw(self, payload: bytes) -> int:
        """Append an entry directly, bypassing the transaction flow."""
        self._slots.append(_Slot(payload=bytes(payload), timestamp=self._clock()))
        return self.tip

    def mine(self) -> list[int]:
        """Include every pending transaction, in submission order."""
        positions = []
        while self._mempool:
            tx = self._txs[self._mempool.popleft()]
            if tx.state is not TxState.PENDING:
                continue
            self._slots.append(_Slot(payload=tx.payload, timestamp=self._clock(), tx_ref=tx.ref))
            tx.state = TxState.INCLUDED
            tx.position = self.tip
            positions.append(tx.position)
        return positions

    def finalize_through(self, position: int) -> None:
        self._explicit_finalized = max(self._explicit_finalized, position)

    def fail_next_submits(self, *errors: Exception) -> None:
        """Raise these errors from the next submit calls, one per call."""
        self._submit_failures.extend(errors)

    def fail_next_status_checks(self, *errors: Exception) -> None:
        self._status_failures.extend(errors)

    def fail_all_submits(self, factory: Callable[[], LedgerError] | None) -> None:
        """Raise a fresh error from every submit until reset with None."""
        self._fail_submit_always = factory

    def hide(self, position: int, times: int = 1) -> None:
        """Omit a position from the next ``times`` query results."""
        self._hidden[position] = times

    def reorg(self, from_position: int, payloads: list[bytes] | None = None) -> None:
        """Replace the chain from ``from_position`` with ``payloads``.

        Transactions whose entries are removed fall out of the chain and
        report NOT_FOUND; their nonces become usable again.

        Raises:
            ValueError: If the reorg would touch a finalized position.
        """
        if from_position <= self.finalized_position:
            raise ValueError(
                f"cannot reorg at {from_position}: finalized through {self.finalized_position}"
            )
        self._truncate(from_position)
        for payload in payloads or []:
            self.append_raw(payload)

    def tamper(self, position: int, payload: bytes) -> None:
        """Overwrite an entry regardless of finality (consistency violation)."""
        self._slots[position - self.first_position].payload = bytes(payload)

    def _truncate(self, from_position: int) -> None:
        index = max(from_position - self.first_position, 0)
        for slot in self._slots[index:]:
            if slot.tx_ref is None:
                continue
            tx = self._txs[slot.tx_ref]
            tx.state = TxState.NOT_FOUND
            tx.position = None
            self._by_nonce.pop(tx.nonce, None)
        del self._slots[index:]
