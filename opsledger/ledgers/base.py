"""Protocol for the external ledger.

The ledger is an opaque append-only replicated log. The client never
models consensus; any chain (or a simulation of one) plugs in through
this protocol.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol


class TxState(Enum):
    """Lifecycle of a submitted transaction as seen by the ledger."""

    PENDING = "pending"
    INCLUDED = "included"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TxStatus:
    """Result of a transaction status lookup.

    ``position`` and ``timestamp`` are set only when ``state`` is INCLUDED.
    """

    state: TxState
    position: int | None = None
    timestamp: datetime | None = None

    @classmethod
    def pending(cls) -> "TxStatus":
        return cls(TxState.PENDING)

    @classmethod
    def not_found(cls) -> "TxStatus":
        return cls(TxState.NOT_FOUND)

    @classmethod
    def included(cls, position: int, timestamp: datetime) -> "TxStatus":
        return cls(TxState.INCLUDED, position, timestamp)


@dataclass(frozen=True)
class LedgerEntry:
    """One appended entry: its position, raw payload and block timestamp."""

    position: int
    payload: bytes
    timestamp: datetime


class Ledger(Protocol):
    """Interface the client consumes from the ledger.

    Implementations must honour these guarantees:
    - ``submit`` with a nonce already used returns the original transaction
      ref and never produces a second inclusion.
    - ``query_appended`` returns entries ordered by position.
    - Malformed payloads are rejected synchronously with RejectedPermanent.
    """

    async def submit(self, payload: bytes, *, nonce: str, auth: str | None = None) -> str:
        """Submit an encoded event for inclusion.

        Args:
            payload: Encoded BuildEvent bytes.
            nonce: Replay-protection value; the idempotency key.
            auth: Credential the ledger uses to authorize the sender.

        Returns:
            An opaque transaction ref.

        Raises:
            NetworkError: The endpoint could not be reached.
            RejectedTransient: Underpriced, congested or otherwise retryable.
            RejectedPermanent: Malformed payload or unauthorized sender.
        """
        ...

    async def get_status(self, transaction_ref: str) -> TxStatus:
        """Look up where (or whether) a transaction was included."""
        ...

    async def query_appended(self, from_position: int) -> list[LedgerEntry]:
        """Return every entry at or above ``from_position``, ordered by position."""
        ...

    async def current_finalized_position(self) -> int:
        """Return the highest irreversible position, or -1 if none."""
        ...

    async def estimate_congestion(self) -> float:
        """Return the current congestion/fee level (1.0 is nominal)."""
        ...
