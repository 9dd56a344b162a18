"""OpsLedger - Tamper-evident CI/CD build log on an append-only ledger."""

from opsledger.core import (
    BuildEvent,
    BuildStatus,
    EventFilter,
    EventPage,
    FinalizedConsistencyViolation,
    LedgerClient,
    LedgerClientConfig,
    MalformedEvent,
    NetworkError,
    RejectedPermanent,
    RejectedTransient,
    RetriesExhausted,
    SubmissionState,
    SubmissionStatus,
    decode,
    encode,
)
from opsledger.ledgers import InMemoryLedger, Ledger
from opsledger.stores import InMemoryStateStore, RedisStateStore, StateStore

__version__ = "0.1.0"

__all__ = [
    # Core
    "BuildEvent",
    "BuildStatus",
    "encode",
    "decode",
    "LedgerClient",
    "LedgerClientConfig",
    "EventFilter",
    "EventPage",
    "SubmissionState",
    "SubmissionStatus",
    # Errors
    "MalformedEvent",
    "NetworkError",
    "RejectedTransient",
    "RejectedPermanent",
    "RetriesExhausted",
    "FinalizedConsistencyViolation",
    # Ledgers
    "Ledger",
    "InMemoryLedger",
    # Stores
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    # Meta
    "__version__",
]
