"""Core components of the OpsLedger client.

Types:
    BuildEvent: Immutable build/deploy event with its ledger position once confirmed.
    BuildStatus: Started, Success, Failure or Aborted.
    SubmissionQueue / SubmissionRecord / SubmissionStatus: Pending submissions.
    LedgerWriter: Submits records with congestion backoff and bounded retries.
    MaterializedLog / Reconciler: Local, reorg-aware view of the ledger.
    QueryService / EventFilter / EventPage: Read API over the log.
    LedgerClient: Facade that wires everything together.

Codec:
    encode, decode, encode_payload: Canonical bytes for a BuildEvent.
"""

from opsledger.core.client import LedgerClient
from opsledger.core.config import LedgerClientConfig
from opsledger.core.errors import (
    ConfirmationTimeout,
    FinalizedConsistencyViolation,
    InvalidCursor,
    InvalidTransition,
    LedgerClientError,
    LedgerError,
    LedgerUnavailableError,
    MalformedEvent,
    NetworkError,
    RejectedPermanent,
    RejectedTransient,
    ReorgConflict,
    RetriesExhausted,
    TransactionDropped,
    TransientLedgerError,
    UnknownSubmission,
)
from opsledger.core.event import BuildEvent, BuildStatus, decode, encode, encode_payload
from opsledger.core.query import EventFilter, EventPage, QueryService, serialize_event
from opsledger.core.queue import (
    SubmissionQueue,
    SubmissionRecord,
    SubmissionState,
    SubmissionStatus,
)
from opsledger.core.reconciler import LogSnapshot, MaterializedLog, Reconciler, ReconcilerStats
from opsledger.core.writer import LedgerWriter, WriterStats

__all__ = [
    "BuildEvent",
    "BuildStatus",
    "encode",
    "decode",
    "encode_payload",
    "SubmissionQueue",
    "SubmissionRecord",
    "SubmissionState",
    "SubmissionStatus",
    "LedgerWriter",
    "WriterStats",
    "LogSnapshot",
    "MaterializedLog",
    "Reconciler",
    "ReconcilerStats",
    "EventFilter",
    "EventPage",
    "QueryService",
    "serialize_event",
    "LedgerClient",
    "LedgerClientConfig",
    # Errors
    "LedgerClientError",
    "MalformedEvent",
    "LedgerError",
    "TransientLedgerError",
    "NetworkError",
    "RejectedTransient",
    "RejectedPermanent",
    "ConfirmationTimeout",
    "TransactionDropped",
    "RetriesExhausted",
    "ReorgConflict",
    "FinalizedConsistencyViolation",
    "LedgerUnavailableError",
    "InvalidCursor",
    "InvalidTransition",
    "UnknownSubmission",
]
