"""Error taxonomy for the OpsLedger client.

Transient errors (NetworkError, RejectedTransient) are absorbed by the
writer and reconciler loops. Permanent and exhausted submissions are
surfaced through submission state. A FinalizedConsistencyViolation stops
reconciliation and puts every query result into degraded mode.
"""


class LedgerClientError(Exception):
    """Base class for all OpsLedger client errors."""


class MalformedEvent(LedgerClientError, ValueError):
    """Raised when bytes or fields do not form a valid BuildEvent."""


class LedgerError(LedgerClientError):
    """Base class for outcomes reported by the external ledger."""


class TransientLedgerError(LedgerError):
    """A ledger failure that may succeed when retried."""


class NetworkError(TransientLedgerError):
    """The ledger endpoint could not be reached or did not answer."""


class RejectedTransient(TransientLedgerError):
    """The ledger rejected the transaction for a temporary reason (fee, congestion)."""


class ConfirmationTimeout(TransientLedgerError):
    """A submitted transaction was still pending when the confirmation wait ran out."""


class TransactionDropped(TransientLedgerError):
    """A submitted transaction is no longer known to the ledger."""


class RejectedPermanent(LedgerError):
    """The on-chain program or the node rejected the transaction for good."""


class RetriesExhausted(LedgerClientError):
    """Raised when a submission used up its attempt budget.

    Attributes:
        attempts: Number of submission attempts made.
        last_error: String form of the last transient error seen.
    """

    def __init__(self, message: str, attempts: int = 0, last_error: str | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base


class ReorgConflict(LedgerClientError):
    """A pending-tail position now holds a different event (or none)."""

    def __init__(self, position: int, message: str | None = None):
        self.position = position
        super().__init__(message or f"Ledger reorganized at position {position}")


class FinalizedConsistencyViolation(LedgerClientError):
    """The ledger contradicted an entry already considered final.

    This is fatal: reconciliation halts and the log is marked degraded.
    """

    def __init__(self, position: int, expected: str | None = None, observed: str | None = None):
        self.position = position
        self.expected = expected
        self.observed = observed
        super().__init__(
            f"Finalized entry at position {position} was contradicted by the ledger "
            f"(expected={expected!r}, observed={observed!r})"
        )


class LedgerUnavailableError(LedgerClientError):
    """Raised when ledger calls fail consecutively beyond threshold.

    Attributes:
        failure_count: Number of consecutive failures that triggered this error.
        last_error: The last exception message from the ledger.
    """

    def __init__(self, message: str, failure_count: int = 0, last_error: str | None = None):
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base


class InvalidCursor(LedgerClientError, ValueError):
    """A pagination cursor could not be decoded."""


class UnknownSubmission(LedgerClientError, KeyError):
    """No submission record exists for the given idempotency key."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InvalidTransition(LedgerClientError):
    """A submission record was asked to make a transition its state does not allow."""
