"""BuildEvent model and its canonical wire codec."""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from opsledger.core.errors import MalformedEvent

# Version tag carried by every encoded event
SCHEMA_VERSION = 1

# Maximum encoded size accepted by the on-chain program
MAX_ENCODED_SIZE = 4_096

# Identifier bound: two identifiers at six bytes per character (\u escapes)
# plus the fixed fields stay under MAX_ENCODED_SIZE
MAX_IDENTIFIER_LENGTH = 256

# Largest ledger position (signed 64-bit)
MAX_SEQUENCE = 2**63 - 1

_FIELDS = frozenset(
    {"v", "build_id", "status", "developer", "submitted_at", "ledger_timestamp", "sequence"}
)


class BuildStatus(str, Enum):
    """Outcome of a CI/CD build or deploy step."""

    STARTED = "Started"
    SUCCESS = "Success"
    FAILURE = "Failure"
    ABORTED = "Aborted"

    @classmethod
    def parse(cls, value: "str | BuildStatus") -> "BuildStatus":
        """Parse a status name case-insensitively.

        Raises:
            MalformedEvent: If the value names no known status.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value.lower() == wanted:
                    return member
        raise MalformedEvent(f"unknown build status: {value!r}")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BuildEvent(BaseModel):
    """Immutable record of one build/deploy event.

    Attributes:
        build_id: Caller-assigned build identifier. Not unique across retries.
        status: Build outcome.
        developer: Identity of the developer who triggered the build.
        submitted_at: Client-side timestamp (advisory only), UTC.
        ledger_timestamp: Authoritative timestamp, set once confirmed on-chain.
        sequence: Ledger position, set once confirmed on-chain.
    """

    build_id: str = Field(max_length=MAX_IDENTIFIER_LENGTH)
    status: BuildStatus
    developer: str = Field(max_length=MAX_IDENTIFIER_LENGTH)
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ledger_timestamp: datetime | None = None
    sequence: int | None = Field(default=None, le=MAX_SEQUENCE)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("build_id", "developer")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Ensure identifiers are non-empty after whitespace stripping and valid UTF-8."""
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        try:
            v.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ValueError(f"must be encodable as UTF-8: {e.reason}") from e
        return v

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> BuildStatus:
        try:
            return BuildStatus.parse(v)
        except MalformedEvent as e:
            raise ValueError(str(e)) from e

    @field_validator("submitted_at", "ledger_timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        """Store all timestamps as aware UTC datetimes (naive input is taken as UTC)."""
        if v is None:
            return None
        return _to_utc(v)

    @field_validator("sequence")
    @classmethod
    def validate_sequence(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError(f"sequence must be >= 0, got {v}")
        return v

    @property
    def is_confirmed(self) -> bool:
        return self.sequence is not None

    def confirmed(self, sequence: int, ledger_timestamp: datetime) -> "BuildEvent":
        """Return a copy carrying the ledger-assigned position and timestamp."""
        return BuildEvent(
            build_id=self.build_id,
            status=self.status,
            developer=self.developer,
            submitted_at=self.submitted_at,
            ledger_timestamp=ledger_timestamp,
            sequence=sequence,
        )

    def unconfirmed(self) -> "BuildEvent":
        """Return the pre-confirmation form of this event."""
        if not self.is_confirmed and self.ledger_timestamp is None:
            return self
        return BuildEvent(
            build_id=self.build_id,
            status=self.status,
            developer=self.developer,
            submitted_at=self.submitted_at,
        )

    def same_payload(self, other: "BuildEvent") -> bool:
        """True if both events carry the same submitted fields."""
        return encode_payload(self) == encode_payload(other)


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def encode(event: BuildEvent) -> bytes:
    """Encode an event to canonical bytes.

    Identical events always produce identical bytes: keys are sorted,
    separators are compact and timestamps are UTC ISO-8601.
    """
    doc = {
        "v": SCHEMA_VERSION,
        "build_id": event.build_id,
        "status": event.status.value,
        "developer": event.developer,
        "submitted_at": _format_ts(event.submitted_at),
        "ledger_timestamp": _format_ts(event.ledger_timestamp),
        "sequence": event.sequence,
    }
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def encode_payload(event: BuildEvent) -> bytes:
    """Encode the pre-confirmation form of an event, as submitted on-chain."""
    return encode(event.unconfirmed())


def _parse_ts(doc: dict[str, Any], key: str, optional: bool) -> datetime | None:
    raw = doc[key]
    if raw is None and optional:
        return None
    if not isinstance(raw, str):
        raise MalformedEvent(f"{key} must be an ISO-8601 string, got {type(raw).__name__}")
    try:
        return datetime.fromisoformat(raw)
    except ValueError as e:
        raise MalformedEvent(f"{key} is not a valid timestamp: {raw!r}") from e


def decode(data: bytes) -> BuildEvent:
    """Decode canonical bytes into a BuildEvent.

    Raises:
        MalformedEvent: For any input that does not satisfy the schema.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedEvent(f"expected bytes, got {type(data).__name__}")
    if len(data) > MAX_ENCODED_SIZE:
        raise MalformedEvent(f"encoded event exceeds {MAX_ENCODED_SIZE} bytes")
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEvent(f"event is not valid UTF-8 JSON: {e}") from e

    if not isinstance(doc, dict):
        raise MalformedEvent(f"event must be a JSON object, got {type(doc).__name__}")
    keys = set(doc)
    if keys != _FIELDS:
        missing = sorted(_FIELDS - keys)
        extra = sorted(keys - _FIELDS)
        raise MalformedEvent(f"field mismatch (missing={missing}, extra={extra})")
    if isinstance(doc["v"], bool) or doc["v"] != SCHEMA_VERSION:
        raise MalformedEvent(f"unsupported schema version: {doc['v']!r}")

    for key in ("build_id", "status", "developer"):
        if not isinstance(doc[key], str):
            raise MalformedEvent(f"{key} must be a string, got {type(doc[key]).__name__}")
    sequence = doc["sequence"]
    if sequence is not None and (isinstance(sequence, bool) or not isinstance(sequence, int)):
        raise MalformedEvent(f"sequence must be an integer, got {type(sequence).__name__}")

    try:
        status = BuildStatus(doc["status"])
    except ValueError as e:
        raise MalformedEvent(f"unknown build status: {doc['status']!r}") from e
    try:
        return BuildEvent(
            build_id=doc["build_id"],
            status=status,
            developer=doc["developer"],
            submitted_at=_parse_ts(doc, "submitted_at", optional=False),
            ledger_timestamp=_parse_ts(doc, "ledger_timestamp", optional=True),
            sequence=sequence,
        )
    except ValidationError as e:
        raise MalformedEvent(f"invalid event fields: {e}") from e
