"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import logging
from datetime import UTC, datetime

import pytest
from hypothesis import settings

from opsledger.core.config import LedgerClientConfig
from opsledger.core.event import BuildEvent, BuildStatus, encode_payload
from opsledger.ledgers.inmemory import InMemoryLedger

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int | None = None) -> list[str]:
        return [r.getMessage() for r in self.records if level is None or r.levelno == level]

    def clear(self) -> None:
        self.records.clear()


def fast_config(**overrides) -> LedgerClientConfig:
    """Config with timings shrunk so retry paths finish in milliseconds."""
    values = {
        "backoff_base": 0.001,
        "backoff_cap": 0.01,
        "backoff_jitter": 0.0,
        "status_poll_interval": 0.001,
        "confirm_timeout": 0.05,
        "poll_interval": 0.01,
        "call_timeout": 1.0,
        "submit_timeout": 1.0,
        "drain_timeout": 1.0,
    }
    values.update(overrides)
    return LedgerClientConfig(**values)


def make_payload(build_id: str, status: str = "Success", developer: str = "alice") -> bytes:
    """Encoded on-chain payload for a fresh event."""
    return encode_payload(BuildEvent(build_id=build_id, status=status, developer=developer))


@pytest.fixture
def config() -> LedgerClientConfig:
    return fast_config()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger(clock=lambda: datetime(2024, 5, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def log_capture():
    """Capture everything logged under the ``opsledger`` logger."""
    logger = logging.getLogger("opsledger")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    original_level = logger.level

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield handler

    logger.removeHandler(handler)
    logger.setLevel(original_level)


@pytest.fixture
def sample_event() -> BuildEvent:
    return BuildEvent(
        build_id="build-42",
        status=BuildStatus.SUCCESS,
        developer="alice",
        submitted_at=datetime(2024, 5, 1, 11, 59, 30, tzinfo=UTC),
    )
