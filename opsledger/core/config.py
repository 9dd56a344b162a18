"""Client configuration.

Settings come from two sources, highest priority first:

    1. Environment variables (``OPSLEDGER_<FIELD>``, e.g. ``OPSLEDGER_MAX_ATTEMPTS``)
    2. Built-in defaults

Usage:
    config = LedgerClientConfig.from_env()
    client = LedgerClient(ledger, config=config)
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "OPSLEDGER_"


class LedgerClientConfig(BaseModel):
    """Tunables for the writer, reconciler and query service."""

    # Writer
    max_attempts: int = Field(default=5, ge=1)
    parallelism: int = Field(default=4, ge=1)
    fee_ceiling: float = Field(default=1.0, gt=0)
    max_congestion_deferrals: int = Field(default=20, ge=0)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_cap: float = Field(default=30.0, ge=0)
    backoff_jitter: float = Field(default=0.5, ge=0, le=1)
    submit_timeout: float = Field(default=10.0, gt=0)
    call_timeout: float = Field(default=10.0, gt=0)
    confirm_timeout: float = Field(default=60.0, gt=0)
    status_poll_interval: float = Field(default=1.0, gt=0)
    auth: str | None = None
    nonce_salt: str | None = None

    # Reconciler
    poll_interval: float = Field(default=2.0, gt=0)
    confirmation_depth: int = Field(default=0, ge=0)
    start_position: int = Field(default=0, ge=0)
    max_gap_requeries: int = Field(default=3, ge=0)
    max_consecutive_failures: int = Field(default=10, ge=1)
    max_poll_backoff: float = Field(default=30.0, gt=0)

    # Shutdown
    drain_timeout: float = Field(default=10.0, ge=0)

    # Query
    page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=500, ge=1)

    # Persistence
    redis_url: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @model_validator(mode="after")
    def check_bounds(self) -> "LedgerClientConfig":
        if self.backoff_cap < self.backoff_base:
            raise ValueError(
                f"backoff_cap ({self.backoff_cap}) must be >= backoff_base ({self.backoff_base})"
            )
        if self.page_size > self.max_page_size:
            raise ValueError(
                f"page_size ({self.page_size}) must be <= max_page_size ({self.max_page_size})"
            )
        return self

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: object
    ) -> "LedgerClientConfig":
        """Build a config from ``OPSLEDGER_*`` variables, then apply overrides.

        Values are validated (and coerced from strings) by pydantic.
        """
        environ = os.environ if environ is None else environ
        data: dict[str, object] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw.strip() != "":
                data[name] = raw.strip()
        data.update(overrides)
        return cls(**data)
