"""LedgerClient: wires queue, writer, reconciler and query service together.

Typical use::

    async with LedgerClient(ledger, config=LedgerClientConfig.from_env()) as client:
        key = await client.enqueue("b1", "Success", "alice")
        status = await client.wait_for_submission(key, timeout=30)
        page = client.list()
"""

import asyncio
import random
from typing import Any

from pydantic import ValidationError

from opsledger.core.config import LedgerClientConfig
from opsledger.core.errors import MalformedEvent
from opsledger.core.event import BuildEvent, BuildStatus
from opsledger.core.logging import get_logger
from opsledger.core.query import EventFilter, EventPage, QueryService
from opsledger.core.queue import SubmissionQueue, SubmissionStatus
from opsledger.core.reconciler import MaterializedLog, Reconciler
from opsledger.core.writer import LedgerWriter
from opsledger.ledgers.base import Ledger
from opsledger.stores.base import StateStore
from opsledger.stores.redis_store import RedisStateStore


class LedgerClient:
    """Producer, query and lifecycle API for one ledger.

    Each client owns its own queue and log; nothing is global, so tests can
    run isolated instances side by side.
    """

    def __init__(
        self,
        ledger: Ledger,
        config: LedgerClientConfig | None = None,
        store: StateStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or LedgerClientConfig()
        if store is None and self.config.redis_url:
            store = RedisStateStore(self.config.redis_url)
        self.ledger = ledger
        self.store = store
        self.queue = SubmissionQueue(
            store=store, max_in_flight=self.config.parallelism, salt=self.config.nonce_salt
        )
        self.log = MaterializedLog(start_position=self.config.start_position)
        self.writer = LedgerWriter(self.queue, ledger, self.config, rng=rng)
        self.reconciler = Reconciler(self.log, ledger, self.config, store=store)
        self.query = QueryService(
            self.log, page_size=self.config.page_size, max_page_size=self.config.max_page_size
        )
        self._log = get_logger("opsledger.client")
        self._loaded = False
        self._writer_task: asyncio.Task | None = None
        self._reconciler_task: asyncio.Task | None = None
        self._reconciler_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore persisted queue and log state. Idempotent."""
        if self._loaded:
            return
        await self.queue.load()
        await self.reconciler.load()
        self._loaded = True

    async def start(self) -> None:
        """Load state and start the writer and reconciler workers."""
        if self._writer_task is not None:
            raise RuntimeError("client already started")
        await self.load()
        self._writer_task = asyncio.create_task(self.writer.run(), name="opsledger-writer")
        self._reconciler_task = asyncio.create_task(
            self.reconciler.run(), name="opsledger-reconciler"
        )
        self._reconciler_task.add_done_callback(self._on_reconciler_done)
        self._log.info("Ledger client started", extra={"parallelism": self.config.parallelism})

    def _on_reconciler_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._reconciler_error = error
            self._log.critical(
                f"Reconciler stopped: {error}", extra={"error_type": type(error).__name__}
            )

    async def shutdown(self, drain_timeout: float | None = None) -> None:
        """Stop dequeuing, drain in-flight submissions (bounded) and stop polling."""
        cancelled = await self.writer.shutdown(drain_timeout)
        self.reconciler.stop()
        for task in (self._writer_task, self._reconciler_task):
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        self._writer_task = None
        self._reconciler_task = None
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()
        self._log.info("Ledger client stopped", extra={"cancelled": cancelled})

    async def __aenter__(self) -> "LedgerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def reconciler_error(self) -> BaseException | None:
        """Exception that stopped the background reconciler, if any."""
        return self._reconciler_error

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        build_id: str,
        status: BuildStatus | str,
        developer: str,
        nonce: str | None = None,
    ) -> str:
        """Accept a build event for submission and return its idempotency key.

        Raises:
            MalformedEvent: If the fields do not form a valid event.
        """
        try:
            event = BuildEvent(build_id=build_id, status=status, developer=developer)
        except ValidationError as e:
            raise MalformedEvent(f"invalid build event: {e}") from e
        return await self.queue.enqueue(event, nonce=nonce)

    def get_submission_state(self, key: str) -> SubmissionStatus:
        return self.queue.status(key)

    async def wait_for_submission(
        self, key: str, timeout: float | None = None
    ) -> SubmissionStatus:
        """Wait until the submission reaches Confirmed, Failed or Abandoned."""
        return await self.queue.wait_terminal(key, timeout)

    async def submit_pending(self) -> None:
        """Submit everything queued without a background worker (one-shot callers)."""
        await self.load()
        await self.writer.submit_pending()

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    async def sync(self) -> int:
        """Run one reconciliation poll now. Returns the number of events appended."""
        await self.load()
        return await self.reconciler.poll_once()

    def list(
        self,
        filter: EventFilter | None = None,
        cursor: str | None = None,
        limit: int | None = None,
        finalized_only: bool = False,
    ) -> EventPage:
        return self.query.list(filter=filter, cursor=cursor, limit=limit, finalized_only=finalized_only)

    def get(self, build_id: str, finalized_only: bool = False) -> BuildEvent | None:
        return self.query.get(build_id, finalized_only=finalized_only)

    def health(self) -> dict[str, Any]:
        health = self.query.health()
        health["submissions"] = self.queue.counts()
        health["reconciler_error"] = str(self._reconciler_error) if self._reconciler_error else None
        health["consecutive_poll_failures"] = self.reconciler.consecutive_failures
        return health
