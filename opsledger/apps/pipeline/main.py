"""CI/CD pipeline demo application.

A pipeline step calls this with the build id, status and developer. The
event is submitted to the ledger, confirmed, reconciled, and the full
build history is printed as the dashboard table:

    Timestamp | Build ID | Status | Developer

Usage:
    python -m opsledger.apps.pipeline.main BUILD_ID STATUS DEVELOPER

The demo runs against an in-memory simulated chain.
"""

import argparse
import asyncio
from collections.abc import Callable

from opsledger.core.client import LedgerClient
from opsledger.core.config import LedgerClientConfig
from opsledger.core.errors import MalformedEvent
from opsledger.core.query import EventPage
from opsledger.core.queue import SubmissionState, SubmissionStatus
from opsledger.ledgers.base import Ledger
from opsledger.ledgers.inmemory import InMemoryLedger

_COLUMNS = ("Timestamp", "Build ID", "Status", "Developer")


def render_table(page: EventPage) -> str:
    """Render a page of events as a fixed-width text table."""
    rows = [
        (
            e.ledger_timestamp.strftime("%Y-%m-%d %H:%M:%S") if e.ledger_timestamp else "-",
            e.build_id,
            e.status.value,
            e.developer,
        )
        for e in page.events
    ]
    widths = [max(len(c), *(len(r[i]) for r in rows)) if rows else len(c) for i, c in enumerate(_COLUMNS)]
    lines = [" | ".join(c.ljust(w) for c, w in zip(_COLUMNS, widths))]
    lines.append("-+-".join("-" * w for w in widths))
    lines.extend(" | ".join(v.ljust(w) for v, w in zip(row, widths)) for row in rows)
    if page.degraded:
        lines.append(f"!! ledger view degraded: {page.violation}")
    elif page.stale:
        lines.append("!! ledger unreachable, history may be stale")
    return "\n".join(lines)


async def log_build(
    build_id: str,
    status: str,
    developer: str,
    ledger: Ledger | None = None,
    config: LedgerClientConfig | None = None,
    output_callback: Callable[[str], None] | None = None,
) -> tuple[SubmissionStatus, EventPage]:
    """Log one build event and return its final submission state and the event table.

    Example:
        state, page = await log_build("b1", "Success", "alice")
        print(state)  # "Confirmed(0)"
    """
    ledger = ledger if ledger is not None else InMemoryLedger(finality_depth=0)
    client = LedgerClient(ledger, config=config or LedgerClientConfig.from_env())

    key = await client.enqueue(build_id, status, developer)
    await client.submit_pending()
    state = client.get_submission_state(key)
    await client.sync()
    page = client.list()

    output = output_callback or print
    if state.state is SubmissionState.CONFIRMED:
        output(f"Build {build_id} logged at position {state.sequence}")
    else:
        output(f"Build {build_id} not logged: {state}")
    output(render_table(page))
    return state, page


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the pipeline demo."""
    parser = argparse.ArgumentParser(description="Log a CI/CD build event to the ledger.")
    parser.add_argument("build_id")
    parser.add_argument("status", help="Started, Success, Failure or Aborted")
    parser.add_argument("developer")
    args = parser.parse_args(argv)

    try:
        state, _ = asyncio.run(log_build(args.build_id, args.status, args.developer))
    except MalformedEvent as e:
        print(f"Error logging build: {e}")
        return 2
    return 0 if state.state is SubmissionState.CONFIRMED else 1


if __name__ == "__main__":
    raise SystemExit(main())
