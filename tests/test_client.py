"""End-to-end tests for LedgerClient over the in-memory ledger."""

import asyncio

import pytest
from conftest import fast_config, make_payload

from opsledger.core.client import LedgerClient
from opsledger.core.errors import FinalizedConsistencyViolation, MalformedEvent
from opsledger.core.event import MAX_IDENTIFIER_LENGTH
from opsledger.core.query import EventFilter
from opsledger.core.queue import SubmissionState
from opsledger.ledgers.inmemory import InMemoryLedger
from opsledger.stores.inmemory import InMemoryStateStore


class TestEndToEnd:
    @pytest.mark.timeout(5)
    async def test_confirmed_event_is_listed(self, ledger):
        for i in range(5):
            ledger.append_raw(make_payload(f"old-{i}"))

        async with LedgerClient(ledger, config=fast_config()) as client:
            key = await client.enqueue("b1", "Success", "alice")
            status = await client.wait_for_submission(key, timeout=2)
            assert str(status) == "Confirmed(5)"

            await client.sync()
            page = client.list(filter=EventFilter(build_id="b1"))
            assert [e.sequence for e in page.events] == [5]
            assert client.get("b1").developer == "alice"

    @pytest.mark.timeout(5)
    async def test_background_reconciler_catches_up(self, ledger):
        async with LedgerClient(ledger, config=fast_config()) as client:
            keys = [await client.enqueue(f"b{i}", "Started", "bob") for i in range(3)]
            for key in keys:
                await client.wait_for_submission(key, timeout=2)
            while len(client.list().events) < 3:
                await asyncio.sleep(0.005)

        sequences = [client.get_submission_state(k).sequence for k in keys]
        assert sorted(sequences) == [0, 1, 2]
        listed = [e.sequence for e in client.list().events]
        assert listed == sorted(listed)

    @pytest.mark.timeout(5)
    async def test_duplicate_enqueue_confirms_once(self, ledger):
        client = LedgerClient(ledger, config=fast_config())
        key1 = await client.enqueue("b1", "Success", "alice", nonce="retry-1")
        key2 = await client.enqueue("b1", "Success", "alice", nonce="retry-1")
        assert key1 == key2

        await client.submit_pending()
        await client.sync()

        assert len(ledger.entries()) == 1
        assert len(client.list().events) == 1

    async def test_malformed_event_rejected_at_enqueue(self, ledger):
        client = LedgerClient(ledger, config=fast_config())
        with pytest.raises(MalformedEvent):
            await client.enqueue("", "Success", "alice")
        with pytest.raises(MalformedEvent):
            await client.enqueue("b1", "Exploded", "alice")
        with pytest.raises(MalformedEvent):
            await client.enqueue("b\ud800", "Success", "alice")
        with pytest.raises(MalformedEvent):
            await client.enqueue("b1", "Success", "a" * (MAX_IDENTIFIER_LENGTH + 1))
        assert client.health()["submissions"] == {}

    async def test_start_twice_is_an_error(self, ledger):
        client = LedgerClient(ledger, config=fast_config())
        await client.start()
        try:
            with pytest.raises(RuntimeError):
                await client.start()
        finally:
            await client.shutdown()


class TestRestart:
    @pytest.mark.timeout(5)
    async def test_state_survives_restart(self):
        ledger = InMemoryLedger(finality_depth=0)
        store = InMemoryStateStore()

        first = LedgerClient(ledger, config=fast_config(), store=store)
        key = await first.enqueue("b1", "Success", "alice", nonce="n1")
        await first.submit_pending()
        await first.sync()
        await first.shutdown()
        submits = ledger.submit_calls

        second = LedgerClient(ledger, config=fast_config(), store=store)
        await second.load()

        assert second.get_submission_state(key).state is SubmissionState.CONFIRMED
        # Same nonce after restart resolves to the same confirmed record
        assert await second.enqueue("b1", "Success", "alice", nonce="n1") == key
        await second.submit_pending()
        assert ledger.submit_calls == submits
        assert [e.build_id for e in second.list().events] == ["b1"]
        assert second.list().finalized_height == 0

    @pytest.mark.timeout(5)
    async def test_interrupted_submission_resumes(self):
        ledger = InMemoryLedger(auto_include=False)
        store = InMemoryStateStore()
        config = fast_config(confirm_timeout=30)

        first = LedgerClient(ledger, config=config, store=store)
        await first.start()
        key = await first.enqueue("b1", "Success", "alice")
        while ledger.submit_calls == 0:
            await asyncio.sleep(0.005)
        await first.shutdown(drain_timeout=0.05)
        assert first.get_submission_state(key).state is SubmissionState.PENDING

        ledger.mine()
        second = LedgerClient(ledger, config=fast_config(), store=store)
        await second.submit_pending()

        assert str(second.get_submission_state(key)) == "Confirmed(0)"
        assert ledger.submit_calls == 1
        assert len(ledger.entries()) == 1


class TestHealth:
    @pytest.mark.timeout(5)
    async def test_reconciler_failure_is_visible(self, ledger):
        ledger.append_raw(make_payload("b0"))
        ledger.finalize_through(0)
        client = LedgerClient(ledger, config=fast_config())
        await client.sync()
        ledger.tamper(0, make_payload("forged"))

        await client.start()
        while client.reconciler_error is None:
            await asyncio.sleep(0.005)
        await client.shutdown()

        assert isinstance(client.reconciler_error, FinalizedConsistencyViolation)
        health = client.health()
        assert health["degraded"] is True
        assert "position 0" in health["reconciler_error"]
        assert client.list().degraded

    @pytest.mark.timeout(5)
    async def test_ledger_outage_is_reported_then_clears(self, ledger):
        ledger.append_raw(make_payload("b0"))
        config = fast_config(max_consecutive_failures=3, max_poll_backoff=0.02)
        async with LedgerClient(ledger, config=config) as client:
            while not client.list().events:
                await asyncio.sleep(0.005)

            ledger.network_down = True
            while not client.list().stale:
                await asyncio.sleep(0.005)
            health = client.health()
            assert health["stale"] is True
            assert "Ledger unavailable" in health["unavailable"]
            assert not client.list().degraded

            ledger.network_down = False
            ledger.append_raw(make_payload("b1"))
            while client.list().stale or len(client.list().events) < 2:
                await asyncio.sleep(0.005)

            assert client.reconciler_error is None
            assert client.health()["consecutive_poll_failures"] == 0
        assert [e.build_id for e in client.list().events] == ["b0", "b1"]
