"""Tests for the submission queue state machine."""

import asyncio
from datetime import UTC, datetime

import pytest
from hypothesis import given
from hypothesis import strategies as st

from opsledger.core.errors import (
    InvalidTransition,
    RejectedPermanent,
    RetriesExhausted,
    UnknownSubmission,
)
from opsledger.core.event import BuildEvent
from opsledger.core.queue import (
    SubmissionQueue,
    SubmissionState,
    make_idempotency_key,
)
from opsledger.stores.inmemory import InMemoryStateStore

TS = datetime(2024, 5, 1, 12, tzinfo=UTC)


def event(build_id: str = "b1", status: str = "Success", developer: str = "alice") -> BuildEvent:
    return BuildEvent(build_id=build_id, status=status, developer=developer)


class TestIdempotencyKey:
    def test_key_depends_on_every_field(self):
        base = make_idempotency_key(event(), "salt", "n")
        assert make_idempotency_key(event(), "salt", "n") == base
        assert make_idempotency_key(event(build_id="b2"), "salt", "n") != base
        assert make_idempotency_key(event(status="Failure"), "salt", "n") != base
        assert make_idempotency_key(event(developer="bob"), "salt", "n") != base
        assert make_idempotency_key(event(), "other", "n") != base
        assert make_idempotency_key(event(), "salt", "m") != base

    def test_fields_cannot_bleed_into_each_other(self):
        a = make_idempotency_key(event(build_id="ab", developer="c"), "s", "n")
        b = make_idempotency_key(event(build_id="a", developer="bc"), "s", "n")
        assert a != b


class TestEnqueue:
    async def test_duplicate_nonce_returns_same_key(self):
        queue = SubmissionQueue(salt="s")
        key1 = await queue.enqueue(event(), nonce="n1")
        key2 = await queue.enqueue(event(), nonce="n1")
        assert key1 == key2
        assert len(queue) == 1

    async def test_distinct_nonces_create_distinct_records(self):
        queue = SubmissionQueue(salt="s")
        key1 = await queue.enqueue(event())
        key2 = await queue.enqueue(event())
        assert key1 != key2
        assert queue.counts() == {"Pending": 2}

    async def test_enqueued_event_is_unconfirmed(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event().confirmed(5, TS), nonce="n")
        assert queue.get(key).event.sequence is None

    async def test_status_of_unknown_key(self):
        queue = SubmissionQueue()
        with pytest.raises(UnknownSubmission):
            queue.status("missing")
        with pytest.raises(KeyError):
            queue.get("missing")


class TestTransitions:
    async def test_happy_path(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")

        record = await queue.next_ready()
        assert record.idempotency_key == key
        assert queue.status(key).state is SubmissionState.SUBMITTED

        assert await queue.begin_attempt(key) == 1
        await queue.note_transaction(key, "0xabc")
        confirmed = await queue.ack(key, 9, TS)

        assert confirmed.state is SubmissionState.CONFIRMED
        assert confirmed.transaction_ref == "0xabc"
        status = queue.status(key)
        assert status.sequence == 9
        assert str(status) == "Confirmed(9)"
        assert queue.in_flight == 0

    async def test_nack_permanent_is_failed(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        await queue.next_ready()
        await queue.nack(key, RejectedPermanent("unauthorized"))
        status = queue.status(key)
        assert status.state is SubmissionState.FAILED
        assert str(status) == "Failed(unauthorized)"

    async def test_nack_exhausted_is_abandoned(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        await queue.next_ready()
        await queue.nack(key, RetriesExhausted("gave up", attempts=3, last_error="fee"))
        status = queue.status(key)
        assert status.state is SubmissionState.ABANDONED
        assert "fee" in status.reason

    async def test_release_returns_to_front(self):
        queue = SubmissionQueue(salt="s")
        first = await queue.enqueue(event("b1"), nonce="n")
        second = await queue.enqueue(event("b2"), nonce="n")
        await queue.next_ready()
        await queue.release(first)
        assert queue.status(first).state is SubmissionState.PENDING
        assert (await queue.next_ready()).idempotency_key == first
        assert (await queue.next_ready()).idempotency_key == second

    @pytest.mark.parametrize("operation", ["ack", "nack", "release", "begin_attempt"])
    async def test_pending_record_cannot_skip_submitted(self, operation):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        calls = {
            "ack": lambda: queue.ack(key, 0, TS),
            "nack": lambda: queue.nack(key, RejectedPermanent("x")),
            "release": lambda: queue.release(key),
            "begin_attempt": lambda: queue.begin_attempt(key),
        }
        with pytest.raises(InvalidTransition):
            await calls[operation]()

    async def test_terminal_state_is_final(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        await queue.next_ready()
        await queue.ack(key, 0, TS)
        with pytest.raises(InvalidTransition):
            await queue.ack(key, 1, TS)
        with pytest.raises(InvalidTransition):
            await queue.nack(key, RejectedPermanent("x"))
        assert await queue.next_ready() is None


class TestBackpressure:
    async def test_in_flight_cap(self):
        queue = SubmissionQueue(max_in_flight=2, salt="s")
        for i in range(5):
            await queue.enqueue(event(f"b{i}"))
        first = await queue.next_ready()
        second = await queue.next_ready()
        assert await queue.next_ready() is None
        assert queue.in_flight == 2

        await queue.ack(first.idempotency_key, 0, TS)
        third = await queue.next_ready()
        assert third is not None
        assert third.event.build_id == "b2"
        assert second.event.build_id == "b1"

    def test_cap_must_be_positive(self):
        with pytest.raises(ValueError):
            SubmissionQueue(max_in_flight=0)

    @pytest.mark.timeout(5)
    async def test_wait_ready_wakes_on_enqueue(self):
        queue = SubmissionQueue(salt="s")
        waiter = asyncio.create_task(queue.wait_ready(timeout=2))
        await asyncio.sleep(0)
        await queue.enqueue(event())
        assert await waiter is True

    async def test_wait_ready_times_out(self):
        queue = SubmissionQueue(salt="s")
        assert await queue.wait_ready(timeout=0.01) is False

    @pytest.mark.timeout(5)
    async def test_wait_terminal(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        waiter = asyncio.create_task(queue.wait_terminal(key, timeout=2))
        await queue.next_ready()
        await queue.ack(key, 4, TS)
        status = await waiter
        assert status.state is SubmissionState.CONFIRMED
        assert status.sequence == 4

    async def test_wait_terminal_timeout(self):
        queue = SubmissionQueue(salt="s")
        key = await queue.enqueue(event(), nonce="n")
        with pytest.raises(TimeoutError):
            await queue.wait_terminal(key, timeout=0.01)


# Actions a misbehaving or concurrent writer might try in any order
_actions = st.lists(
    st.tuples(
        st.sampled_from(["enqueue", "next", "ack", "nack", "release"]),
        st.integers(min_value=0, max_value=4),
    ),
    max_size=40,
)


@given(actions=_actions, cap=st.integers(min_value=1, max_value=3))
def test_in_flight_invariants_hold(actions, cap):
    """At most ``cap`` records are Submitted and no key is handed out twice at once."""

    async def scenario() -> None:
        queue = SubmissionQueue(max_in_flight=cap, salt="s")
        keys: list[str] = []
        handed_out: set[str] = set()
        for action, index in actions:
            if action == "enqueue":
                keys.append(await queue.enqueue(event(f"b{index}"), nonce=str(index)))
            elif action == "next":
                record = await queue.next_ready()
                if record is not None:
                    assert record.idempotency_key not in handed_out
                    handed_out.add(record.idempotency_key)
            elif handed_out:
                key = sorted(handed_out)[index % len(handed_out)]
                handed_out.discard(key)
                if action == "ack":
                    await queue.ack(key, index, TS)
                elif action == "nack":
                    await queue.nack(key, RejectedPermanent("x"))
                else:
                    await queue.release(key)

            submitted = [r for r in queue.records() if r.state is SubmissionState.SUBMITTED]
            assert len(submitted) <= cap
            assert {r.idempotency_key for r in submitted} == handed_out
        assert len(queue) == len(set(keys))

    asyncio.run(scenario())


class TestPersistence:
    async def test_restart_restores_records_and_salt(self):
        store = InMemoryStateStore()
        queue = SubmissionQueue(store=store)
        confirmed = await queue.enqueue(event("b1"), nonce="n1")
        in_flight = await queue.enqueue(event("b2"), nonce="n2")
        waiting = await queue.enqueue(event("b3"), nonce="n3")
        await queue.next_ready()
        await queue.ack(confirmed, 0, TS)
        await queue.next_ready()
        await queue.note_transaction(in_flight, "0xfeed")

        restarted = SubmissionQueue(store=store)
        assert await restarted.load() == 3
        assert restarted.salt == queue.salt
        assert restarted.status(confirmed).state is SubmissionState.CONFIRMED
        # Submitted comes back as Pending with its transaction ref kept
        assert restarted.status(in_flight).state is SubmissionState.PENDING
        assert restarted.get(in_flight).transaction_ref == "0xfeed"

        # Same nonce after restart maps to the same record
        assert await restarted.enqueue(event("b1"), nonce="n1") == confirmed
        assert (await restarted.next_ready()).idempotency_key == in_flight
        assert (await restarted.next_ready()).idempotency_key == waiting

    async def test_configured_salt_wins_over_stored(self):
        store = InMemoryStateStore()
        await store.save_salt("stored")
        queue = SubmissionQueue(store=store, salt="configured")
        await queue.load()
        assert queue.salt == "configured"

    async def test_every_transition_persisted(self):
        store = InMemoryStateStore()
        queue = SubmissionQueue(store=store, salt="s")
        key = await queue.enqueue(event(), nonce="n")
        assert (await store.load_records())[0].state is SubmissionState.PENDING
        await queue.next_ready()
        assert (await store.load_records())[0].state is SubmissionState.SUBMITTED
        await queue.begin_attempt(key)
        assert (await store.load_records())[0].attempts == 1
        await queue.ack(key, 2, TS)
        stored = (await store.load_records())[0]
        assert stored.state is SubmissionState.CONFIRMED
        assert stored.event.sequence == 2
