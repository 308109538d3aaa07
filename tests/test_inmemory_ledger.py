"""Tests for InMemoryLedger: claim leasing, result reporting and replay."""

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from outrelay.core.backoff import BackoffPolicy
from outrelay.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    LeaseLostError,
)
from outrelay.core.event import EventKind, EventStatus
from outrelay.ledgers.inmemory import InMemoryLedger, apply_result

from tests.conftest import FakeClock


async def _fill(ledger: InMemoryLedger, count: int, clock: FakeClock | None = None) -> list[str]:
    ids = []
    for i in range(count):
        event = await ledger.enqueue("EMAIL_SEND", {"index": i}, "school-1")
        ids.append(event.id)
        if clock is not None:
            clock.advance(1)
    return ids


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_event(self, ledger, clock):
        event = await ledger.enqueue("EMAIL_SEND", {"to": "a@b.c"}, "school-1")

        assert event.status == EventStatus.PENDING
        assert event.attempt_count == 0
        assert event.created_at == clock.now
        assert event.next_attempt_at == clock.now
        assert await ledger.get(event.id) == event

    @pytest.mark.asyncio
    async def test_idempotency_key_dedupes_within_tenant(self, ledger):
        first = await ledger.enqueue("EMAIL_SEND", {}, "school-1", idempotency_key="welcome-7")
        again = await ledger.enqueue("EMAIL_SEND", {}, " school-1 ", idempotency_key="welcome-7")
        other_tenant = await ledger.enqueue(
            "EMAIL_SEND", {}, "school-2", idempotency_key="welcome-7"
        )

        assert again.id == first.id
        assert other_tenant.id != first.id
        assert len(ledger) == 2

    @pytest.mark.asyncio
    async def test_get_unknown_event(self, ledger):
        with pytest.raises(EventNotFoundError):
            await ledger.get("6f1c2b9e-7a1d-4c3b-9e2f-0a1b2c3d4e5f")


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_leases_events_to_worker(self, ledger, clock):
        await _fill(ledger, 3)
        claimed = await ledger.claim(10, "worker-a")

        assert len(claimed) == 3
        for event in claimed:
            assert event.status == EventStatus.PROCESSING
            assert event.worker_id == "worker-a"
            assert event.claimed_at == clock.now
            assert (await ledger.get(event.id)).status == EventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_claim_respects_batch_size_and_age_order(self, ledger, clock):
        ids = await _fill(ledger, 5, clock)
        claimed = await ledger.claim(2, "worker-a")
        assert [e.id for e in claimed] == ids[:2]

    @pytest.mark.asyncio
    async def test_claim_on_empty_ledger(self, ledger):
        assert await ledger.claim(5, "worker-a") == []

    @pytest.mark.asyncio
    async def test_claimed_events_are_not_claimed_again(self, ledger):
        await _fill(ledger, 2)
        await ledger.claim(10, "worker-a")
        assert await ledger.claim(10, "worker-b") == []

    @pytest.mark.asyncio
    async def test_retry_is_not_claimable_before_backoff(self, ledger, clock):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        await ledger.report_result(event.id, False, "smtp down", worker_id="worker-a")

        assert await ledger.claim(1, "worker-b") == []
        clock.advance(ledger.backoff.delay_seconds(1) - 1)
        assert await ledger.claim(1, "worker-b") == []
        clock.advance(1)
        [again] = await ledger.claim(1, "worker-b")
        assert again.id == event.id
        assert again.attempt_count == 1

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, clock):
        ledger = InMemoryLedger(lease_timeout=60, clock=clock)
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-crashed")

        clock.advance(59)
        assert await ledger.claim(1, "worker-b") == []

        clock.advance(1)
        [reclaimed] = await ledger.claim(1, "worker-b")
        assert reclaimed.id == event.id
        assert reclaimed.worker_id == "worker-b"
        assert reclaimed.attempt_count == 0

        # The crashed worker no longer holds the lease
        with pytest.raises(LeaseLostError):
            await ledger.report_result(event.id, True, worker_id="worker-crashed")

    @pytest.mark.asyncio
    async def test_expired_leases_are_claimed_first(self, clock):
        ledger = InMemoryLedger(lease_timeout=60, clock=clock)
        [stuck_id] = await _fill(ledger, 1)
        await ledger.claim(1, "worker-crashed")
        clock.advance(120)
        await _fill(ledger, 3)

        claimed = await ledger.claim(2, "worker-b")
        assert claimed[0].id == stuck_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size", [0, -1])
    async def test_invalid_batch_size(self, ledger, batch_size):
        with pytest.raises(ValueError):
            await ledger.claim(batch_size, "worker-a")

    @pytest.mark.asyncio
    async def test_empty_worker_id(self, ledger):
        with pytest.raises(ValueError):
            await ledger.claim(1, "")

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_overlap(self, ledger):
        """Two workers racing over 10 events split them without overlap."""
        ids = await _fill(ledger, 10)

        first, second = await asyncio.gather(
            ledger.claim(10, "worker-a"),
            ledger.claim(10, "worker-b"),
        )
        first_ids = {e.id for e in first}
        second_ids = {e.id for e in second}

        assert first_ids.isdisjoint(second_ids)
        assert first_ids | second_ids == set(ids)


class TestKindFilter:
    @pytest.mark.asyncio
    async def test_claims_only_requested_kinds(self, ledger):
        mail = await ledger.enqueue("EMAIL_SEND", {}, "school-1")
        doc = await ledger.enqueue("ARCHIVE_DOCUMENT", {}, "school-1")

        claimed = await ledger.claim(10, "worker-a", kinds=["ARCHIVE_DOCUMENT"])

        assert [e.id for e in claimed] == [doc.id]
        assert (await ledger.get(mail.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_expired_lease_of_other_kind_not_reclaimed(self, clock):
        ledger = InMemoryLedger(lease_timeout=60, clock=clock)
        mail = await ledger.enqueue("EMAIL_SEND", {}, "school-1")
        await ledger.claim(1, "worker-crashed")
        clock.advance(120)

        assert await ledger.claim(10, "worker-b", kinds={"MESSAGE_SEND"}) == []
        [reclaimed] = await ledger.claim(10, "worker-b", kinds={"EMAIL_SEND"})
        assert reclaimed.id == mail.id

    @pytest.mark.asyncio
    async def test_enum_members_accepted(self, ledger):
        await ledger.enqueue("EMAIL_SEND", {}, "school-1")
        claimed = await ledger.claim(10, "worker-a", kinds=[EventKind.EMAIL_SEND])
        assert len(claimed) == 1

    @pytest.mark.asyncio
    async def test_empty_kinds_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.claim(10, "worker-a", kinds=[])


class TestRenew:
    @pytest.mark.asyncio
    async def test_renew_extends_the_lease(self, clock):
        ledger = InMemoryLedger(lease_timeout=60, clock=clock)
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")

        clock.advance(50)
        renewed = await ledger.renew(event.id, "worker-a")
        assert renewed.claimed_at == clock.now
        assert renewed.status == EventStatus.PROCESSING

        clock.advance(50)
        assert await ledger.claim(1, "worker-b") == []
        clock.advance(10)
        [reclaimed] = await ledger.claim(1, "worker-b")
        assert reclaimed.id == event.id

    @pytest.mark.asyncio
    async def test_renew_after_takeover_rejected(self, clock):
        ledger = InMemoryLedger(lease_timeout=60, clock=clock)
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        clock.advance(61)
        await ledger.claim(1, "worker-b")

        with pytest.raises(LeaseLostError):
            await ledger.renew(event.id, "worker-a")

    @pytest.mark.asyncio
    async def test_renew_settled_event_rejected(self, ledger):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        await ledger.report_result(event.id, True, worker_id="worker-a")

        with pytest.raises(InvalidTransitionError) as exc:
            await ledger.renew(event.id, "worker-a")
        assert exc.value.status == "SENT"

    @pytest.mark.asyncio
    async def test_renew_unknown_event(self, ledger):
        with pytest.raises(EventNotFoundError):
            await ledger.renew("6f1c2b9e-7a1d-4c3b-9e2f-0a1b2c3d4e5f", "worker-a")


class TestReportResult:
    @pytest.mark.asyncio
    async def test_success_marks_sent(self, ledger, clock):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        clock.advance(2)
        sent = await ledger.report_result(event.id, True, worker_id="worker-a")

        assert sent.status == EventStatus.SENT
        assert sent.processed_at == clock.now
        assert sent.worker_id is None
        assert sent.attempt_count == 0

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, ledger, clock):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        failed = await ledger.report_result(event.id, False, "timeout", worker_id="worker-a")

        assert failed.status == EventStatus.RETRY
        assert failed.attempt_count == 1
        assert failed.last_error == "timeout"
        assert failed.next_attempt_at == clock.now + ledger.backoff.delay(1)

    @pytest.mark.asyncio
    async def test_dead_after_max_attempts(self, ledger, clock):
        event = await ledger.enqueue("EMAIL_SEND", {}, "school-1", max_attempts=3)

        statuses = []
        for _ in range(3):
            [claimed] = await ledger.claim(1, "worker-a")
            result = await ledger.report_result(claimed.id, False, "boom")
            statuses.append(result.status)
            clock.advance(hours=10)

        assert statuses == [EventStatus.RETRY, EventStatus.RETRY, EventStatus.DEAD]
        dead = await ledger.get(event.id)
        assert dead.attempt_count == 3
        assert await ledger.claim(1, "worker-a") == []

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_immediately(self, ledger):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        dead = await ledger.report_result(event.id, False, "bad payload", retryable=False)

        assert dead.status == EventStatus.DEAD
        assert dead.attempt_count == dead.max_attempts

    @pytest.mark.asyncio
    async def test_report_on_unclaimed_event_rejected(self, ledger):
        [event_id] = await _fill(ledger, 1)
        with pytest.raises(InvalidTransitionError):
            await ledger.report_result(event_id, True)

    @pytest.mark.asyncio
    async def test_report_twice_rejected(self, ledger):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        await ledger.report_result(event.id, True)
        with pytest.raises(InvalidTransitionError):
            await ledger.report_result(event.id, True)

    @pytest.mark.asyncio
    async def test_report_unknown_event(self, ledger):
        with pytest.raises(EventNotFoundError):
            await ledger.report_result("6f1c2b9e-7a1d-4c3b-9e2f-0a1b2c3d4e5f", True)

    @pytest.mark.asyncio
    async def test_wrong_worker_rejected(self, ledger):
        await _fill(ledger, 1)
        [event] = await ledger.claim(1, "worker-a")
        with pytest.raises(LeaseLostError):
            await ledger.report_result(event.id, True, worker_id="worker-b")


class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_creates_fresh_pending_copy(self, ledger):
        event = await ledger.enqueue("EMAIL_SEND", {"to": "a@b.c"}, "school-1", max_attempts=1)
        [claimed] = await ledger.claim(1, "worker-a")
        await ledger.report_result(claimed.id, False, "bounced")

        replayed = await ledger.replay(event.id)

        assert replayed.id != event.id
        assert replayed.replay_of == event.id
        assert replayed.status == EventStatus.PENDING
        assert replayed.attempt_count == 0
        assert replayed.payload == event.payload
        assert (await ledger.get(event.id)).status == EventStatus.DEAD

    @pytest.mark.asyncio
    async def test_replay_of_live_event_rejected(self, ledger):
        [event_id] = await _fill(ledger, 1)
        with pytest.raises(InvalidTransitionError):
            await ledger.replay(event_id)

    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, ledger):
        with pytest.raises(EventNotFoundError):
            await ledger.replay("6f1c2b9e-7a1d-4c3b-9e2f-0a1b2c3d4e5f")


class TestStatusSummary:
    @pytest.mark.asyncio
    async def test_summary_counts_and_bounds(self, ledger, clock):
        first = await ledger.enqueue("EMAIL_SEND", {}, "school-1")
        clock.advance(minutes=5)
        await ledger.enqueue("EMAIL_SEND", {}, "school-1")
        clock.advance(minutes=5)
        last = await ledger.enqueue("EMAIL_SEND", {}, "school-1")

        summary = await ledger.status_summary()

        assert set(summary) == set(EventStatus)
        assert summary[EventStatus.PENDING].total == 3
        assert summary[EventStatus.PENDING].oldest_created_at == first.created_at
        assert summary[EventStatus.PENDING].newest_created_at == last.created_at
        assert summary[EventStatus.DEAD].total == 0
        assert summary[EventStatus.DEAD].oldest_created_at is None


# Outcome sequences: True = success, False = failure
outcomes = st.lists(st.booleans(), min_size=1, max_size=12)


@given(results=outcomes, max_attempts=st.integers(min_value=1, max_value=6))
def test_attempt_count_never_exceeds_max(results: list[bool], max_attempts: int):
    """For any sequence of reported outcomes, attempt_count stays within
    max_attempts and the event ends SENT or DEAD exactly when expected.
    """

    async def run():
        clock = FakeClock()
        ledger = InMemoryLedger(clock=clock)
        event = await ledger.enqueue("EMAIL_SEND", {}, "t", max_attempts=max_attempts)

        failures = 0
        for ok in results:
            claimed = await ledger.claim(1, "worker")
            if not claimed:
                break
            updated = await ledger.report_result(claimed[0].id, ok, None if ok else "err")
            failures += 0 if ok else 1
            assert 0 <= updated.attempt_count <= updated.max_attempts
            if ok:
                assert updated.status == EventStatus.SENT
                break
            clock.advance(hours=24)

        final = await ledger.get(event.id)
        assert final.attempt_count == failures
        if failures >= max_attempts:
            assert final.status == EventStatus.DEAD

    asyncio.run(run())


@given(attempts=st.integers(min_value=0, max_value=9), ok=st.booleans())
def test_apply_result_transitions(attempts: int, ok: bool):
    from outrelay.core.event import OutboxEvent

    from tests.conftest import EPOCH

    event = OutboxEvent(
        kind="EMAIL_SEND",
        tenant_id="t",
        status=EventStatus.PROCESSING,
        attempt_count=attempts,
        max_attempts=10,
        worker_id="w",
    )
    updated = apply_result(event, ok, None if ok else "err", BackoffPolicy(), EPOCH)

    assert updated.worker_id is None
    if ok:
        assert updated.status == EventStatus.SENT
        assert updated.attempt_count == attempts
    else:
        assert updated.attempt_count == attempts + 1
        expected = EventStatus.DEAD if attempts + 1 >= 10 else EventStatus.RETRY
        assert updated.status == expected
