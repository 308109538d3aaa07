"""In-memory event ledger guarded by a single asyncio.Lock."""

import asyncio
from collections.abc import Callable, Collection
from datetime import datetime, timedelta
from typing import Any

from outrelay.core.backoff import BackoffPolicy
from outrelay.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    LeaseLostError,
)
from outrelay.core.event import (
    DEFAULT_MAX_ATTEMPTS,
    EventStatus,
    OutboxEvent,
    normalize_kinds,
    utcnow,
)
from outrelay.ledgers.base import StatusSummary


def apply_result(
    event: OutboxEvent,
    ok: bool,
    error: str | None,
    backoff: BackoffPolicy,
    now: datetime,
    retryable: bool = True,
) -> OutboxEvent:
    """Return the snapshot that follows a reported attempt on a PROCESSING event."""
    if ok:
        return event.model_copy(
            update={
                "status": EventStatus.SENT,
                "worker_id": None,
                "last_error": None,
                "processed_at": now,
                "updated_at": now,
            }
        )

    if retryable:
        attempts = min(event.attempt_count + 1, event.max_attempts)
    else:
        attempts = event.max_attempts

    update: dict[str, Any] = {
        "attempt_count": attempts,
        "worker_id": None,
        "last_error": error,
        "updated_at": now,
    }
    if attempts >= event.max_attempts:
        update["status"] = EventStatus.DEAD
    else:
        update["status"] = EventStatus.RETRY
        update["next_attempt_at"] = now + backoff.delay(attempts)
    return event.model_copy(update=update)


class InMemoryLedger:
    """Ledger kept in process memory.

    Suitable for development and tests. It provides no durability
    guarantees; events are lost when the process exits. Every operation
    runs under one lock, which makes ``claim`` linearizable across
    concurrent dispatcher invocations in the same event loop.

    Args:
        backoff: Retry delay policy. Defaults to ``BackoffPolicy()``.
        lease_timeout: Seconds after which a PROCESSING lease may be reclaimed.
        clock: Source of "now", overridable in tests.
    """

    def __init__(
        self,
        backoff: BackoffPolicy | None = None,
        lease_timeout: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._events: dict[str, OutboxEvent] = {}
        self._idempotency: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()
        self._backoff = backoff or BackoffPolicy()
        self._lease_timeout = timedelta(seconds=lease_timeout)
        self._clock = clock

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def _held(self, event_id: str, worker_id: str | None, action: str) -> OutboxEvent:
        """Return a PROCESSING event, checking the holder when ``worker_id`` is given."""
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if event.status != EventStatus.PROCESSING:
            raise InvalidTransitionError(event_id, event.status.value, action)
        if worker_id is not None and event.worker_id != worker_id:
            raise LeaseLostError(event_id, worker_id, event.worker_id)
        return event

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        tenant_id: str,
        *,
        idempotency_key: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboxEvent:
        tenant_id = tenant_id.strip()
        async with self._lock:
            if idempotency_key is not None:
                existing_id = self._idempotency.get((tenant_id, idempotency_key))
                if existing_id is not None:
                    return self._events[existing_id]

            now = self._clock()
            event = OutboxEvent(
                kind=kind,
                payload=payload,
                tenant_id=tenant_id,
                idempotency_key=idempotency_key,
                max_attempts=max_attempts,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            self._events[event.id] = event
            if idempotency_key is not None:
                self._idempotency[(event.tenant_id, idempotency_key)] = event.id
            return event

    async def claim(
        self,
        batch_size: int,
        worker_id: str,
        *,
        kinds: Collection[str] | None = None,
        now: datetime | None = None,
    ) -> list[OutboxEvent]:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        wanted = normalize_kinds(kinds)

        async with self._lock:
            now = now or self._clock()
            candidates = [
                e for e in self._events.values() if wanted is None or e.kind in wanted
            ]

            expired = sorted(
                (
                    e
                    for e in candidates
                    if e.status == EventStatus.PROCESSING
                    and e.claimed_at is not None
                    and e.claimed_at + self._lease_timeout <= now
                ),
                key=lambda e: e.claimed_at,
            )
            ready = sorted(
                (
                    e
                    for e in candidates
                    if e.status in (EventStatus.PENDING, EventStatus.RETRY)
                    and e.next_attempt_at <= now
                ),
                key=lambda e: (e.next_attempt_at, e.created_at),
            )

            claimed = []
            for event in (expired + ready)[:batch_size]:
                leased = event.model_copy(
                    update={
                        "status": EventStatus.PROCESSING,
                        "worker_id": worker_id,
                        "claimed_at": now,
                        "updated_at": now,
                    }
                )
                self._events[event.id] = leased
                claimed.append(leased)
            return claimed

    async def renew(
        self,
        event_id: str,
        worker_id: str,
        *,
        now: datetime | None = None,
    ) -> OutboxEvent:
        async with self._lock:
            event = self._held(event_id, worker_id, "renew")
            now = now or self._clock()
            renewed = event.model_copy(update={"claimed_at": now, "updated_at": now})
            self._events[event_id] = renewed
            return renewed

    async def report_result(
        self,
        event_id: str,
        ok: bool,
        error: str | None = None,
        *,
        worker_id: str | None = None,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> OutboxEvent:
        async with self._lock:
            event = self._held(event_id, worker_id, "report")
            updated = apply_result(
                event, ok, error, self._backoff, now or self._clock(), retryable
            )
            self._events[event_id] = updated
            return updated

    async def get(self, event_id: str) -> OutboxEvent:
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def replay(self, event_id: str) -> OutboxEvent:
        async with self._lock:
            dead = self._events.get(event_id)
            if dead is None:
                raise EventNotFoundError(event_id)
            if dead.status != EventStatus.DEAD:
                raise InvalidTransitionError(event_id, dead.status.value, "replay")

            now = self._clock()
            event = OutboxEvent(
                kind=dead.kind,
                payload=dead.payload,
                tenant_id=dead.tenant_id,
                max_attempts=dead.max_attempts,
                replay_of=dead.id,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            self._events[event.id] = event
            return event

    async def status_summary(self) -> dict[EventStatus, StatusSummary]:
        buckets: dict[EventStatus, list[datetime]] = {s: [] for s in EventStatus}
        for event in self._events.values():
            buckets[event.status].append(event.created_at)
        return {
            status: StatusSummary(
                total=len(stamps),
                oldest_created_at=min(stamps) if stamps else None,
                newest_created_at=max(stamps) if stamps else None,
            )
            for status, stamps in buckets.items()
        }

    def snapshot(self) -> list[OutboxEvent]:
        """Return every event in insertion order."""
        return list(self._events.values())

    def __len__(self) -> int:
        return len(self._events)
