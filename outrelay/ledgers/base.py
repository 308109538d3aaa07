"""Event ledger protocol.

ALL event state lives in the ledger. The Dispatcher never mutates an
event directly; every transition goes through ``claim`` or
``report_result``, both of which must be atomic with respect to each other.
"""

from dataclasses import dataclass
from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from outrelay.core.event import DEFAULT_MAX_ATTEMPTS, EventStatus, OutboxEvent


@dataclass(frozen=True)
class StatusSummary:
    """Per-status totals reported by ``EventLedger.status_summary``."""

    total: int = 0
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None


class EventLedger(Protocol):
    """Protocol defining the interface for outbox ledgers.

    Ledgers are responsible for:
    - Appending events (enqueue)
    - Handing out exclusive, time-bounded leases (claim, renew)
    - Recording attempt outcomes and retry scheduling (report_result)
    """

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        tenant_id: str,
        *,
        idempotency_key: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboxEvent:
        """Append a PENDING event.

        When ``idempotency_key`` is already used within ``tenant_id`` the
        existing event is returned and nothing is written.
        """
        ...

    async def claim(
        self,
        batch_size: int,
        worker_id: str,
        *,
        kinds: Collection[str] | None = None,
        now: datetime | None = None,
    ) -> list[OutboxEvent]:
        """Atomically lease up to ``batch_size`` eligible events to ``worker_id``.

        Eligible events are PENDING or RETRY with ``next_attempt_at <= now``,
        and PROCESSING events whose lease has expired. ``kinds`` restricts the
        claim to those event kinds. Concurrent callers never receive the same
        event.
        """
        ...

    async def renew(
        self,
        event_id: str,
        worker_id: str,
        *,
        now: datetime | None = None,
    ) -> OutboxEvent:
        """Restart the lease of a PROCESSING event held by ``worker_id``.

        Raises:
            EventNotFoundError: Unknown ``event_id``.
            InvalidTransitionError: Event is no longer PROCESSING.
            LeaseLostError: Another worker holds the lease.
        """
        ...

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
        """Record the outcome of a processing attempt and return the new snapshot.

        Raises:
            EventNotFoundError: Unknown ``event_id``.
            InvalidTransitionError: Event is not PROCESSING.
            LeaseLostError: ``worker_id`` given and not the lease holder.
        """
        ...

    async def get(self, event_id: str) -> OutboxEvent:
        """Return the current snapshot of an event."""
        ...

    async def replay(self, event_id: str) -> OutboxEvent:
        """Append a fresh PENDING copy of a DEAD event and return it."""
        ...

    async def status_summary(self) -> dict[EventStatus, StatusSummary]:
        """Return counts and created_at bounds for every status."""
        ...
