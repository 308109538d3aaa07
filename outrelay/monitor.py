"""Operational metrics for the outbox.

Sustained delivery trouble never surfaces as an error from the dispatcher;
it shows up here as a growing dead count and a rising
``oldest_pending_minutes`` staleness figure.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from outrelay.core.event import EventStatus, utcnow

if TYPE_CHECKING:
    from outrelay.ledgers.base import EventLedger

DEFAULT_STALE_ALERT_MINUTES = 30


@dataclass(frozen=True)
class OutboxMetrics:
    """Snapshot of outbox health.

    ``failed`` counts dead-lettered events. ``oldest_pending_minutes`` is
    the age of the oldest event still waiting for delivery (PENDING or
    RETRY), 0 when nothing is waiting.
    """

    pending: int
    retry: int
    processing: int
    failed: int
    sent: int
    oldest_pending_minutes: int
    stale: bool
    computed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "retry": self.retry,
            "processing": self.processing,
            "failed": self.failed,
            "sent": self.sent,
            "oldest_pending_minutes": self.oldest_pending_minutes,
            "stale": self.stale,
            "computed_at": self.computed_at.isoformat(),
        }


class OutboxMonitor:
    """Caches outbox metrics derived from the ledger's status summary.

    Args:
        ledger: Ledger to summarize.
        stale_alert_minutes: Waiting age above which ``stale`` is raised.
        ttl: Seconds a computed snapshot is served before recomputing.
        clock: Source of "now", overridable in tests.
    """

    def __init__(
        self,
        ledger: "EventLedger",
        stale_alert_minutes: int = DEFAULT_STALE_ALERT_MINUTES,
        ttl: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.stale_alert_minutes = stale_alert_minutes
        self.ttl = ttl
        self._clock = clock
        self._cached: OutboxMetrics | None = None
        self._lock = asyncio.Lock()

    async def metrics(self) -> OutboxMetrics:
        """Return the cached snapshot, recomputing it once it is older than ``ttl``."""
        async with self._lock:
            cached = self._cached
            if cached is not None:
                age = (self._clock() - cached.computed_at).total_seconds()
                if age < self.ttl:
                    return cached
            return await self._compute()

    async def refresh(self) -> OutboxMetrics:
        """Recompute the snapshot immediately."""
        async with self._lock:
            return await self._compute()

    async def _compute(self) -> OutboxMetrics:
        summary = await self.ledger.status_summary()
        now = self._clock()

        waiting = [
            summary[s].oldest_created_at
            for s in (EventStatus.PENDING, EventStatus.RETRY)
            if summary[s].oldest_created_at is not None
        ]
        if waiting:
            oldest_pending_minutes = max(0, int((now - min(waiting)).total_seconds() // 60))
        else:
            oldest_pending_minutes = 0

        self._cached = OutboxMetrics(
            pending=summary[EventStatus.PENDING].total,
            retry=summary[EventStatus.RETRY].total,
            processing=summary[EventStatus.PROCESSING].total,
            failed=summary[EventStatus.DEAD].total,
            sent=summary[EventStatus.SENT].total,
            oldest_pending_minutes=oldest_pending_minutes,
            stale=oldest_pending_minutes > self.stale_alert_minutes,
            computed_at=now,
        )
        return self._cached
