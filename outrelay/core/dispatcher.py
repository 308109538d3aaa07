"""Outbox dispatcher.

The Dispatcher is the consumer side of the outbox:
- Claims a batch of events from the ledger under a fresh worker identity
- Renews each event's lease and runs its handler, one at a time, bounded
  by a timeout
- Reports every outcome back to the ledger and writes an audit record

IMPORTANT: the Dispatcher holds no event state. Retry scheduling,
dead-lettering and lease bookkeeping all happen inside the ledger.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from outrelay.core.audit import OUTBOX_ENTITY, AuditAction, AuditSink
from outrelay.core.config import DispatcherSettings, PermanentFailureMode
from outrelay.core.errors import (
    EventNotFoundError,
    HandlerTimeoutError,
    InvalidTransitionError,
    LeaseLostError,
    LedgerUnavailableError,
    PermanentHandlerError,
)
from outrelay.core.event import EventStatus, OutboxEvent, normalize_kinds
from outrelay.core.handler import Handler
from outrelay.core.logging import configure_dispatcher_logger
from outrelay.core.registry import HandlerRegistry

if TYPE_CHECKING:
    from outrelay.ledgers.base import EventLedger

DEFAULT_BATCH_SIZE = 25
DEFAULT_MAX_CONSECUTIVE_FAILURES = 10

# Ledger answers meaning the event is no longer ours to settle
_LEASE_ERRORS = (LeaseLostError, InvalidTransitionError, EventNotFoundError)


def new_worker_id() -> str:
    """Return a worker identity that is never reused."""
    return f"worker-{uuid4().hex}"


def describe_error(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def _status_after(error: Exception, fallback: EventStatus) -> EventStatus:
    if isinstance(error, InvalidTransitionError):
        try:
            return EventStatus(error.status)
        except ValueError:
            return fallback
    return fallback


@dataclass
class EventResult:
    """Outcome of one event within a batch.

    ``skipped`` marks an event whose handler never ran because the lease
    had already passed to another worker.
    """

    id: str
    kind: str
    ok: bool
    status: EventStatus
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "ok": self.ok,
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class BatchSummary:
    """Result of one ``Dispatcher.run_batch`` call.

    ``ok`` is True whenever the loop ran to completion; failures are
    reported per event in ``results``.
    """

    worker_id: str
    claimed: int
    results: list[EventResult] = field(default_factory=list)
    ok: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "claimed": self.claimed,
            "worker_id": self.worker_id,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class DispatcherStats:
    """Statistics accumulated across dispatcher batches.

    ``leases_lost`` counts events found in another worker's hands at renew
    or report time; ``report_errors`` counts other failed ledger writes.
    """

    batches_run: int = 0
    events_claimed: int = 0
    events_sent: int = 0
    events_retried: int = 0
    events_dead: int = 0
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    report_errors: int = 0
    audit_errors: int = 0
    leases_lost: int = 0


class Dispatcher:
    """Claims outbox events and drives them through their handlers.

    The lease on each event is renewed right before its handler runs, so
    the ledger's lease timeout only has to outlast one handler call.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        ledger: "EventLedger",
        audit_sink: AuditSink,
        batch_size: int = DEFAULT_BATCH_SIZE,
        handler_timeout: float = 30.0,
        permanent_failure_mode: PermanentFailureMode = PermanentFailureMode.RETRY,
        poll_interval: float = 10.0,
        max_consecutive_ledger_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        kinds: Collection[str] | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if handler_timeout <= 0:
            raise ValueError(f"handler_timeout must be > 0, got {handler_timeout}")

        self.registry = registry
        self.ledger = ledger
        self.audit_sink = audit_sink
        self.batch_size = batch_size
        self.handler_timeout = handler_timeout
        self.permanent_failure_mode = permanent_failure_mode
        self.poll_interval = poll_interval
        self.max_consecutive_ledger_failures = max_consecutive_ledger_failures
        self.kinds = normalize_kinds(kinds)
        self._log = configure_dispatcher_logger()
        self._stats = DispatcherStats()
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: DispatcherSettings,
        registry: HandlerRegistry,
        ledger: "EventLedger",
        audit_sink: AuditSink,
        kinds: Collection[str] | None = None,
    ) -> "Dispatcher":
        return cls(
            registry=registry,
            ledger=ledger,
            audit_sink=audit_sink,
            batch_size=settings.batch_size,
            handler_timeout=settings.handler_timeout,
            permanent_failure_mode=settings.permanent_failure_mode,
            poll_interval=settings.poll_interval,
            kinds=kinds,
        )

    async def _invoke_handler(self, handler: Handler, event: OutboxEvent) -> None:
        """Invoke handler with timeout and return type validation.

        Sync handlers run in a worker thread so the timeout still applies.
        """
        if inspect.iscoroutinefunction(handler.handle):
            pending = handler.handle(event)
        else:
            pending = asyncio.to_thread(handler.handle, event)

        try:
            result = await asyncio.wait_for(pending, timeout=self.handler_timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.handler_timeout)
        except TimeoutError:
            raise HandlerTimeoutError(handler.name, self.handler_timeout) from None

        if result is not None:
            raise TypeError(
                f"Handler {handler.name} must return None, got {type(result).__name__}"
            )

    def _is_retryable(self, error: Exception | None) -> bool:
        if error is None or self.permanent_failure_mode == PermanentFailureMode.RETRY:
            return True
        return not isinstance(error, PermanentHandlerError)

    def _ledger_write_failed(
        self, action: str, event_id: str, error: Exception, log_extra: dict[str, Any]
    ) -> None:
        extra = {**log_extra, "error": describe_error(error)}
        if isinstance(error, _LEASE_ERRORS):
            self._stats.leases_lost += 1
            self._log.warning(f"Lease on event {event_id} lost before {action}: {error}", extra=extra)
        else:
            self._stats.report_errors += 1
            self._log.error(f"Failed to {action} event {event_id}: {error}", extra=extra)

    async def _process(self, event: OutboxEvent, worker_id: str) -> EventResult:
        log_extra = {
            "event_id": event.id,
            "kind": event.kind,
            "tenant_id": event.tenant_id,
            "worker_id": worker_id,
        }

        try:
            event = await self.ledger.renew(event.id, worker_id)
        except Exception as e:
            self._ledger_write_failed("renew", event.id, e, log_extra)
            return EventResult(
                id=event.id,
                kind=event.kind,
                ok=False,
                status=_status_after(e, event.status),
                error=describe_error(e),
                skipped=True,
            )

        handler_error: Exception | None = None
        try:
            handler = self.registry.lookup(event.kind)
            self._log.info(
                f"Dispatching {event.kind} to {handler.name}",
                extra={**log_extra, "handler": handler.name},
            )
            await self._invoke_handler(handler, event)
        except Exception as e:
            handler_error = e
            self._stats.handler_errors[event.kind] += 1
            self._log.error(
                f"Handler for {event.kind} raised exception: {e}",
                extra={**log_extra, "error": describe_error(e)},
            )

        ok = handler_error is None
        error_text = None if ok else describe_error(handler_error)

        try:
            updated = await self.ledger.report_result(
                event.id,
                ok,
                error_text,
                worker_id=worker_id,
                retryable=self._is_retryable(handler_error),
            )
        except Exception as e:
            # Nothing was recorded, so nothing is audited.
            self._ledger_write_failed("report", event.id, e, log_extra)
            return EventResult(
                id=event.id,
                kind=event.kind,
                ok=False,
                status=_status_after(e, event.status),
                error=error_text or f"Failed to report result: {describe_error(e)}",
            )

        status = updated.status
        if status == EventStatus.SENT:
            self._stats.events_sent += 1
        elif status == EventStatus.RETRY:
            self._stats.events_retried += 1
        elif status == EventStatus.DEAD:
            self._stats.events_dead += 1
            self._log.warning(
                f"Event {event.id} dead-lettered after {updated.attempt_count} attempts",
                extra={**log_extra, "error": error_text},
            )

        metadata: dict[str, Any] = {
            "kind": event.kind,
            "tenant_id": event.tenant_id,
            "worker_id": worker_id,
            "attempt_count": updated.attempt_count,
            "status": status.value,
        }
        if not ok:
            metadata["error"] = error_text
        try:
            await self.audit_sink.create_audit(
                AuditAction.OUTBOX_SENT if ok else AuditAction.OUTBOX_FAILED,
                OUTBOX_ENTITY,
                event.id,
                metadata,
            )
        except Exception as e:
            self._stats.audit_errors += 1
            self._log.error(
                f"Failed to write audit record for event {event.id}: {e}",
                extra={**log_extra, "error": describe_error(e)},
            )

        return EventResult(id=event.id, kind=event.kind, ok=ok, status=status, error=error_text)

    async def run_batch(
        self,
        batch_size: int | None = None,
        kinds: Collection[str] | None = None,
    ) -> BatchSummary:
        """Claim and process one batch.

        Args:
            batch_size: Overrides the configured batch size.
            kinds: Overrides the configured kind filter.

        Raises:
            LedgerUnavailableError: The claim itself failed; nothing was processed.
        """
        size = batch_size if batch_size is not None else self.batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")
        wanted = normalize_kinds(kinds) if kinds is not None else self.kinds

        worker_id = new_worker_id()
        try:
            events = await self.ledger.claim(size, worker_id, kinds=wanted)
        except Exception as e:
            self._log.error(
                f"Ledger claim failed: {e}",
                extra={"worker_id": worker_id, "error": describe_error(e)},
            )
            raise LedgerUnavailableError("Ledger claim failed", describe_error(e)) from e

        self._stats.batches_run += 1
        self._stats.events_claimed += len(events)
        summary = BatchSummary(worker_id=worker_id, claimed=len(events))

        for event in events:
            summary.results.append(await self._process(event, worker_id))

        if events:
            failed = sum(1 for r in summary.results if not r.ok)
            self._log.info(
                f"Processed {len(events) - failed}/{len(events)} outbox events successfully",
                extra={"worker_id": worker_id, "claimed": len(events), "failed": failed},
            )
        return summary

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def run(self, max_batches: int | None = None) -> DispatcherStats:
        """Poll the ledger until ``stop()`` is called or ``max_batches`` ran.

        A full batch is followed immediately by another; otherwise the loop
        waits ``poll_interval`` seconds. A ``stop()`` that arrives before
        ``run()`` starts is honoured: the loop returns without claiming.

        Raises:
            LedgerUnavailableError: The ledger failed too many times in a row.
        """
        self._stats = DispatcherStats()
        consecutive_failures = 0
        batches = 0

        self._log.info(
            f"Starting outbox dispatcher (batch_size={self.batch_size}, "
            f"poll_interval={self.poll_interval}s, handler_timeout={self.handler_timeout}s)"
        )

        while not self._stop_event.is_set():
            if max_batches is not None and batches >= max_batches:
                break

            try:
                summary = await self.run_batch()
            except LedgerUnavailableError as e:
                consecutive_failures += 1
                if consecutive_failures >= self.max_consecutive_ledger_failures:
                    raise LedgerUnavailableError(
                        f"Ledger unavailable after {consecutive_failures} failures",
                        last_error=e.last_error,
                    ) from e
                await self._pause()
                continue

            consecutive_failures = 0
            batches += 1
            if max_batches is not None and batches >= max_batches:
                break
            if summary.claimed < self.batch_size:
                await self._pause()

        return self.get_stats()

    def stop(self) -> None:
        self._stop_event.set()

    def get_stats(self) -> DispatcherStats:
        """Return a copy of current statistics."""
        return DispatcherStats(
            batches_run=self._stats.batches_run,
            events_claimed=self._stats.events_claimed,
            events_sent=self._stats.events_sent,
            events_retried=self._stats.events_retried,
            events_dead=self._stats.events_dead,
            handler_errors=defaultdict(int, self._stats.handler_errors),
            report_errors=self._stats.report_errors,
            audit_errors=self._stats.audit_errors,
            leases_lost=self._stats.leases_lost,
        )
