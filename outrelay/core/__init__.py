"""Core components for the outrelay outbox dispatcher.

Types:
    OutboxEvent: Immutable, validated snapshot of one outbox event.
    EventKind: Closed set of routable event kinds.
    EventStatus: Lifecycle states (PENDING, PROCESSING, RETRY, SENT, DEAD).
    Handler: Abstract base class for side-effecting handlers.
    HandlerRegistry: Read-only kind -> handler table.
    Dispatcher: Claims batches and drives events through their handlers.
    BackoffPolicy: Capped exponential retry delay.

Failure Handling:
    PermanentFailureMode: Whether permanent errors retry or dead-letter at once.
    TransientHandlerError / PermanentHandlerError: Handler error families.
    LedgerUnavailableError: Raised when the ledger cannot hand out work.

Constants:
    MAX_PAYLOAD_SIZE: Maximum payload size in bytes (1MB).
"""

from outrelay.core.audit import (
    AuditAction,
    AuditRecord,
    AuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
)
from outrelay.core.backoff import BackoffPolicy
from outrelay.core.config import DispatcherSettings, PermanentFailureMode
from outrelay.core.dispatcher import BatchSummary, Dispatcher, DispatcherStats, EventResult
from outrelay.core.errors import (
    EventNotFoundError,
    HandlerError,
    HandlerNotFoundError,
    HandlerTimeoutError,
    InvalidTransitionError,
    LeaseLostError,
    LedgerError,
    LedgerUnavailableError,
    OutboxError,
    PayloadValidationError,
    PermanentHandlerError,
    TenantScopeError,
    TransientHandlerError,
    UnknownEventKindError,
)
from outrelay.core.event import MAX_PAYLOAD_SIZE, EventKind, EventStatus, NewEvent, OutboxEvent
from outrelay.core.handler import Handler
from outrelay.core.registry import HandlerRegistry

__all__ = [
    "OutboxEvent",
    "NewEvent",
    "EventKind",
    "EventStatus",
    "MAX_PAYLOAD_SIZE",
    "Handler",
    "HandlerRegistry",
    "Dispatcher",
    "DispatcherStats",
    "BatchSummary",
    "EventResult",
    "BackoffPolicy",
    "DispatcherSettings",
    "PermanentFailureMode",
    "AuditAction",
    "AuditRecord",
    "AuditSink",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "OutboxError",
    "HandlerError",
    "TransientHandlerError",
    "HandlerTimeoutError",
    "PermanentHandlerError",
    "HandlerNotFoundError",
    "UnknownEventKindError",
    "PayloadValidationError",
    "TenantScopeError",
    "LedgerError",
    "EventNotFoundError",
    "InvalidTransitionError",
    "LeaseLostError",
    "LedgerUnavailableError",
]
