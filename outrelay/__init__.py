"""outrelay - Async transactional outbox dispatcher for Python."""

from outrelay.core import (
    BackoffPolicy,
    Dispatcher,
    DispatcherSettings,
    DispatcherStats,
    EventKind,
    EventStatus,
    Handler,
    HandlerRegistry,
    InMemoryAuditSink,
    LedgerUnavailableError,
    OutboxEvent,
    PermanentFailureMode,
)
from outrelay.ledgers import EventLedger, InMemoryLedger, RedisLedger
from outrelay.monitor import OutboxMetrics, OutboxMonitor

__version__ = "0.1.0"

__all__ = [
    # Core
    "OutboxEvent",
    "EventKind",
    "EventStatus",
    "Handler",
    "HandlerRegistry",
    "Dispatcher",
    "DispatcherStats",
    "DispatcherSettings",
    "BackoffPolicy",
    # Failure handling
    "PermanentFailureMode",
    "LedgerUnavailableError",
    "InMemoryAuditSink",
    # Ledgers
    "EventLedger",
    "InMemoryLedger",
    "RedisLedger",
    # Monitoring
    "OutboxMonitor",
    "OutboxMetrics",
    # Meta
    "__version__",
]
