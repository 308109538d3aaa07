"""Event ledger implementations."""

from outrelay.ledgers.base import EventLedger, StatusSummary
from outrelay.ledgers.inmemory import InMemoryLedger
from outrelay.ledgers.redis_ledger import RedisLedger

__all__ = ["EventLedger", "StatusSummary", "InMemoryLedger", "RedisLedger"]
