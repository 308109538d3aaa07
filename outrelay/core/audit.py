"""Audit trail for outbox processing attempts."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from outrelay.core.event import utcnow
from outrelay.core.logging import get_logger

OUTBOX_ENTITY = "outbox_events"


class AuditAction(str, Enum):
    OUTBOX_SENT = "OUTBOX_SENT"
    OUTBOX_FAILED = "OUTBOX_FAILED"


class AuditRecord(BaseModel):
    """One append-only audit entry, written per processing attempt."""

    action: AuditAction
    entity: str = OUTBOX_ENTITY
    entity_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class AuditSink(Protocol):
    """Append-only destination for audit records."""

    async def create_audit(
        self,
        action: AuditAction,
        entity: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> None: ...


class InMemoryAuditSink:
    """Audit sink that keeps records in a list, for tests and local runs."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    async def create_audit(
        self,
        action: AuditAction,
        entity: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> None:
        self._records.append(
            AuditRecord(
                action=action,
                entity=entity,
                entity_id=entity_id,
                metadata=dict(metadata),
            )
        )

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def for_entity(self, entity_id: str) -> list[AuditRecord]:
        return [r for r in self._records if r.entity_id == entity_id]

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class LoggingAuditSink:
    """Audit sink that emits each record as a structured log line.

    Used by the CLI when no audit table is wired in; records go to the
    ``outrelay.audit`` logger with the same fields the in-memory sink keeps.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or get_logger("outrelay.audit")

    async def create_audit(
        self,
        action: AuditAction,
        entity: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> None:
        self._log.info(
            f"{action.value} {entity}/{entity_id}",
            extra={"action": action.value, "entity": entity, "entity_id": entity_id, **metadata},
        )
