"""Outbox event model for outrelay."""

import json
import re
from collections.abc import Collection
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# UUID v4 regex pattern for validation
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Maximum payload size (1MB)
MAX_PAYLOAD_SIZE = 1_000_000

DEFAULT_MAX_ATTEMPTS = 5


class EventKind(str, Enum):
    """Closed set of event kinds the dispatcher knows how to route."""

    EMAIL_SEND = "EMAIL_SEND"
    MESSAGE_SEND = "MESSAGE_SEND"
    IDENTITY_PROVISION = "IDENTITY_PROVISION"
    ARCHIVE_DOCUMENT = "ARCHIVE_DOCUMENT"


class EventStatus(str, Enum):
    """Lifecycle states of an outbox event.

    PENDING --claim--> PROCESSING --ok--> SENT
    PROCESSING --fail, attempts < max--> RETRY --backoff--> claimable
    PROCESSING --fail, attempts >= max--> DEAD
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRY = "RETRY"
    SENT = "SENT"
    DEAD = "DEAD"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.SENT, EventStatus.DEAD)


def utcnow() -> datetime:
    return datetime.now(UTC)


def validate_payload(v: dict[str, Any]) -> dict[str, Any]:
    """Ensure payload is strictly JSON-serializable and within size limits."""
    try:
        serialized = json.dumps(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"payload must be JSON-serializable: {e}") from e

    # Measure actual byte length for UTF-8 encoded payload
    byte_length = len(serialized.encode("utf-8"))
    if byte_length > MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"payload exceeds maximum size of {MAX_PAYLOAD_SIZE} bytes "
            f"(got {byte_length} bytes)"
        )
    return v


def normalize_kinds(kinds: Collection[str] | None) -> frozenset[str] | None:
    """Turn a claim filter into a set of kind strings; ``None`` means every kind."""
    if kinds is None:
        return None
    if isinstance(kinds, str):
        kinds = [kinds]
    wanted = frozenset(k.value if isinstance(k, Enum) else k for k in kinds)
    if not wanted:
        raise ValueError("kinds must name at least one event kind")
    return wanted


class OutboxEvent(BaseModel):
    """Immutable snapshot of one outbox event.

    Snapshots are produced by a ledger and never mutated in place: the
    ledger derives a new snapshot with ``model_copy(update=...)`` on every
    transition.

    Attributes:
        id: UUID v4 string, auto-generated if not provided.
        kind: Routing key. Usually an ``EventKind`` value, but any non-empty
            string is accepted so unrecognized kinds can still be recorded
            and dead-lettered.
        payload: JSON-serializable dictionary (max 1MB when serialized).
        tenant_id: Tenant (school) the event belongs to.
        status: Current lifecycle state.
        attempt_count: Failed processing attempts so far.
        max_attempts: Attempts allowed before the event is dead-lettered.
        worker_id: Lease holder while PROCESSING, otherwise None.
        claimed_at: Time of the most recent claim.
        next_attempt_at: Earliest time a PENDING/RETRY event may be claimed.
        last_error: Most recent failure message.
        idempotency_key: Producer-supplied dedupe key, unique per tenant.
        replay_of: Id of the dead event this one was replayed from.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str
    status: EventStatus = EventStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    worker_id: str | None = None
    claimed_at: datetime | None = None
    next_attempt_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
    idempotency_key: str | None = None
    replay_of: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ensure id is a valid UUID v4 string."""
        if not _UUID_PATTERN.match(v):
            raise ValueError(f"id must be a valid UUID v4 string, got: {v!r}")
        return v.lower()

    @field_validator("kind", "tenant_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: dict[str, Any]) -> dict[str, Any]:
        return validate_payload(v)

    @property
    def known_kind(self) -> EventKind | None:
        """The kind as an ``EventKind``, or None when unrecognized."""
        try:
            return EventKind(self.kind)
        except ValueError:
            return None


class NewEvent(BaseModel):
    """Producer-side request to append an event to the outbox.

    ``max_attempts`` left unset means the deployment default.
    """

    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str
    idempotency_key: str | None = None
    max_attempts: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}

    @field_validator("kind", "tenant_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: dict[str, Any]) -> dict[str, Any]:
        return validate_payload(v)
