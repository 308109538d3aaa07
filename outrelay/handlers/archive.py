"""Document archival handler.

Copies an issued document from the tenant's working area into the
long-term retention store. A destination that already exists means an
earlier attempt got there first, so it counts as success.
"""

import posixpath
from typing import Protocol

from pydantic import BaseModel, Field, field_validator

from outrelay.core.errors import TenantScopeError
from outrelay.core.event import EventKind, OutboxEvent
from outrelay.core.handler import Handler, parse_payload
from outrelay.core.logging import get_logger

logger = get_logger("outrelay.handlers.archive")


class BlobStoreError(Exception):
    """Base class for blob store failures."""


class BlobAlreadyExistsError(BlobStoreError):
    pass


class BlobNotFoundError(BlobStoreError):
    pass


class BlobStore(Protocol):
    async def copy(self, source: str, destination: str) -> None:
        """Copy a blob without overwriting.

        Raises:
            BlobAlreadyExistsError: ``destination`` already exists.
            BlobNotFoundError: ``source`` does not exist.
        """
        ...


class InMemoryBlobStore:
    """Blob store kept in a dict, for development and tests."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    def put(self, path: str, data: bytes) -> None:
        self.blobs[path] = data

    def exists(self, path: str) -> bool:
        return path in self.blobs

    async def copy(self, source: str, destination: str) -> None:
        if destination in self.blobs:
            raise BlobAlreadyExistsError(f"{destination} already exists")
        if source not in self.blobs:
            raise BlobNotFoundError(f"{source} not found")
        self.blobs[destination] = self.blobs[source]


def _check_segment(value: str) -> str:
    value = value.strip()
    if not value or "/" in value or value in (".", ".."):
        raise ValueError(f"invalid path segment: {value!r}")
    return value


class ArchivePayload(BaseModel):
    source_path: str = Field(min_length=1)
    document_id: str
    document_type: str
    filename: str | None = None

    @field_validator("source_path")
    @classmethod
    def validate_source_path(cls, v: str) -> str:
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"source_path must be relative and normalized: {v!r}")
        return v

    @field_validator("document_id", "document_type")
    @classmethod
    def validate_segments(cls, v: str) -> str:
        return _check_segment(v)

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str | None) -> str | None:
        return None if v is None else _check_segment(v)


class DocumentArchivalHandler(Handler):
    kinds = [EventKind.ARCHIVE_DOCUMENT]

    def __init__(
        self,
        store: BlobStore,
        retention_prefix: str = "archive",
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.store = store
        self.retention_prefix = retention_prefix.strip("/")

    def destination_for(self, event: OutboxEvent, payload: ArchivePayload) -> str:
        filename = payload.filename or posixpath.basename(payload.source_path)
        return "/".join(
            [
                self.retention_prefix,
                event.tenant_id,
                payload.document_type,
                payload.document_id,
                filename,
            ]
        )

    async def handle(self, event: OutboxEvent) -> None:
        payload = parse_payload(ArchivePayload, event)
        if not payload.source_path.startswith(f"{event.tenant_id}/"):
            raise TenantScopeError(
                f"Source {payload.source_path} is outside tenant {event.tenant_id}"
            )

        destination = self.destination_for(event, payload)
        try:
            await self.store.copy(payload.source_path, destination)
        except BlobAlreadyExistsError:
            logger.info(
                f"{destination} already archived",
                extra={"event_id": event.id, "tenant_id": event.tenant_id},
            )
            return
        logger.info(
            f"Archived {payload.source_path} to {destination}",
            extra={"event_id": event.id, "tenant_id": event.tenant_id},
        )
