"""Email and instant-message delivery handlers.

Both handlers render the payload's templates and hand the result to a
gateway together with an idempotency key. Providers dedupe on that key,
so a redelivered event does not reach the recipient twice.
"""

from string import Template
from typing import Any, Literal, Protocol

from cachetools import TTLCache
from pydantic import BaseModel, Field, field_validator

from outrelay.core.errors import TransientHandlerError
from outrelay.core.event import EventKind, OutboxEvent
from outrelay.core.handler import Handler, parse_payload
from outrelay.core.logging import get_logger

logger = get_logger("outrelay.handlers.messaging")


class GatewayError(TransientHandlerError):
    """Delivery provider rejected or failed the request."""


class OutboundEmail(BaseModel):
    tenant_id: str
    to: str
    subject: str
    body: str


class OutboundMessage(BaseModel):
    tenant_id: str
    channel: str
    destination: str
    text: str


class EmailGateway(Protocol):
    async def send_email(self, message: OutboundEmail, idempotency_key: str) -> str:
        """Send and return the provider's message id."""
        ...


class MessageGateway(Protocol):
    async def send_message(self, message: OutboundMessage, idempotency_key: str) -> str:
        """Send and return the provider's message id."""
        ...


class _InMemoryGateway:
    """Shared dedupe and failure injection for the in-memory gateways."""

    def __init__(self, fail_times: int = 0, ttl: float = 86_400.0) -> None:
        # Keys are remembered for a day, well past the longest retry backoff
        self._seen: TTLCache[str, str] = TTLCache(maxsize=100_000, ttl=ttl)
        self._fail_times = fail_times
        self.calls = 0

    def _deliver(self, idempotency_key: str, record: Any, outbox: list) -> str:
        self.calls += 1
        if self._fail_times > 0:
            self._fail_times -= 1
            raise GatewayError(f"Simulated provider failure for {idempotency_key}")

        existing = self._seen.get(idempotency_key)
        if existing is not None:
            return existing

        message_id = f"msg-{len(outbox) + 1}"
        self._seen[idempotency_key] = message_id
        outbox.append(record)
        return message_id


class InMemoryEmailGateway(_InMemoryGateway):
    def __init__(self, fail_times: int = 0, ttl: float = 86_400.0) -> None:
        super().__init__(fail_times=fail_times, ttl=ttl)
        self.sent: list[OutboundEmail] = []

    async def send_email(self, message: OutboundEmail, idempotency_key: str) -> str:
        return self._deliver(idempotency_key, message, self.sent)


class InMemoryMessageGateway(_InMemoryGateway):
    def __init__(self, fail_times: int = 0, ttl: float = 86_400.0) -> None:
        super().__init__(fail_times=fail_times, ttl=ttl)
        self.sent: list[OutboundMessage] = []

    async def send_message(self, message: OutboundMessage, idempotency_key: str) -> str:
        return self._deliver(idempotency_key, message, self.sent)


def render(template: str, context: dict[str, Any]) -> str:
    """Fill ``$name`` placeholders, leaving unknown ones untouched."""
    return Template(template).safe_substitute({k: str(v) for k, v in context.items()})


def idempotency_key_for(event: OutboxEvent) -> str:
    if event.idempotency_key:
        return f"{event.tenant_id}:{event.idempotency_key}"
    return event.id


class EmailPayload(BaseModel):
    to: str
    subject: str = Field(min_length=1)
    body: str
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"not an email address: {v!r}")
        return v


class MessagePayload(BaseModel):
    channel: Literal["whatsapp", "sms"] = "whatsapp"
    destination: str = Field(min_length=1)
    text: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)


class EmailSendHandler(Handler):
    kinds = [EventKind.EMAIL_SEND]

    def __init__(self, gateway: EmailGateway, name: str | None = None) -> None:
        super().__init__(name=name)
        self.gateway = gateway

    async def handle(self, event: OutboxEvent) -> None:
        payload = parse_payload(EmailPayload, event)
        email = OutboundEmail(
            tenant_id=event.tenant_id,
            to=payload.to,
            subject=render(payload.subject, payload.context),
            body=render(payload.body, payload.context),
        )
        message_id = await self.gateway.send_email(email, idempotency_key_for(event))
        logger.info(
            f"Email accepted by provider as {message_id}",
            extra={"event_id": event.id, "tenant_id": event.tenant_id},
        )


class MessageSendHandler(Handler):
    kinds = [EventKind.MESSAGE_SEND]

    def __init__(self, gateway: MessageGateway, name: str | None = None) -> None:
        super().__init__(name=name)
        self.gateway = gateway

    async def handle(self, event: OutboxEvent) -> None:
        payload = parse_payload(MessagePayload, event)
        message = OutboundMessage(
            tenant_id=event.tenant_id,
            channel=payload.channel,
            destination=payload.destination,
            text=render(payload.text, payload.context),
        )
        message_id = await self.gateway.send_message(message, idempotency_key_for(event))
        logger.info(
            f"{payload.channel} message accepted by provider as {message_id}",
            extra={"event_id": event.id, "tenant_id": event.tenant_id},
        )
