"""Handler base class for outbox side effects."""

from abc import ABC, abstractmethod
from typing import Awaitable, ClassVar, TypeVar

from pydantic import BaseModel, ValidationError

from outrelay.core.errors import PayloadValidationError
from outrelay.core.event import EventKind, OutboxEvent

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class Handler(ABC):
    """Base class for side-effecting event handlers.

    Each Handler declares the event kinds it serves via the ``kinds`` class
    attribute. Handlers must be idempotent: an event whose side effect
    succeeded may still be delivered again if the worker dies before the
    result is reported.

    Note: Validation of ``kinds`` happens in HandlerRegistry, not here.
    """

    kinds: ClassVar[list[EventKind]] = []

    def __init__(self, name: str | None = None) -> None:
        """Initialize the Handler.

        Args:
            name: Optional name for the handler. Defaults to the class name.
        """
        self.name = name or self.__class__.__name__

    @abstractmethod
    def handle(self, event: OutboxEvent) -> None | Awaitable[None]:
        """Perform the side effect for ``event``.

        Returns None on success and raises on failure. May be sync or async.
        """
        ...


def parse_payload(model: type[PayloadT], event: OutboxEvent) -> PayloadT:
    """Validate ``event.payload`` against ``model``.

    Raises:
        PayloadValidationError: If the payload does not fit the model.
    """
    try:
        return model.model_validate(event.payload)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {event.kind} payload for event {event.id}: {e}"
        ) from e
