"""Exception hierarchy for outrelay."""


class OutboxError(Exception):
    """Base class for all outrelay errors."""


# Handler-side errors


class HandlerError(OutboxError):
    """Raised by a handler when an event could not be processed."""


class TransientHandlerError(HandlerError):
    """Failure expected to clear on retry (gateway or network trouble)."""


class HandlerTimeoutError(TransientHandlerError):
    """Handler did not finish within the dispatcher's timeout."""

    def __init__(self, handler_name: str, timeout: float):
        self.handler_name = handler_name
        self.timeout = timeout
        super().__init__(f"Handler {handler_name} timed out after {timeout}s")


class PermanentHandlerError(HandlerError):
    """Failure that retrying cannot fix (configuration or malformed payload)."""


class HandlerNotFoundError(PermanentHandlerError):
    """No handler is registered for a known event kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No handler registered for kind {kind!r}")


class UnknownEventKindError(HandlerNotFoundError):
    """The event kind is not part of the EventKind enum at all."""

    def __init__(self, kind: str):
        super().__init__(kind)
        self.args = (f"No handler registered for unrecognized kind {kind!r}",)


class PayloadValidationError(PermanentHandlerError):
    """Event payload does not match what the handler expects."""


class TenantScopeError(PermanentHandlerError):
    """Payload references a resource outside the event's tenant."""


# Ledger-side errors


class LedgerError(OutboxError):
    """Base class for event ledger errors."""


class EventNotFoundError(LedgerError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")


class InvalidTransitionError(LedgerError):
    """Requested transition is not allowed from the event's current status."""

    def __init__(self, event_id: str, status: str, action: str):
        self.event_id = event_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} event {event_id} in status {status}")


class LeaseLostError(LedgerError):
    """Reporting worker no longer holds the processing lease."""

    def __init__(self, event_id: str, worker_id: str, holder: str | None):
        self.event_id = event_id
        self.worker_id = worker_id
        self.holder = holder
        super().__init__(
            f"Worker {worker_id} does not hold the lease on event {event_id} "
            f"(held by {holder})"
        )


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger cannot be reached to claim work."""

    def __init__(self, message: str, last_error: str | None = None):
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base
