"""Handler registry mapping event kinds to handlers."""

from collections.abc import Iterable, Iterator
from types import MappingProxyType

from outrelay.core.errors import HandlerNotFoundError, UnknownEventKindError
from outrelay.core.event import EventKind
from outrelay.core.handler import Handler


class HandlerRegistry:
    """Read-only lookup table from EventKind to Handler.

    Built once at startup and passed to the Dispatcher, so tests can swap
    in fake handlers without touching module state.
    """

    def __init__(self, handlers: Iterable[Handler]) -> None:
        table: dict[EventKind, Handler] = {}
        for handler in handlers:
            for kind in self._validate_kinds(handler):
                existing = table.get(kind)
                if existing is not None:
                    raise ValueError(
                        f"Kind {kind.value} is claimed by both {existing.name} "
                        f"and {handler.name}"
                    )
                table[kind] = handler
        self._table = MappingProxyType(table)

    @staticmethod
    def _validate_kinds(handler: Handler) -> list[EventKind]:
        if not isinstance(handler.kinds, list):
            raise TypeError(
                f"{handler.name}.kinds must be a list[EventKind], "
                f"got {type(handler.kinds).__name__}"
            )
        for item in handler.kinds:
            if not isinstance(item, EventKind):
                raise TypeError(
                    f"{handler.name}.kinds must contain only EventKind members, "
                    f"found {type(item).__name__}: {item!r}"
                )
        return handler.kinds

    def lookup(self, kind: str) -> Handler:
        """Return the handler for ``kind``.

        Raises:
            UnknownEventKindError: ``kind`` is not an EventKind value.
            HandlerNotFoundError: ``kind`` is known but nothing handles it.
        """
        try:
            known = EventKind(kind)
        except ValueError:
            raise UnknownEventKindError(kind) from None

        handler = self._table.get(known)
        if handler is None:
            raise HandlerNotFoundError(known.value)
        return handler

    @property
    def kinds(self) -> frozenset[EventKind]:
        return frozenset(self._table)

    def __contains__(self, kind: object) -> bool:
        try:
            return EventKind(kind) in self._table
        except ValueError:
            return False

    def __iter__(self) -> Iterator[tuple[EventKind, Handler]]:
        return iter(self._table.items())

    def __len__(self) -> int:
        return len(self._table)
