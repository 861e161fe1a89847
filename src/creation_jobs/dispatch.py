"""Closed dispatch tables mapping an enumerated kind to its handler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Enum)


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome of dispatching one kind; ``handled`` is false for unknown kinds."""

    kind: str
    handled: bool
    value: Any = None
    reason: str | None = None


class DispatchTable(Generic[K]):
    """Exhaustive mapping from every member of ``kinds`` to a handler.

    Construction fails when a member has no handler, so adding a kind without
    wiring it is caught at startup. Unknown kinds at dispatch time are a typed
    result, not an exception.
    """

    def __init__(
        self,
        kinds: type[K],
        handlers: Mapping[K, Callable[[dict[str, Any]], Any]],
        *,
        name: str,
    ) -> None:
        missing = [member.value for member in kinds if member not in handlers]
        if missing:
            raise ValueError(f"Dispatch table {name!r} has no handler for: {', '.join(missing)}")
        self.kinds = kinds
        self.name = name
        self._handlers = dict(handlers)

    def resolve(self, kind: str) -> K | None:
        try:
            return self.kinds(kind)
        except ValueError:
            return None

    def dispatch(self, kind: str, payload: dict[str, Any]) -> DispatchResult:
        member = self.resolve(kind)
        if member is None:
            reason = f"unhandled kind {kind!r} for {self.name}"
            logger.warning("Dispatch table %s: %s", self.name, reason)
            return DispatchResult(kind=kind, handled=False, reason=reason)
        value = self._handlers[member](payload)
        return DispatchResult(kind=member.value, handled=True, value=value)

    def known_kinds(self) -> list[str]:
        return [member.value for member in self.kinds]
