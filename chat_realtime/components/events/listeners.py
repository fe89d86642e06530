"""
Listener Registry.

Explicit registry object owned by a client session and handed to the
dispatcher at construction; there is no process-wide listener state.

Listeners are kept per scope (GLOBAL_SCOPE or a channel cid) in
registration order, which is also their invocation order.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Callable

from chat_realtime.components.core.constants import GLOBAL_SCOPE
from chat_realtime.components.events.types import ChatEvent, is_valid_event_type

# Callbacks may be plain functions or coroutine functions; coroutines are
# scheduled by the dispatcher and never awaited inline.
EventCallback = Callable[[ChatEvent], Any]


@dataclass(frozen=True, slots=True, eq=False)
class Listener:
    """
    One registration.

    Attributes:
        listener_id: Monotonic id, also the registration order.
        scope: GLOBAL_SCOPE or the cid of a channel.
        event_types: Types the listener wants, or None for all.
        callback: Function invoked with the event.
    """

    listener_id: int
    scope: str
    event_types: frozenset[str] | None
    callback: EventCallback

    @property
    def is_global(self) -> bool:
        return self.scope == GLOBAL_SCOPE

    def accepts(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types


class Subscription:
    """Handle returned by ListenerRegistry.add()."""

    def __init__(self, registry: ListenerRegistry, listener: Listener):
        self._registry = registry
        self._listener = listener

    @property
    def listener(self) -> Listener:
        return self._listener

    @property
    def active(self) -> bool:
        return self._registry.contains(self._listener)

    def unsubscribe(self) -> bool:
        """Remove the listener. Returns False if it was already removed."""
        return self._registry.remove(self._listener)


def _normalize_event_types(
    event_types: str | Iterable[str] | None,
) -> frozenset[str] | None:
    if event_types is None:
        return None
    if isinstance(event_types, str):
        event_types = (event_types,)
    normalized = frozenset(str(getattr(t, "value", t)) for t in event_types)
    invalid = sorted(t for t in normalized if not is_valid_event_type(t))
    if invalid:
        raise ValueError(f"Unknown event types: {', '.join(invalid)}")
    if not normalized:
        raise ValueError("event_types must not be empty; pass None for all events")
    return normalized


class ListenerRegistry:
    """
    Per-session listener registry.

    Usage:
        registry = ListenerRegistry()
        sub = registry.add(on_message, "message.new", scope="messaging:general")
        ...
        sub.unsubscribe()
    """

    def __init__(self) -> None:
        self._by_scope: dict[str, list[Listener]] = {}
        self._ids = itertools.count(1)

    def add(
        self,
        callback: EventCallback,
        event_types: str | Iterable[str] | None = None,
        scope: str = GLOBAL_SCOPE,
    ) -> Subscription:
        """
        Register a callback.

        Args:
            callback: Invoked with each matching ChatEvent.
            event_types: One type, several types, or None for every event.
            scope: GLOBAL_SCOPE or a channel cid.

        Raises:
            ValueError: If an event type is not in the catalog.
            TypeError: If callback is not callable.
        """
        if not callable(callback):
            raise TypeError("callback must be callable")
        listener = Listener(
            listener_id=next(self._ids),
            scope=scope,
            event_types=_normalize_event_types(event_types),
            callback=callback,
        )
        self._by_scope.setdefault(scope, []).append(listener)
        return Subscription(self, listener)

    def remove(self, listener: Listener) -> bool:
        listeners = self._by_scope.get(listener.scope)
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        if not listeners:
            del self._by_scope[listener.scope]
        return True

    def remove_callback(self, callback: EventCallback, scope: str = GLOBAL_SCOPE) -> int:
        """Remove every registration of callback in scope. Returns how many were removed."""
        listeners = self._by_scope.get(scope, [])
        kept = [listener for listener in listeners if listener.callback != callback]
        removed = len(listeners) - len(kept)
        if kept:
            self._by_scope[scope] = kept
        else:
            self._by_scope.pop(scope, None)
        return removed

    def remove_scope(self, scope: str) -> int:
        """Drop every listener registered for scope."""
        return len(self._by_scope.pop(scope, []))

    def contains(self, listener: Listener) -> bool:
        return listener in self._by_scope.get(listener.scope, ())

    def listeners_for(self, event_type: str, scope: str = GLOBAL_SCOPE) -> list[Listener]:
        """
        Listeners of scope accepting event_type, in registration order.

        Returns a copy so callbacks may subscribe or unsubscribe while the
        dispatcher iterates.
        """
        return [
            listener
            for listener in self._by_scope.get(scope, ())
            if listener.accepts(event_type)
        ]

    def count(self, scope: str | None = None) -> int:
        if scope is not None:
            return len(self._by_scope.get(scope, ()))
        return sum(len(listeners) for listeners in self._by_scope.values())

    def clear(self) -> None:
        self._by_scope.clear()
