"""
Event Dispatcher.

Single chokepoint between the transport and everything that mutates state:

    raw frame -> decode -> vocabulary check -> typed event (timestamps
    normalised) -> router (state update) -> global listeners -> channel
    listeners -> router.finalize

handle() never raises. Every failure is classified, logged, counted and
kept in a bounded diagnostic buffer.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from chat_common.config.logging import get_logger
from chat_common.config.settings import settings
from chat_common.utils.exceptions import ValidationError
from chat_realtime.components.core.constants import (
    GLOBAL_SCOPE,
    LOCAL_EVENT_TYPES,
    RealtimeConstants,
)
from chat_realtime.components.events.listeners import Listener, ListenerRegistry
from chat_realtime.components.events.types import (
    ChatEvent,
    UnknownEventTypeTracker,
    is_valid_event_type,
    parse_event,
)

logger = get_logger(__name__)

# Drop reasons
DROP_INVALID_JSON = "invalid_json"
DROP_UNKNOWN_TYPE = "unknown_type"
DROP_INVALID_SHAPE = "invalid_shape"
DROP_LOCAL_TYPE = "local_type_from_transport"
DROP_OVERSIZE = "oversize"

MAX_DIAGNOSTICS = 100


class EventRouterProtocol(Protocol):
    """What the dispatcher needs from the session."""

    def route(self, event: ChatEvent) -> bool:
        """
        Apply the event to state.

        Returns True when a local channel store took the event, in which
        case channel-scoped listeners are invoked too. An event held back
        for later returns False and is finished with deliver_deferred().
        """
        ...

    def finalize(self, event: ChatEvent) -> None:
        """Called after every listener ran (e.g. to evict a deleted channel)."""
        ...


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One contained failure."""

    kind: str
    event_type: str | None
    detail: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DispatchResult:
    """Outcome of handling one frame."""

    event: ChatEvent | None = None
    delivered: int = 0
    failed: int = 0
    dropped_reason: str | None = None
    channel_delivery: bool = False

    @property
    def dropped(self) -> bool:
        return self.dropped_reason is not None


@dataclass
class DispatchMetrics:
    """Counters for the dispatcher."""

    processed: int = 0
    dropped: int = 0
    dropped_by_reason: dict[str, int] = field(default_factory=dict)
    listener_errors: int = 0
    router_errors: int = 0

    def record_drop(self, reason: str) -> None:
        self.dropped += 1
        self.dropped_by_reason[reason] = self.dropped_by_reason.get(reason, 0) + 1


class EventDispatcher:
    """
    Validates inbound frames and fans events out to listeners.

    Usage:
        dispatcher = EventDispatcher(registry, router=session)
        result = dispatcher.handle('{"type": "message.new", ...}')
    """

    def __init__(
        self,
        registry: ListenerRegistry,
        router: EventRouterProtocol | None = None,
        max_frame_size: int | None = None,
    ):
        self._registry = registry
        self._router = router
        self._max_frame_size = max_frame_size or settings.max_message_size
        self._unknown_types = UnknownEventTypeTracker()
        self._metrics = DispatchMetrics()
        self._diagnostics: deque[Diagnostic] = deque(maxlen=MAX_DIAGNOSTICS)
        self._pending_tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> ListenerRegistry:
        return self._registry

    @property
    def metrics(self) -> DispatchMetrics:
        return self._metrics

    @property
    def diagnostics(self) -> list[Diagnostic]:
        """Most recent contained failures, oldest first."""
        return list(self._diagnostics)

    @property
    def unknown_types(self) -> UnknownEventTypeTracker:
        return self._unknown_types

    def set_router(self, router: EventRouterProtocol | None) -> None:
        self._router = router

    # =========================================================================
    # Inbound frames
    # =========================================================================

    def handle(self, raw_frame: str | bytes | dict[str, Any]) -> DispatchResult:
        """Process one frame from the transport. Never raises."""
        try:
            data = self._decode(raw_frame)
        except ValidationError as e:
            return self._drop(e.context.get("reason", DROP_INVALID_JSON), None, e.message)

        event_type = data.get("type")
        if not is_valid_event_type(event_type):
            return self._drop_unknown(event_type)

        if event_type in LOCAL_EVENT_TYPES:
            return self._drop(
                DROP_LOCAL_TYPE,
                event_type,
                "connection events are synthesized locally",
            )

        try:
            event = parse_event(data)
        except ValueError as e:
            return self._drop(DROP_INVALID_SHAPE, event_type, str(e))

        return self._dispatch(event)

    def emit_local(self, event: ChatEvent) -> DispatchResult:
        """Deliver a locally synthesized event. Skips transport-only checks."""
        return self._dispatch(event)

    def _decode(self, raw_frame: str | bytes | dict[str, Any]) -> dict[str, Any]:
        if isinstance(raw_frame, dict):
            return raw_frame

        # The limit counts bytes on the wire
        size = len(raw_frame.encode("utf-8")) if isinstance(raw_frame, str) else len(raw_frame)
        if size > self._max_frame_size:
            raise ValidationError(
                "Frame exceeds maximum size",
                size=size,
                max_size=self._max_frame_size,
                reason=DROP_OVERSIZE,
            )

        try:
            if isinstance(raw_frame, bytes):
                raw_frame = raw_frame.decode("utf-8")
            data = json.loads(raw_frame)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(
                "Frame is not valid JSON",
                detail=str(e),
                reason=DROP_INVALID_JSON,
            ) from e

        if not isinstance(data, dict):
            raise ValidationError(
                "Frame is not a JSON object",
                json_type=type(data).__name__,
                reason=DROP_INVALID_SHAPE,
            )
        return data

    def _drop_unknown(self, event_type: Any) -> DispatchResult:
        label = event_type if isinstance(event_type, str) else repr(event_type)
        is_first = self._unknown_types.record(label)
        if is_first:
            logger.warning(
                "Unknown event type received (first occurrence)",
                event_type=label,
                total_unknown_count=self._unknown_types.count,
            )
        return self._drop(DROP_UNKNOWN_TYPE, label, "event type not in catalog", log=False)

    def _drop(
        self,
        reason: str,
        event_type: str | None,
        detail: str,
        log: bool = True,
    ) -> DispatchResult:
        self._metrics.record_drop(reason)
        self._diagnostics.append(Diagnostic(kind=reason, event_type=event_type, detail=detail))
        dropped = self._metrics.dropped
        if log and (dropped == 1 or dropped % RealtimeConstants.DROP_LOG_INTERVAL == 0):
            logger.warning(
                "Dropping inbound frame",
                reason=reason,
                event_type=event_type,
                detail=detail,
                total_dropped=dropped,
            )
        return DispatchResult(dropped_reason=reason)

    # =========================================================================
    # Delivery
    # =========================================================================

    def _dispatch(self, event: ChatEvent) -> DispatchResult:
        result = DispatchResult(event=event)

        channel_delivery = False
        if self._router is not None:
            channel_delivery = self._apply_state(self._router.route, event)

        listeners = self._registry.listeners_for(event.type, GLOBAL_SCOPE)
        if channel_delivery and event.cid is not None:
            listeners += self._registry.listeners_for(event.type, event.cid)

        for listener in listeners:
            if self._invoke(listener, event):
                result.delivered += 1
            else:
                result.failed += 1

        if self._router is not None:
            try:
                self._router.finalize(event)
            except Exception as e:
                self._metrics.router_errors += 1
                logger.error(
                    "Error finalizing event",
                    event_type=event.type,
                    cid=event.cid,
                    error=str(e),
                    exc_info=True,
                )

        result.channel_delivery = channel_delivery
        self._metrics.processed += 1
        return result

    def deliver_deferred(
        self,
        event: ChatEvent,
        apply: Callable[[ChatEvent], Any],
    ) -> DispatchResult:
        """
        Finish an event whose store update the router deferred.

        Global listeners already ran when the event arrived. apply() runs
        with the same error isolation as route() and, like route(), returns
        True when channel listeners should see the event.
        """
        result = DispatchResult(event=event)
        if not self._apply_state(apply, event) or event.cid is None:
            return result

        result.channel_delivery = True
        for listener in self._registry.listeners_for(event.type, event.cid):
            if self._invoke(listener, event):
                result.delivered += 1
            else:
                result.failed += 1
        return result

    def _apply_state(self, apply: Callable[[ChatEvent], Any], event: ChatEvent) -> bool:
        try:
            return bool(apply(event))
        except Exception as e:
            self._metrics.router_errors += 1
            self._diagnostics.append(
                Diagnostic(kind="router_error", event_type=event.type, detail=str(e))
            )
            logger.error(
                "Error applying event to state",
                event_type=event.type,
                cid=event.cid,
                error=str(e),
                exc_info=True,
            )
            return False

    def _invoke(self, listener: Listener, event: ChatEvent) -> bool:
        """Run one listener; failures are isolated and recorded."""
        try:
            outcome = listener.callback(event)
        except Exception as e:
            self._record_listener_error(listener, event, e)
            return False

        if inspect.isawaitable(outcome):
            self._schedule(listener, event, outcome)
        return True

    def _schedule(self, listener: Listener, event: ChatEvent, awaitable: Any) -> None:
        """Run a coroutine listener as a fire-and-forget task."""
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError as e:
            # No running loop: the coroutine can never run
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._record_listener_error(listener, event, e)
            return

        self._pending_tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending_tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                self._record_listener_error(listener, event, error)

        task.add_done_callback(_done)

    def _record_listener_error(
        self,
        listener: Listener,
        event: ChatEvent,
        error: BaseException,
    ) -> None:
        self._metrics.listener_errors += 1
        self._diagnostics.append(
            Diagnostic(
                kind="listener_error",
                event_type=event.type,
                detail=f"{type(error).__name__}: {error}",
            )
        )
        logger.warning(
            "Event listener failed",
            event_type=event.type,
            listener_id=listener.listener_id,
            scope=listener.scope,
            error=str(error),
        )

    async def drain(self) -> None:
        """Wait until every scheduled coroutine listener has finished."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    def cancel_pending(self) -> int:
        """Cancel scheduled coroutine listeners. Returns how many were cancelled."""
        pending = [task for task in self._pending_tasks if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    def get_stats(self) -> dict[str, int | float | str]:
        return {
            "processed": self._metrics.processed,
            "dropped": self._metrics.dropped,
            "listener_errors": self._metrics.listener_errors,
            "router_errors": self._metrics.router_errors,
            "unknown_event_types": self._unknown_types.count,
            "pending_listener_tasks": len(self._pending_tasks),
            "listeners": self._registry.count(),
        }
