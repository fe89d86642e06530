"""
Event handling components.

Event vocabulary, typed events, timestamp normalisation, listener
registry and dispatcher.
"""

from chat_realtime.components.events.types import (
    EVENT_CLASSES,
    VALID_EVENT_TYPES,
    ChannelEvent,
    ChatEvent,
    ConnectionEvent,
    EventType,
    HealthCheckEvent,
    MemberEvent,
    MessageEvent,
    NotificationEvent,
    ReactionEvent,
    ReadEvent,
    TypingEvent,
    UnknownEventTypeTracker,
    UserEvent,
    WatcherEvent,
    is_valid_event_type,
    parse_event,
)
from chat_realtime.components.events.timestamps import (
    format_timestamp,
    normalize_timestamp,
    parse_timestamp,
)
from chat_realtime.components.events.listeners import (
    Listener,
    ListenerRegistry,
    Subscription,
)
from chat_realtime.components.events.dispatcher import (
    DispatchResult,
    EventDispatcher,
    EventRouterProtocol,
)

__all__ = [
    # Vocabulary and event types
    "EVENT_CLASSES",
    "VALID_EVENT_TYPES",
    "ChannelEvent",
    "ChatEvent",
    "ConnectionEvent",
    "EventType",
    "HealthCheckEvent",
    "MemberEvent",
    "MessageEvent",
    "NotificationEvent",
    "ReactionEvent",
    "ReadEvent",
    "TypingEvent",
    "UnknownEventTypeTracker",
    "UserEvent",
    "WatcherEvent",
    "is_valid_event_type",
    "parse_event",
    # Timestamps
    "format_timestamp",
    "normalize_timestamp",
    "parse_timestamp",
    # Listeners
    "Listener",
    "ListenerRegistry",
    "Subscription",
    # Dispatcher
    "DispatchResult",
    "EventDispatcher",
    "EventRouterProtocol",
]
