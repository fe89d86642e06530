"""
Event Value Objects for the realtime client.

The event vocabulary is closed: every frame is checked against
``VALID_EVENT_TYPES`` before it can reach state-mutating code, and only
known types are turned into one of the typed variants below. Each variant
carries only the fields relevant to its event family, so state code reads
attributes instead of probing dicts.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Self

from chat_common.config.logging import get_logger
from chat_realtime.components.core.constants import RealtimeConstants, build_cid, split_cid
from chat_realtime.components.events.timestamps import normalize_record

logger = get_logger(__name__)


class EventType(str, Enum):
    """
    Valid event types for realtime frames.

    Adding a type is a release-time change: the catalog is never extended
    at runtime.
    """

    # Channel lifecycle
    CHANNEL_CREATED = "channel.created"
    CHANNEL_DELETED = "channel.deleted"
    CHANNEL_HIDDEN = "channel.hidden"
    CHANNEL_MUTED = "channel.muted"
    CHANNEL_TRUNCATED = "channel.truncated"
    CHANNEL_UNMUTED = "channel.unmuted"
    CHANNEL_UPDATED = "channel.updated"
    CHANNEL_VISIBLE = "channel.visible"

    # Transport liveness
    HEALTH_CHECK = "health.check"

    # Membership
    MEMBER_ADDED = "member.added"
    MEMBER_REMOVED = "member.removed"
    MEMBER_UPDATED = "member.updated"

    # Messages
    MESSAGE_DELETED = "message.deleted"
    MESSAGE_NEW = "message.new"
    MESSAGE_READ = "message.read"
    MESSAGE_UPDATED = "message.updated"

    # Notifications for the connected user
    NOTIFICATION_ADDED_TO_CHANNEL = "notification.added_to_channel"
    NOTIFICATION_CHANNEL_DELETED = "notification.channel_deleted"
    NOTIFICATION_CHANNEL_MUTES_UPDATED = "notification.channel_mutes_updated"
    NOTIFICATION_CHANNEL_TRUNCATED = "notification.channel_truncated"
    NOTIFICATION_INVITE_ACCEPTED = "notification.invite_accepted"
    NOTIFICATION_INVITE_REJECTED = "notification.invite_rejected"
    NOTIFICATION_INVITED = "notification.invited"
    NOTIFICATION_MARK_READ = "notification.mark_read"
    NOTIFICATION_MESSAGE_NEW = "notification.message_new"
    NOTIFICATION_MUTES_UPDATED = "notification.mutes_updated"
    NOTIFICATION_REMOVED_FROM_CHANNEL = "notification.removed_from_channel"

    # Reactions
    REACTION_DELETED = "reaction.deleted"
    REACTION_NEW = "reaction.new"
    REACTION_UPDATED = "reaction.updated"

    # Typing indicators
    TYPING_START = "typing.start"
    TYPING_STOP = "typing.stop"

    # Users
    USER_BANNED = "user.banned"
    USER_DELETED = "user.deleted"
    USER_PRESENCE_CHANGED = "user.presence.changed"
    USER_UNBANNED = "user.unbanned"
    USER_UPDATED = "user.updated"
    USER_WATCHING_START = "user.watching.start"
    USER_WATCHING_STOP = "user.watching.stop"

    # Synthesized locally by the connection manager
    CONNECTION_CHANGED = "connection.changed"
    CONNECTION_RECOVERED = "connection.recovered"


# Set for O(1) lookup
VALID_EVENT_TYPES: frozenset[str] = frozenset(e.value for e in EventType)


def is_valid_event_type(event_type: object) -> bool:
    """Pure lookup against the event catalog. Non-strings are never valid."""
    return isinstance(event_type, str) and event_type in VALID_EVENT_TYPES


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {type(value).__name__}")
    return value


def _optional_dict(data: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object, got {type(value).__name__}")
    return value


def _resolve_channel(data: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
    """
    Work out (cid, channel_type, channel_id) from whichever fields the frame has.

    Frames carry either ``cid``, the ``channel_type``/``channel_id`` pair,
    or both; a nested ``channel`` object is the last resort.
    """
    cid = data.get("cid")
    channel_type = data.get("channel_type")
    channel_id = data.get("channel_id")

    if cid is None and channel_type is None and channel_id is None:
        channel = data.get("channel")
        if isinstance(channel, dict):
            cid = channel.get("cid")
            channel_type = channel.get("type")
            channel_id = channel.get("id")

    if cid is not None:
        if not isinstance(cid, str):
            raise ValueError(f"cid must be a string, got {type(cid).__name__}")
        cid_type, cid_id = split_cid(cid)
        if channel_type is not None and channel_type != cid_type:
            raise ValueError(f"channel_type {channel_type!r} does not match cid {cid!r}")
        if channel_id is not None and channel_id != cid_id:
            raise ValueError(f"channel_id {channel_id!r} does not match cid {cid!r}")
        return cid, cid_type, cid_id

    if channel_type is not None and channel_id is not None:
        if not isinstance(channel_type, str) or not isinstance(channel_id, str):
            raise ValueError("channel_type and channel_id must be strings")
        return build_cid(channel_type, channel_id), channel_type, channel_id

    return None, None, None


@dataclass(frozen=True, slots=True)
class ChatEvent:
    """
    Immutable Value Object for one realtime event.

    All validation happens in from_dict(); an instance always carries a
    type from the catalog and normalised timestamps.

    Attributes:
        type: Event type string, member of VALID_EVENT_TYPES.
        created_at: Server time of the event, millisecond-truncated UTC.
        received_at: Local time the frame was handled.
        cid: Channel id (``<type>:<id>``) when the event is channel scoped.
        channel_type: Channel type part of cid.
        channel_id: Channel id part of cid.
        user: Acting user, timestamps normalised.
        raw_data: Normalised copy of the whole frame for forward compatibility.
    """

    type: str
    created_at: datetime | None = None
    received_at: datetime | None = None
    cid: str | None = None
    channel_type: str | None = None
    channel_id: str | None = None
    user: dict[str, Any] | None = None
    raw_data: dict[str, Any] = field(default_factory=dict, repr=False)

    # Event types handled by this variant
    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def from_dict(cls, data: dict[str, Any], received_at: datetime | None = None) -> Self:
        """
        Build the event from a decoded frame.

        Raises:
            ValueError: If the frame is not an object, has an unknown type,
                or any field has the wrong shape.
        """
        if not isinstance(data, dict):
            raise ValueError("Event must be a JSON object")

        event_type = data.get("type")
        if not is_valid_event_type(event_type):
            raise ValueError(f"Unknown event type: {event_type!r}")
        if cls.EVENT_TYPES and event_type not in cls.EVENT_TYPES:
            raise ValueError(f"{cls.__name__} cannot carry {event_type!r}")

        normalized = normalize_record(copy.deepcopy(data))
        cid, channel_type, channel_id = _resolve_channel(normalized)

        return cls(
            type=event_type,
            created_at=normalized.get("created_at"),
            received_at=received_at or datetime.now(timezone.utc),
            cid=cid,
            channel_type=channel_type,
            channel_id=channel_id,
            user=_optional_dict(normalized, "user"),
            raw_data=normalized,
            **cls._variant_fields(normalized),
        )

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Extra constructor arguments of the variant."""
        return {}

    @property
    def user_id(self) -> str | None:
        return self.user.get("id") if self.user else None

    @property
    def is_channel_scoped(self) -> bool:
        return self.cid is not None

    def get_raw_data(self) -> MappingProxyType:
        """Immutable view of the normalised frame."""
        return MappingProxyType(self.raw_data)

    def to_dict(self) -> dict[str, Any]:
        """Mutable deep copy of the normalised frame."""
        return copy.deepcopy(self.raw_data)


@dataclass(frozen=True, slots=True)
class MessageEvent(ChatEvent):
    """message.new / message.updated / message.deleted"""

    message: dict[str, Any] | None = None
    watcher_count: int | None = None
    total_unread_count: int | None = None
    unread_channels: int | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.MESSAGE_NEW.value,
        EventType.MESSAGE_UPDATED.value,
        EventType.MESSAGE_DELETED.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "message": _optional_dict(data, "message"),
            "watcher_count": _optional_int(data, "watcher_count"),
            "total_unread_count": _optional_int(data, "total_unread_count"),
            "unread_channels": _optional_int(data, "unread_channels"),
        }

    @property
    def message_id(self) -> str | None:
        return self.message.get("id") if self.message else None


@dataclass(frozen=True, slots=True)
class ReactionEvent(ChatEvent):
    """reaction.new / reaction.updated / reaction.deleted"""

    message: dict[str, Any] | None = None
    reaction: dict[str, Any] | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.REACTION_NEW.value,
        EventType.REACTION_UPDATED.value,
        EventType.REACTION_DELETED.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "message": _optional_dict(data, "message"),
            "reaction": _optional_dict(data, "reaction"),
        }

    @property
    def message_id(self) -> str | None:
        if self.message:
            return self.message.get("id")
        if self.reaction:
            return self.reaction.get("message_id")
        return None


@dataclass(frozen=True, slots=True)
class MemberEvent(ChatEvent):
    """member.added / member.removed / member.updated"""

    member: dict[str, Any] | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.MEMBER_ADDED.value,
        EventType.MEMBER_REMOVED.value,
        EventType.MEMBER_UPDATED.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {"member": _optional_dict(data, "member")}

    @property
    def member_user_id(self) -> str | None:
        if self.member:
            member_user = self.member.get("user")
            if isinstance(member_user, dict) and member_user.get("id"):
                return member_user["id"]
            if self.member.get("user_id"):
                return self.member["user_id"]
        return self.user_id


@dataclass(frozen=True, slots=True)
class ReadEvent(ChatEvent):
    """message.read / notification.mark_read"""

    total_unread_count: int | None = None
    unread_channels: int | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.MESSAGE_READ.value,
        EventType.NOTIFICATION_MARK_READ.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "total_unread_count": _optional_int(data, "total_unread_count"),
            "unread_channels": _optional_int(data, "unread_channels"),
        }


@dataclass(frozen=True, slots=True)
class WatcherEvent(ChatEvent):
    """user.watching.start / user.watching.stop"""

    watcher_count: int | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.USER_WATCHING_START.value,
        EventType.USER_WATCHING_STOP.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {"watcher_count": _optional_int(data, "watcher_count")}


@dataclass(frozen=True, slots=True)
class TypingEvent(ChatEvent):
    """typing.start / typing.stop"""

    parent_id: str | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.TYPING_START.value,
        EventType.TYPING_STOP.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {"parent_id": data.get("parent_id")}


@dataclass(frozen=True, slots=True)
class ChannelEvent(ChatEvent):
    """channel.* lifecycle events"""

    channel: dict[str, Any] | None = None
    clear_history: bool = False

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.CHANNEL_CREATED.value,
        EventType.CHANNEL_DELETED.value,
        EventType.CHANNEL_HIDDEN.value,
        EventType.CHANNEL_MUTED.value,
        EventType.CHANNEL_TRUNCATED.value,
        EventType.CHANNEL_UNMUTED.value,
        EventType.CHANNEL_UPDATED.value,
        EventType.CHANNEL_VISIBLE.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "channel": _optional_dict(data, "channel"),
            "clear_history": bool(data.get("clear_history", False)),
        }


@dataclass(frozen=True, slots=True)
class UserEvent(ChatEvent):
    """user.* events that are not watcher events"""

    reason: str | None = None
    expiration: datetime | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.USER_BANNED.value,
        EventType.USER_DELETED.value,
        EventType.USER_PRESENCE_CHANGED.value,
        EventType.USER_UNBANNED.value,
        EventType.USER_UPDATED.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        expiration = data.get("expiration")
        return {
            "reason": data.get("reason"),
            "expiration": expiration if isinstance(expiration, datetime) else None,
        }

    @property
    def online(self) -> bool | None:
        return self.user.get("online") if self.user else None


@dataclass(frozen=True, slots=True)
class NotificationEvent(ChatEvent):
    """notification.* events addressed to the connected user"""

    channel: dict[str, Any] | None = None
    member: dict[str, Any] | None = None
    message: dict[str, Any] | None = None
    me: dict[str, Any] | None = None
    total_unread_count: int | None = None
    unread_channels: int | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.NOTIFICATION_ADDED_TO_CHANNEL.value,
        EventType.NOTIFICATION_CHANNEL_DELETED.value,
        EventType.NOTIFICATION_CHANNEL_MUTES_UPDATED.value,
        EventType.NOTIFICATION_CHANNEL_TRUNCATED.value,
        EventType.NOTIFICATION_INVITE_ACCEPTED.value,
        EventType.NOTIFICATION_INVITE_REJECTED.value,
        EventType.NOTIFICATION_INVITED.value,
        EventType.NOTIFICATION_MESSAGE_NEW.value,
        EventType.NOTIFICATION_MUTES_UPDATED.value,
        EventType.NOTIFICATION_REMOVED_FROM_CHANNEL.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "channel": _optional_dict(data, "channel"),
            "member": _optional_dict(data, "member"),
            "message": _optional_dict(data, "message"),
            "me": _optional_dict(data, "me"),
            "total_unread_count": _optional_int(data, "total_unread_count"),
            "unread_channels": _optional_int(data, "unread_channels"),
        }


@dataclass(frozen=True, slots=True)
class HealthCheckEvent(ChatEvent):
    """
    health.check

    The first health check after the socket opens is the handshake reply:
    it carries the server connection id, the connected user and, on a
    reconnect the backend could replay, ``recovered: true``.
    """

    connection_id: str | None = None
    me: dict[str, Any] | None = None
    recovered: bool = False

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({EventType.HEALTH_CHECK.value})

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "connection_id": data.get("connection_id"),
            "me": _optional_dict(data, "me"),
            "recovered": bool(data.get("recovered", False)),
        }


@dataclass(frozen=True, slots=True)
class ConnectionEvent(ChatEvent):
    """connection.changed / connection.recovered, synthesized locally"""

    online: bool = False
    connection_id: int | None = None

    EVENT_TYPES: ClassVar[frozenset[str]] = frozenset({
        EventType.CONNECTION_CHANGED.value,
        EventType.CONNECTION_RECOVERED.value,
    })

    @classmethod
    def _variant_fields(cls, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "online": bool(data.get("online", False)),
            "connection_id": _optional_int(data, "connection_id"),
        }

    @classmethod
    def local(cls, event_type: EventType, online: bool, connection_id: int | None) -> Self:
        """Build a locally synthesized connection event."""
        now = datetime.now(timezone.utc)
        return cls.from_dict(
            {
                "type": event_type.value,
                "online": online,
                "connection_id": connection_id,
                "created_at": now,
            },
            received_at=now,
        )


_VARIANTS: tuple[type[ChatEvent], ...] = (
    MessageEvent,
    ReactionEvent,
    MemberEvent,
    ReadEvent,
    WatcherEvent,
    TypingEvent,
    ChannelEvent,
    UserEvent,
    NotificationEvent,
    HealthCheckEvent,
    ConnectionEvent,
)

# Every catalog entry maps to exactly one variant
EVENT_CLASSES: MappingProxyType = MappingProxyType({
    event_type: variant
    for variant in _VARIANTS
    for event_type in variant.EVENT_TYPES
})


def parse_event(data: Any, received_at: datetime | None = None) -> ChatEvent:
    """
    Build the typed variant for a decoded frame.

    Raises:
        ValueError: If the frame fails validation.
    """
    if not isinstance(data, dict):
        raise ValueError("Event must be a JSON object")
    event_type = data.get("type")
    if not is_valid_event_type(event_type):
        raise ValueError(f"Unknown event type: {event_type!r}")
    return EVENT_CLASSES[event_type].from_dict(data, received_at=received_at)


class UnknownEventTypeTracker:
    """
    Counts frames dropped for carrying a type outside the catalog.

    Bounded: once ``max_types`` distinct types are tracked the oldest one
    is forgotten (dict insertion order gives FIFO eviction).
    """

    def __init__(self, max_types: int = RealtimeConstants.MAX_UNKNOWN_EVENT_TYPES):
        self._max_types = max_types
        # type -> times seen
        self._seen: dict[str, int] = {}
        self._count = 0

    @property
    def count(self) -> int:
        """Total number of frames with an unknown type."""
        return self._count

    @property
    def types_seen(self) -> list[str]:
        """Distinct unknown types currently tracked, oldest first."""
        return list(self._seen.keys())

    def record(self, event_type: str) -> bool:
        """
        Record an unknown type.

        Returns:
            True the first time a type is seen (or seen again after eviction).
        """
        self._count += 1
        if event_type in self._seen:
            self._seen[event_type] += 1
            return False

        if len(self._seen) >= self._max_types:
            oldest = next(iter(self._seen))
            del self._seen[oldest]
            logger.debug(
                "Unknown event type tracker full, forgetting oldest",
                evicted=oldest,
                max_types=self._max_types,
            )
        self._seen[event_type] = 1
        return True

    def get_metrics(self) -> dict[str, Any]:
        return {
            "unknown_event_types_count": self._count,
            "unknown_event_types_seen": list(self._seen.keys()),
            "type_counts": dict(self._seen),
            "max_tracked_types": self._max_types,
        }

    def reset(self) -> dict[str, Any]:
        """Reset tracker and return previous metrics."""
        metrics = self.get_metrics()
        self._seen.clear()
        self._count = 0
        return metrics
