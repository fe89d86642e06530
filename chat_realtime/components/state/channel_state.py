"""
Channel State Store.

One store per watched channel, keyed by cid. apply() is a pure in-memory
transform of one normalised event; it never awaits, so the receive loop
applies events strictly one at a time.

Invariants:
- message.new is idempotent by message id.
- Messages are ordered by created_at, ties by arrival. Only inserts sort;
  updates, reactions and deletes replace an entry in place.
- watcher_count comes from the event payload, never from len(watchers),
  because the synced watcher list is capped for large channels.
- Read cursors only move forward.
- channel.updated only replaces the config if it is newer than the held one.
- A deleted channel is terminal and ignores every later event.
"""

from __future__ import annotations

import bisect
import dataclasses
import itertools
from collections.abc import Iterator
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable

from chat_common.config.logging import get_logger
from chat_common.utils.exceptions import StateConflictError
from chat_realtime.components.core.constants import build_cid
from chat_realtime.components.events.timestamps import normalize_record, normalize_timestamp
from chat_realtime.components.events.types import (
    ChannelEvent,
    ChatEvent,
    EventType,
    MemberEvent,
    MessageEvent,
    NotificationEvent,
    ReactionEvent,
    WatcherEvent,
)
from chat_realtime.components.state.models import (
    ChannelSnapshot,
    Member,
    Message,
    ReadState,
)
from chat_realtime.components.state.users import User, UserCache

logger = get_logger(__name__)


class MessageList:
    """
    Messages ordered by (created_at, arrival) with an id index.

    Replacing an entry keeps its sort key, so an edit never moves a message.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._index: dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def get(self, message_id: str) -> Message | None:
        return self._index.get(message_id)

    def insert(self, message: Message) -> bool:
        """Insert in sort order. Returns False if the id is already present."""
        if message.id in self._index:
            return False
        bisect.insort(self._messages, message, key=lambda m: m.sort_key)
        self._index[message.id] = message
        return True

    def replace(self, message: Message) -> Message | None:
        """
        Swap the entry with the same id, keeping its position.

        Returns the stored message, or None if the id is unknown.
        """
        current = self._index.get(message.id)
        if current is None:
            return None
        stored = dataclasses.replace(
            message, created_at=current.created_at, arrival=current.arrival
        )
        position = self._position(current)
        self._messages[position] = stored
        self._index[message.id] = stored
        return stored

    def remove(self, message_id: str) -> Message | None:
        current = self._index.pop(message_id, None)
        if current is not None:
            del self._messages[self._position(current)]
        return current

    def clear(self) -> None:
        self._messages.clear()
        self._index.clear()

    def as_tuple(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def _position(self, message: Message) -> int:
        # Sort keys are unique because arrival is
        return bisect.bisect_left(self._messages, message.sort_key, key=lambda m: m.sort_key)


@dataclasses.dataclass(frozen=True, slots=True)
class StateReplacement:
    """A channel's state built from a query response, ready to be swapped in."""

    cid: str
    arrivals: Iterator[int]
    messages: MessageList
    replies: dict[str, MessageList]
    members: dict[str, Member]
    member_count: int
    watchers: dict[str, User]
    watcher_count: int
    read: dict[str, ReadState]
    unread_count: int
    data: dict[str, Any]
    last_message_at: datetime | None
    hidden: bool
    muted: bool | None


class ChannelState:
    """
    Local model of one channel.

    Usage:
        state = ChannelState("messaging", "general", users, own_user_id="jane")
        state.replace_from_response(query_response)
        state.apply(event)
        snapshot = state.snapshot()
    """

    # Events that carry a member record
    MEMBER_EVENTS = frozenset({
        EventType.MEMBER_ADDED.value,
        EventType.MEMBER_UPDATED.value,
        EventType.NOTIFICATION_ADDED_TO_CHANNEL.value,
        EventType.NOTIFICATION_INVITED.value,
        EventType.NOTIFICATION_INVITE_ACCEPTED.value,
        EventType.NOTIFICATION_INVITE_REJECTED.value,
    })

    # Events after which the channel history is empty
    TRUNCATE_EVENTS = frozenset({
        EventType.CHANNEL_TRUNCATED.value,
        EventType.NOTIFICATION_CHANNEL_TRUNCATED.value,
    })

    # Events that make the store terminal
    DELETE_EVENTS = frozenset({
        EventType.CHANNEL_DELETED.value,
        EventType.NOTIFICATION_CHANNEL_DELETED.value,
    })

    def __init__(
        self,
        channel_type: str,
        channel_id: str,
        users: UserCache,
        own_user_id: str | None = None,
    ):
        self._type = channel_type
        self._id = channel_id
        self._cid = build_cid(channel_type, channel_id)
        self._users = users
        self._own_user_id = own_user_id
        self._arrivals = itertools.count()

        self._data: dict[str, Any] = {}
        self._config_updated_at: datetime | None = None
        self._messages = MessageList()
        self._replies: dict[str, MessageList] = {}
        self._members: dict[str, Member] = {}
        self._member_count = 0
        self._watchers: dict[str, User] = {}
        self._watcher_count = 0
        self._read: dict[str, ReadState] = {}
        self._typing: dict[str, datetime] = {}
        self._unread_count = 0
        self._muted = False
        self._hidden = False
        self._terminal = False
        self._truncated_at: datetime | None = None
        self._last_message_at: datetime | None = None
        self._initialized = False

        self._version = 0
        self._conflicts = 0

        self._handlers: dict[str, Callable[[Any], bool]] = {
            EventType.MESSAGE_NEW.value: self._on_message_new,
            EventType.MESSAGE_UPDATED.value: self._on_message_updated,
            EventType.MESSAGE_DELETED.value: self._on_message_deleted,
            EventType.REACTION_NEW.value: self._on_reaction,
            EventType.REACTION_UPDATED.value: self._on_reaction,
            EventType.REACTION_DELETED.value: self._on_reaction,
            EventType.MEMBER_REMOVED.value: self._on_member_removed,
            EventType.NOTIFICATION_REMOVED_FROM_CHANNEL.value: self._on_member_removed,
            EventType.USER_WATCHING_START.value: self._on_watching_start,
            EventType.USER_WATCHING_STOP.value: self._on_watching_stop,
            EventType.MESSAGE_READ.value: self._on_read,
            EventType.NOTIFICATION_MARK_READ.value: self._on_read,
            EventType.TYPING_START.value: self._on_typing_start,
            EventType.TYPING_STOP.value: self._on_typing_stop,
            EventType.CHANNEL_UPDATED.value: self._on_channel_updated,
            EventType.CHANNEL_HIDDEN.value: self._on_channel_hidden,
            EventType.CHANNEL_VISIBLE.value: self._on_channel_visible,
            EventType.CHANNEL_MUTED.value: self._on_channel_muted,
            EventType.CHANNEL_UNMUTED.value: self._on_channel_unmuted,
        }
        for event_type in self.MEMBER_EVENTS:
            self._handlers[event_type] = self._on_member_upsert
        for event_type in self.TRUNCATE_EVENTS:
            self._handlers[event_type] = self._on_truncated
        for event_type in self.DELETE_EVENTS:
            self._handlers[event_type] = self._on_deleted

    # =========================================================================
    # Read access
    # =========================================================================

    @property
    def cid(self) -> str:
        return self._cid

    @property
    def type(self) -> str:
        return self._type

    @property
    def id(self) -> str:
        return self._id

    @property
    def own_user_id(self) -> str | None:
        return self._own_user_id

    @own_user_id.setter
    def own_user_id(self, user_id: str | None) -> None:
        self._own_user_id = user_id

    @property
    def data(self) -> MappingProxyType:
        return MappingProxyType(self._data)

    @property
    def config_updated_at(self) -> datetime | None:
        return self._config_updated_at

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages.as_tuple()

    def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is not None:
            return message
        for thread in self._replies.values():
            message = thread.get(message_id)
            if message is not None:
                return message
        return None

    def replies(self, parent_id: str) -> tuple[Message, ...]:
        thread = self._replies.get(parent_id)
        return thread.as_tuple() if thread else ()

    @property
    def members(self) -> MappingProxyType[str, Member]:
        return MappingProxyType(self._members)

    @property
    def member_count(self) -> int:
        return self._member_count

    @property
    def watchers(self) -> MappingProxyType[str, User]:
        return MappingProxyType(self._watchers)

    @property
    def watcher_count(self) -> int:
        return self._watcher_count

    @property
    def read(self) -> MappingProxyType[str, ReadState]:
        return MappingProxyType(self._read)

    @property
    def typing(self) -> MappingProxyType[str, datetime]:
        return MappingProxyType(self._typing)

    @property
    def unread_count(self) -> int:
        return self._unread_count

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def hidden(self) -> bool:
        return self._hidden

    @property
    def terminal(self) -> bool:
        return self._terminal

    @property
    def initialized(self) -> bool:
        """Whether a server response has been loaded at least once."""
        return self._initialized

    @property
    def version(self) -> int:
        """Incremented on every change."""
        return self._version

    @property
    def conflicts(self) -> int:
        """Events dropped because they referenced unknown local records."""
        return self._conflicts

    def snapshot(self) -> ChannelSnapshot:
        return ChannelSnapshot(
            cid=self._cid,
            type=self._type,
            id=self._id,
            data=MappingProxyType(dict(self._data)),
            messages=self._messages.as_tuple(),
            members=MappingProxyType(dict(self._members)),
            watchers=MappingProxyType(dict(self._watchers)),
            watcher_count=self._watcher_count,
            member_count=self._member_count,
            read=MappingProxyType(dict(self._read)),
            typing=MappingProxyType(dict(self._typing)),
            unread_count=self._unread_count,
            muted=self._muted,
            hidden=self._hidden,
            terminal=self._terminal,
            config_updated_at=self._config_updated_at,
            truncated_at=self._truncated_at,
            last_message_at=self._last_message_at,
            version=self._version,
        )

    # =========================================================================
    # Mutation entry points
    # =========================================================================

    def apply(self, event: ChatEvent) -> bool:
        """
        Apply one normalised event.

        Returns True if the store changed. Events for another channel, event
        types without a channel transition and events after deletion are
        ignored. Events referencing unknown messages are counted as
        conflicts and dropped.
        """
        if self._terminal:
            return False
        if event.cid != self._cid:
            logger.debug("Event for another channel ignored", cid=self._cid, event_cid=event.cid)
            return False

        handler = self._handlers.get(event.type)
        if handler is None:
            return False

        try:
            changed = handler(event)
        except StateConflictError:
            self._conflicts += 1
            return False

        if changed:
            self._version += 1
        return changed

    def replace_from_response(self, response: dict[str, Any]) -> None:
        """
        Replace the whole store with a channel query response.

        Nothing is merged with the previous content. The new state is built
        completely before it is swapped in, so a malformed response leaves
        the store untouched.

        Raises:
            ValueError: If the response describes another channel or holds
                malformed records.
        """
        self.commit_replacement(self.prepare_replacement(response))

    def prepare_replacement(self, response: dict[str, Any]) -> StateReplacement:
        """
        Build the state a response describes without touching the store.

        Raises:
            ValueError: If the response describes another channel or holds
                malformed records.
        """
        response = normalize_record(response)
        channel = dict(response.get("channel") or {})
        channel_cid = channel.get("cid")
        if channel_cid is not None and channel_cid != self._cid:
            raise ValueError(f"Response for {channel_cid} cannot replace {self._cid}")

        arrivals = itertools.count()
        messages = MessageList()
        replies: dict[str, MessageList] = {}
        for record in response.get("messages") or []:
            message = Message.from_record(record, self._users, next(arrivals))
            if message.is_thread_reply:
                replies.setdefault(message.parent_id, MessageList()).insert(message)
            else:
                messages.insert(message)

        members: dict[str, Member] = {}
        for record in response.get("members") or []:
            member = Member.from_record(record, self._users)
            members[member.user_id] = member

        watchers: dict[str, User] = {}
        for record in response.get("watchers") or []:
            watcher = self._users.resolve(record)
            if watcher is not None:
                watchers[watcher.id] = watcher

        read: dict[str, ReadState] = {}
        for record in response.get("read") or []:
            read_state = self._read_from_record(record)
            if read_state is not None:
                read[read_state.user_id] = read_state

        watcher_count = response.get("watcher_count")
        member_count = channel.get("member_count")
        own_read = read.get(self._own_user_id) if self._own_user_id else None
        membership = response.get("membership")
        channel.pop("members", None)

        return StateReplacement(
            cid=self._cid,
            arrivals=arrivals,
            messages=messages,
            replies=replies,
            members=members,
            member_count=member_count if isinstance(member_count, int) else len(members),
            watchers=watchers,
            watcher_count=watcher_count if isinstance(watcher_count, int) else len(watchers),
            read=read,
            unread_count=own_read.unread_messages if own_read else 0,
            data=channel,
            last_message_at=normalize_timestamp(channel.get("last_message_at")),
            hidden=bool(response.get("hidden", False)),
            muted=(
                bool(membership["muted"])
                if isinstance(membership, dict) and "muted" in membership
                else None
            ),
        )

    def commit_replacement(self, replacement: StateReplacement) -> None:
        """Swap in a state built by prepare_replacement(). Never raises for a matching cid."""
        if replacement.cid != self._cid:
            raise ValueError(f"Replacement for {replacement.cid} cannot replace {self._cid}")

        channel = replacement.data
        self._arrivals = replacement.arrivals
        self._messages = replacement.messages
        self._replies = replacement.replies
        self._members = replacement.members
        self._member_count = replacement.member_count
        self._watchers = replacement.watchers
        self._watcher_count = replacement.watcher_count
        self._read = replacement.read
        self._typing = {}
        self._unread_count = replacement.unread_count
        self._data = channel
        self._config_updated_at = normalize_timestamp(channel.get("updated_at"))
        self._truncated_at = normalize_timestamp(channel.get("truncated_at"))
        self._last_message_at = replacement.last_message_at or self._latest_created_at()
        self._hidden = replacement.hidden
        if replacement.muted is not None:
            self._muted = replacement.muted
        self._terminal = channel.get("deleted_at") is not None
        self._initialized = True
        self._version += 1

    def set_muted(self, muted: bool) -> None:
        if muted != self._muted:
            self._muted = muted
            self._version += 1

    def mark_terminal(self) -> None:
        if not self._terminal:
            self._terminal = True
            self._version += 1

    # =========================================================================
    # Messages
    # =========================================================================

    def _list_for(self, message: Message, create: bool = False) -> MessageList | None:
        if not message.is_thread_reply:
            return self._messages
        if create:
            return self._replies.setdefault(message.parent_id, MessageList())
        return self._replies.get(message.parent_id)

    def _message_from(self, record: dict[str, Any] | None) -> Message | None:
        if record is None:
            return None
        return Message.from_record(record, self._users, next(self._arrivals))

    def _on_message_new(self, event: MessageEvent) -> bool:
        message = self._message_from(event.message)
        if message is None:
            return False

        if event.watcher_count is not None:
            self._watcher_count = event.watcher_count

        if not self._list_for(message, create=True).insert(message):
            return False

        if message.is_thread_reply:
            return True

        if message.created_at and (
            self._last_message_at is None or message.created_at > self._last_message_at
        ):
            self._last_message_at = message.created_at

        sender = message.user_id
        if sender is not None and message.created_at is not None:
            # The sender has read everything up to their own message
            self._advance_read(ReadState(user_id=sender, last_read=message.created_at))
        if sender != self._own_user_id and not self._muted and not message.data.get("silent"):
            self._unread_count += 1
        return True

    def _replace_message(self, event: ChatEvent, record: dict[str, Any] | None) -> bool:
        message = self._message_from(record)
        if message is None:
            return False
        target = self._list_for(message)
        if target is None or target.replace(message) is None:
            raise StateConflictError(
                "Message not found in channel",
                event_type=event.type,
                cid=self._cid,
                message_id=message.id,
            )
        return True

    def _on_message_updated(self, event: MessageEvent) -> bool:
        return self._replace_message(event, event.message)

    def _on_message_deleted(self, event: MessageEvent) -> bool:
        record = event.message
        if record is None:
            return False

        if event.raw_data.get("hard_delete"):
            message_id = record.get("id")
            removed = self._messages.remove(message_id)
            if removed is None:
                for thread in self._replies.values():
                    removed = thread.remove(message_id)
                    if removed is not None:
                        break
            return removed is not None

        tombstone = {**record, "type": "deleted"}
        if tombstone.get("deleted_at") is None:
            tombstone["deleted_at"] = event.created_at or event.received_at
        return self._replace_message(event, tombstone)

    def _on_reaction(self, event: ReactionEvent) -> bool:
        # The event carries the whole message with refreshed reaction data
        return self._replace_message(event, event.message)

    # =========================================================================
    # Members and watchers
    # =========================================================================

    def _on_member_upsert(self, event: MemberEvent | NotificationEvent) -> bool:
        record = event.member
        if record is None:
            return False
        member = Member.from_record(record, self._users)
        current = self._members.get(member.user_id)
        if current is None:
            self._members[member.user_id] = member
            self._member_count += 1
        else:
            self._members[member.user_id] = current.merge(record, self._users)
        return True

    def _on_member_removed(self, event: MemberEvent | NotificationEvent) -> bool:
        record = event.member
        if record is not None:
            user_id = Member.from_record(record, self._users).user_id
        else:
            user_id = event.user_id
        if user_id is None or self._members.pop(user_id, None) is None:
            return False
        self._member_count = max(0, self._member_count - 1)
        return True

    def _on_watching_start(self, event: WatcherEvent) -> bool:
        watcher = self._users.resolve(event.user)
        if watcher is not None:
            self._watchers[watcher.id] = watcher
        watcher_count = event.watcher_count
        if watcher_count is not None:
            self._watcher_count = watcher_count
        return watcher is not None or watcher_count is not None

    def _on_watching_stop(self, event: WatcherEvent) -> bool:
        removed = event.user_id is not None and self._watchers.pop(event.user_id, None) is not None
        watcher_count = event.watcher_count
        if watcher_count is not None:
            self._watcher_count = watcher_count
        return removed or watcher_count is not None

    # =========================================================================
    # Read cursors and typing
    # =========================================================================

    def _read_from_record(self, record: dict[str, Any]) -> ReadState | None:
        user = self._users.resolve(record.get("user"))
        user_id = user.id if user else record.get("user_id")
        last_read = normalize_timestamp(record.get("last_read"))
        if not user_id or last_read is None:
            return None
        return ReadState(
            user_id=user_id,
            last_read=last_read,
            last_read_message_id=record.get("last_read_message_id"),
            unread_messages=int(record.get("unread_messages") or 0),
        )

    def _advance_read(self, read_state: ReadState) -> bool:
        current = self._read.get(read_state.user_id)
        if current is not None and read_state.last_read <= current.last_read:
            return False
        self._read[read_state.user_id] = read_state
        return True

    def _on_read(self, event: ChatEvent) -> bool:
        user_id = event.user_id
        last_read = event.created_at or event.received_at
        if user_id is None or last_read is None:
            return False

        advanced = self._advance_read(
            ReadState(
                user_id=user_id,
                last_read=last_read,
                last_read_message_id=event.raw_data.get("last_read_message_id"),
            )
        )
        if not advanced:
            logger.debug(
                "Ignoring read event older than cursor",
                cid=self._cid,
                user_id=user_id,
                last_read=last_read,
            )
            return False
        if user_id == self._own_user_id:
            self._unread_count = 0
        return True

    def _on_typing_start(self, event: ChatEvent) -> bool:
        if event.user_id is None:
            return False
        self._typing[event.user_id] = event.created_at or event.received_at
        return True

    def _on_typing_stop(self, event: ChatEvent) -> bool:
        return event.user_id is not None and self._typing.pop(event.user_id, None) is not None

    # =========================================================================
    # Channel lifecycle
    # =========================================================================

    def _on_channel_updated(self, event: ChannelEvent) -> bool:
        channel = event.channel
        if channel is None:
            return False

        version = normalize_timestamp(channel.get("updated_at")) or event.created_at
        if (
            self._config_updated_at is not None
            and version is not None
            and version <= self._config_updated_at
        ):
            logger.debug(
                "Ignoring stale channel.updated",
                cid=self._cid,
                held=self._config_updated_at,
                incoming=version,
            )
            return False

        data = {k: v for k, v in channel.items() if k != "members"}
        self._data = data
        self._config_updated_at = version
        member_count = data.get("member_count")
        if isinstance(member_count, int):
            self._member_count = member_count
        return True

    def _truncate(self, truncated_at: datetime | None) -> None:
        self._messages.clear()
        self._replies.clear()
        self._truncated_at = truncated_at
        self._unread_count = 0

    def _on_truncated(self, event: ChannelEvent | NotificationEvent) -> bool:
        channel = event.channel or {}
        self._truncate(normalize_timestamp(channel.get("truncated_at")) or event.created_at)
        system_message = self._message_from(event.raw_data.get("message"))
        if system_message is not None:
            self._messages.insert(system_message)
        return True

    def _on_deleted(self, event: ChannelEvent | NotificationEvent) -> bool:
        if event.channel:
            self._data.update({k: v for k, v in event.channel.items() if k != "members"})
        self._terminal = True
        logger.info("Channel deleted", cid=self._cid)
        return True

    def _on_channel_hidden(self, event: ChannelEvent) -> bool:
        self._hidden = True
        if event.clear_history:
            self._truncate(event.created_at)
        return True

    def _on_channel_visible(self, event: ChannelEvent) -> bool:
        if not self._hidden:
            return False
        self._hidden = False
        return True

    def _on_channel_muted(self, event: ChannelEvent) -> bool:
        if self._muted:
            return False
        self._muted = True
        return True

    def _on_channel_unmuted(self, event: ChannelEvent) -> bool:
        if not self._muted:
            return False
        self._muted = False
        return True

    def _latest_created_at(self) -> datetime | None:
        messages = self._messages.as_tuple()
        return messages[-1].created_at if messages else None
