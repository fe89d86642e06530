"""
Value objects held by channel stores.

Messages, members and read cursors are immutable; a store replaces an
entry instead of mutating it, which keeps snapshots stable. Users are the
exception: they come from the shared UserCache by reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from chat_realtime.components.events.timestamps import normalize_timestamp
from chat_realtime.components.state.users import User, UserCache

_EPOCH = datetime.min


@dataclass(frozen=True, slots=True)
class Message:
    """
    One message of a channel.

    Attributes:
        id: Message id, stable across updates.
        created_at: Server creation time; the sort key.
        arrival: Local arrival sequence; breaks created_at ties.
        data: Normalised message record without the user object.
    """

    id: str
    text: str = ""
    type: str = "regular"
    user: User | None = None
    parent_id: str | None = None
    show_in_channel: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    arrival: int = 0
    data: MappingProxyType = field(default_factory=lambda: MappingProxyType({}), repr=False)

    @classmethod
    def from_record(cls, record: dict[str, Any], users: UserCache, arrival: int) -> Message:
        """
        Build a message from a (normalised) wire record.

        Raises:
            ValueError: If the record has no id.
        """
        message_id = record.get("id")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("Message record must carry a non-empty string id")

        data = {k: v for k, v in record.items() if k != "user"}
        return cls(
            id=message_id,
            text=record.get("text") or "",
            type=record.get("type") or "regular",
            user=users.resolve(record.get("user")),
            parent_id=record.get("parent_id"),
            show_in_channel=bool(record.get("show_in_channel", False)),
            created_at=normalize_timestamp(record.get("created_at")),
            updated_at=normalize_timestamp(record.get("updated_at")),
            deleted_at=normalize_timestamp(record.get("deleted_at")),
            arrival=arrival,
            data=MappingProxyType(data),
        )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        created_at = self.created_at.replace(tzinfo=None) if self.created_at else _EPOCH
        return created_at, self.arrival

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None or self.type == "deleted"

    @property
    def is_thread_reply(self) -> bool:
        """Replies live in their thread unless also shown in the channel."""
        return self.parent_id is not None and not self.show_in_channel

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user else None

    @property
    def latest_reactions(self) -> list[dict[str, Any]]:
        return list(self.data.get("latest_reactions") or [])

    @property
    def reaction_counts(self) -> dict[str, int]:
        return dict(self.data.get("reaction_counts") or {})


@dataclass(frozen=True, slots=True)
class Member:
    """Channel membership of one user."""

    user_id: str
    user: User | None = None
    role: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    data: MappingProxyType = field(default_factory=lambda: MappingProxyType({}), repr=False)

    @classmethod
    def from_record(cls, record: dict[str, Any], users: UserCache) -> Member:
        """
        Raises:
            ValueError: If neither user nor user_id identifies the member.
        """
        user = users.resolve(record.get("user"))
        user_id = user.id if user else record.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("Member record must identify its user")

        data = {k: v for k, v in record.items() if k != "user"}
        return cls(
            user_id=user_id,
            user=user or users.get(user_id),
            role=record.get("role") or record.get("channel_role"),
            created_at=normalize_timestamp(record.get("created_at")),
            updated_at=normalize_timestamp(record.get("updated_at")),
            data=MappingProxyType(data),
        )

    def merge(self, record: dict[str, Any], users: UserCache) -> Member:
        """New member combining this one with the fields present in record."""
        combined = {**self.data, "user_id": self.user_id}
        combined.update({k: v for k, v in record.items() if v is not None})
        return Member.from_record(combined, users)


@dataclass(frozen=True, slots=True)
class ReadState:
    """Read cursor of one user in one channel."""

    user_id: str
    last_read: datetime
    last_read_message_id: str | None = None
    unread_messages: int = 0


@dataclass(frozen=True, slots=True)
class ChannelSnapshot:
    """
    Immutable view of a channel store at one point in time.

    Collections are tuples or read-only mappings; mutating the store later
    never changes a snapshot already handed out.
    """

    cid: str
    type: str
    id: str
    data: MappingProxyType
    messages: tuple[Message, ...]
    members: MappingProxyType
    watchers: MappingProxyType
    watcher_count: int
    member_count: int
    read: MappingProxyType
    typing: MappingProxyType
    unread_count: int
    muted: bool
    hidden: bool
    terminal: bool
    config_updated_at: datetime | None
    truncated_at: datetime | None
    last_message_at: datetime | None
    version: int

    def get_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def message_ids(self) -> list[str]:
        return [message.id for message in self.messages]
