"""
User Cache.

One User object per user id, shared by reference between every channel
store, message and member that mentions the user. Updating the cache
entry updates every view at once.

Writes are last-write-wins by ``updated_at``: a record older than the
cached one is ignored, so a replayed or out-of-order user.updated can
never roll a profile back.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from chat_common.config.logging import get_logger
from chat_realtime.components.events.timestamps import normalize_timestamp

logger = get_logger(__name__)

# Fields promoted to attributes; everything else stays in User.data
_PROMOTED_FIELDS = frozenset({
    "id",
    "role",
    "online",
    "banned",
    "created_at",
    "updated_at",
    "last_active",
    "deleted_at",
})


@dataclass(slots=True, eq=False)
class User:
    """
    Shared, mutable user record.

    Identity is the object itself: every store holding the same user id
    holds this very instance.
    """

    id: str
    role: str | None = None
    online: bool = False
    banned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_active: datetime | None = None
    deleted_at: datetime | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def name(self) -> str | None:
        return self.data.get("name")

    def apply(self, record: dict[str, Any]) -> bool:
        """
        Merge record into this user if it is not older.

        Returns False when the record was ignored as stale.
        """
        incoming = normalize_timestamp(record.get("updated_at"))
        if incoming is not None and self.updated_at is not None and incoming < self.updated_at:
            return False

        if "role" in record:
            self.role = record["role"]
        if "online" in record:
            self.online = bool(record["online"])
        if "banned" in record:
            self.banned = bool(record["banned"])
        if record.get("created_at") is not None:
            self.created_at = normalize_timestamp(record["created_at"])
        if record.get("last_active") is not None:
            self.last_active = normalize_timestamp(record["last_active"])
        if "deleted_at" in record:
            self.deleted_at = normalize_timestamp(record["deleted_at"])
        if incoming is not None:
            self.updated_at = incoming

        self.data.update({k: v for k, v in record.items() if k not in _PROMOTED_FIELDS})
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.data,
            "id": self.id,
            "role": self.role,
            "online": self.online,
            "banned": self.banned,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_active": self.last_active,
            "deleted_at": self.deleted_at,
        }


class UserCache:
    """
    Per-session user registry.

    Usage:
        users = UserCache()
        user = users.upsert({"id": "jane", "name": "Jane"})
        assert users.get("jane") is user
    """

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._stale_writes = 0

    @property
    def users(self) -> MappingProxyType[str, User]:
        """All cached users (immutable view)."""
        return MappingProxyType(self._users)

    @property
    def stale_writes(self) -> int:
        """Number of records ignored because a newer version was cached."""
        return self._stale_writes

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def upsert(self, record: dict[str, Any]) -> User:
        """
        Insert or merge a user record and return the shared instance.

        Raises:
            ValueError: If the record carries no id.
        """
        user_id = record.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("User record must carry a non-empty string id")

        user = self._users.get(user_id)
        if user is None:
            user = User(id=user_id)
            self._users[user_id] = user

        if not user.apply(record):
            self._stale_writes += 1
            logger.debug(
                "Ignoring stale user record",
                user_id=user_id,
                cached_updated_at=user.updated_at,
                incoming_updated_at=record.get("updated_at"),
            )
        return user

    def resolve(self, record: dict[str, Any] | None) -> User | None:
        """upsert() for optional nested user objects."""
        if not isinstance(record, dict) or not record.get("id"):
            return None
        return self.upsert(record)

    def remove(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None

    def clear(self) -> None:
        self._users.clear()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def __iter__(self) -> Iterator[User]:
        return iter(list(self._users.values()))

    def __len__(self) -> int:
        return len(self._users)
