"""
Tests for the shared user cache.
"""

import pytest

from chat_realtime.components.state.users import UserCache


class TestUserCache:
    def test_one_instance_per_id(self, users):
        first = users.upsert({"id": "bob", "name": "Bob"})
        second = users.upsert({"id": "bob", "online": True})

        assert first is second
        assert first.name == "Bob"
        assert first.online is True
        assert len(users) == 1

    def test_newer_record_applied(self, users):
        users.upsert({"id": "bob", "name": "Bob", "updated_at": "2017-04-08T10:00:00Z"})
        user = users.upsert({"id": "bob", "name": "Robert", "updated_at": "2017-04-08T11:00:00Z"})

        assert user.name == "Robert"
        assert users.stale_writes == 0

    def test_stale_record_ignored(self, users):
        users.upsert({"id": "bob", "name": "Robert", "updated_at": "2017-04-08T11:00:00Z"})
        user = users.upsert({"id": "bob", "name": "Bob", "updated_at": "2017-04-08T10:00:00Z"})

        assert user.name == "Robert"
        assert users.stale_writes == 1

    def test_record_without_updated_at_merges(self, users):
        users.upsert({"id": "bob", "updated_at": "2017-04-08T11:00:00Z"})
        user = users.upsert({"id": "bob", "online": True})

        assert user.online is True
        assert user.updated_at is not None

    @pytest.mark.parametrize("record", [{}, {"id": ""}, {"id": 7}])
    def test_record_needs_an_id(self, users, record):
        with pytest.raises(ValueError):
            users.upsert(record)

    def test_resolve_optional_records(self, users):
        assert users.resolve(None) is None
        assert users.resolve({"name": "anonymous"}) is None
        assert users.resolve({"id": "bob"}) is users.get("bob")

    def test_deleted_and_banned(self, users):
        user = users.upsert({"id": "bob", "banned": True, "deleted_at": "2017-04-08T11:00:00Z"})

        assert user.banned is True
        assert user.deleted is True

    def test_timestamps_normalised(self, users):
        user = users.upsert({"id": "bob", "last_active": "2017-04-08T11:00:00.1239Z"})
        assert user.last_active.microsecond == 123000

    def test_to_dict(self, users):
        user = users.upsert({"id": "bob", "role": "admin", "name": "Bob"})

        data = user.to_dict()

        assert data["id"] == "bob"
        assert data["role"] == "admin"
        assert data["name"] == "Bob"

    def test_read_only_view_and_removal(self, users):
        users.upsert({"id": "bob"})

        with pytest.raises(TypeError):
            users.users["eve"] = None
        assert "bob" in users
        assert users.remove("bob") is True
        assert users.remove("bob") is False
        assert len(UserCache()) == 0
