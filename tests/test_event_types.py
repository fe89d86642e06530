"""
Tests for the event vocabulary and typed event variants.
"""

from datetime import datetime, timezone

import pytest

from chat_realtime.components.core.constants import LOCAL_EVENT_TYPES
from chat_realtime.components.events.types import (
    EVENT_CLASSES,
    VALID_EVENT_TYPES,
    ChannelEvent,
    ConnectionEvent,
    EventType,
    HealthCheckEvent,
    MemberEvent,
    MessageEvent,
    NotificationEvent,
    ReactionEvent,
    UnknownEventTypeTracker,
    is_valid_event_type,
    parse_event,
)


# =============================================================================
# Vocabulary
# =============================================================================


class TestVocabulary:
    """The catalog is closed and every entry has a variant."""

    def test_catalog_size(self):
        assert len(VALID_EVENT_TYPES) == 41
        assert len(EventType) == 41

    @pytest.mark.parametrize(
        "event_type",
        ["message.new", "health.check", "connection.recovered", "user.watching.start"],
    )
    def test_known_types_are_valid(self, event_type):
        assert is_valid_event_type(event_type) is True

    @pytest.mark.parametrize("event_type", ["bogus.event", "", "MESSAGE.NEW", None, 42, ["message.new"]])
    def test_unknown_types_are_invalid(self, event_type):
        assert is_valid_event_type(event_type) is False

    def test_every_type_maps_to_exactly_one_variant(self):
        assert set(EVENT_CLASSES) == VALID_EVENT_TYPES

    def test_local_types_are_in_catalog(self):
        assert LOCAL_EVENT_TYPES <= VALID_EVENT_TYPES

    def test_enum_values_are_plain_strings(self):
        assert EventType.MESSAGE_NEW == "message.new"
        assert is_valid_event_type(EventType.MESSAGE_NEW)


# =============================================================================
# Parsing
# =============================================================================


class TestParseEvent:
    """parse_event() builds the variant for the frame's type."""

    def test_message_event(self):
        event = parse_event({
            "type": "message.new",
            "cid": "messaging:general",
            "created_at": "2017-04-08T17:36:10.540Z",
            "message": {"id": "m1", "text": "hi"},
            "user": {"id": "bob"},
            "watcher_count": 3,
            "total_unread_count": 7,
        })

        assert isinstance(event, MessageEvent)
        assert event.cid == "messaging:general"
        assert event.channel_type == "messaging"
        assert event.channel_id == "general"
        assert event.message_id == "m1"
        assert event.user_id == "bob"
        assert event.watcher_count == 3
        assert event.total_unread_count == 7
        assert event.created_at == datetime(2017, 4, 8, 17, 36, 10, 540000, tzinfo=timezone.utc)

    def test_cid_from_type_and_id(self):
        event = parse_event({
            "type": "typing.start",
            "channel_type": "messaging",
            "channel_id": "general",
            "user": {"id": "bob"},
        })
        assert event.cid == "messaging:general"

    def test_cid_from_nested_channel(self):
        event = parse_event({
            "type": "notification.added_to_channel",
            "channel": {"cid": "team:ops", "type": "team", "id": "ops"},
            "member": {"user_id": "jane"},
        })
        assert isinstance(event, NotificationEvent)
        assert event.cid == "team:ops"

    def test_cid_mismatch_rejected(self):
        with pytest.raises(ValueError, match="does not match"):
            parse_event({"type": "message.new", "cid": "messaging:general", "channel_id": "other"})

    def test_invalid_cid_rejected(self):
        with pytest.raises(ValueError, match="Invalid cid"):
            parse_event({"type": "message.new", "cid": "general"})

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_event({"type": "bogus.event"})

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            parse_event(["message.new"])

    def test_wrong_field_shape_rejected(self):
        with pytest.raises(ValueError, match="watcher_count"):
            parse_event({"type": "user.watching.start", "cid": "messaging:general", "watcher_count": "3"})

    def test_boolean_is_not_an_integer(self):
        with pytest.raises(ValueError, match="watcher_count"):
            parse_event({"type": "message.new", "cid": "messaging:general", "watcher_count": True})

    def test_variant_rejects_foreign_type(self):
        with pytest.raises(ValueError, match="cannot carry"):
            MessageEvent.from_dict({"type": "typing.start"})

    def test_reaction_message_id_falls_back_to_reaction(self):
        event = parse_event({
            "type": "reaction.new",
            "cid": "messaging:general",
            "reaction": {"message_id": "m1", "type": "like"},
        })
        assert isinstance(event, ReactionEvent)
        assert event.message_id == "m1"

    def test_member_user_id(self):
        event = parse_event({
            "type": "member.added",
            "cid": "messaging:general",
            "member": {"user": {"id": "carol"}, "role": "member"},
        })
        assert isinstance(event, MemberEvent)
        assert event.member_user_id == "carol"

    def test_channel_event_clear_history(self):
        event = parse_event({"type": "channel.hidden", "cid": "messaging:general", "clear_history": True})
        assert isinstance(event, ChannelEvent)
        assert event.clear_history is True

    def test_health_check_fields(self):
        event = parse_event({
            "type": "health.check",
            "connection_id": "conn-1",
            "me": {"id": "jane"},
            "recovered": True,
        })
        assert isinstance(event, HealthCheckEvent)
        assert event.connection_id == "conn-1"
        assert event.me == {"id": "jane"}
        assert event.recovered is True
        assert event.is_channel_scoped is False

    def test_nested_timestamps_normalised(self):
        event = parse_event({
            "type": "message.new",
            "cid": "messaging:general",
            "message": {"id": "m1", "created_at": "2017-04-08T17:36:10.5409999Z"},
        })
        assert event.message["created_at"].microsecond == 540000

    def test_source_frame_not_mutated(self):
        data = {"type": "message.new", "cid": "messaging:general", "created_at": "2017-04-08T17:36:10.540Z"}
        parse_event(data)
        assert data["created_at"] == "2017-04-08T17:36:10.540Z"

    def test_raw_data_view_is_read_only(self):
        event = parse_event({"type": "message.new", "cid": "messaging:general", "extra": 1})
        view = event.get_raw_data()
        assert view["extra"] == 1
        with pytest.raises(TypeError):
            view["extra"] = 2

    def test_to_dict_is_a_copy(self):
        event = parse_event({"type": "message.new", "cid": "messaging:general", "message": {"id": "m1"}})
        copy = event.to_dict()
        copy["message"]["id"] = "changed"
        assert event.message_id == "m1"


class TestConnectionEvent:
    def test_local_event(self):
        event = ConnectionEvent.local(EventType.CONNECTION_CHANGED, online=True, connection_id=3)
        assert event.type == "connection.changed"
        assert event.online is True
        assert event.connection_id == 3
        assert event.cid is None
        assert event.created_at is not None


# =============================================================================
# Unknown type tracker
# =============================================================================


class TestUnknownEventTypeTracker:
    def test_first_occurrence_reported_once(self):
        tracker = UnknownEventTypeTracker()
        assert tracker.record("bogus.event") is True
        assert tracker.record("bogus.event") is False
        assert tracker.count == 2

    def test_bounded_with_fifo_eviction(self):
        tracker = UnknownEventTypeTracker(max_types=2)
        tracker.record("a.one")
        tracker.record("b.two")
        tracker.record("c.three")

        assert tracker.types_seen == ["b.two", "c.three"]
        assert tracker.count == 3

    def test_reset_returns_previous_metrics(self):
        tracker = UnknownEventTypeTracker()
        tracker.record("bogus.event")

        metrics = tracker.reset()

        assert metrics["unknown_event_types_count"] == 1
        assert tracker.count == 0
        assert tracker.types_seen == []
