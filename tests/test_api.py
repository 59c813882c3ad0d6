"""Tests for the BBBAB Messenger wire models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from bbbab_messenger.api.models import (
    Chat,
    HistoryPage,
    Message,
    TypingFrame,
    User,
    inbound_frame_adapter,
    to_epoch_ms,
)


class TestTimestamps:
    """Test wire timestamp normalization."""

    def test_epoch_seconds_become_milliseconds(self) -> None:
        assert to_epoch_ms(1_700_000_000) == 1_700_000_000_000

    def test_epoch_milliseconds_kept(self) -> None:
        assert to_epoch_ms(1_700_000_000_123) == 1_700_000_000_123

    def test_iso_string_with_z(self) -> None:
        assert to_epoch_ms("2023-11-14T22:13:20Z") == 1_700_000_000_000

    def test_iso_string_with_offset(self) -> None:
        assert to_epoch_ms("2023-11-15T00:13:20+02:00") == 1_700_000_000_000

    def test_numeric_string(self) -> None:
        assert to_epoch_ms("1700000000") == 1_700_000_000_000

    def test_naive_datetime_is_utc(self) -> None:
        assert to_epoch_ms(datetime(2023, 11, 14, 22, 13, 20)) == 1_700_000_000_000

    def test_empty_is_none(self) -> None:
        assert to_epoch_ms(None) is None
        assert to_epoch_ms("") is None

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValueError):
            to_epoch_ms("yesterday")
        with pytest.raises(ValueError):
            to_epoch_ms(float("nan"))


class TestModels:
    """Test Pydantic model parsing."""

    def test_realtime_message_parsing(self) -> None:
        """Test the message shape pushed over the websocket."""
        data = {
            "id": 5,
            "chat_id": 42,
            "sender_id": 7,
            "message": "hello",
            "timestamp": 1_700_000_000_000,
            "updated_at": 1_700_000_001_000,
            "is_deleted": False,
            "read_by": [1, 2],
        }
        msg = Message.model_validate(data)
        assert msg.id == 5
        assert msg.conversation_id == 42
        assert msg.sender_id == 7
        assert msg.text == "hello"
        assert msg.is_edited
        assert msg.version == 1_700_000_001_000
        assert msg.read_by == frozenset({1, 2})

    def test_rest_message_parsing(self) -> None:
        """Test the message shape returned by the REST history endpoint."""
        data = {
            "id": 9,
            "chatID": 3,
            "senderID": 4,
            "message": "from rest",
            "createdAt": "2023-11-14T22:13:20Z",
            "updatedAt": "2023-11-14T22:13:20Z",
            "deletedAt": None,
        }
        msg = Message.model_validate(data)
        assert msg.conversation_id == 3
        assert msg.sender_id == 4
        assert msg.timestamp == 1_700_000_000_000
        assert msg.updated_at is None
        assert not msg.is_edited
        assert not msg.is_deleted

    def test_deleted_at_marks_deleted(self) -> None:
        msg = Message.model_validate({"id": 1, "deletedAt": "2023-11-14T22:13:20Z"})
        assert msg.is_deleted

    def test_deleted_at_null_time_object(self) -> None:
        msg = Message.model_validate({"id": 1, "deletedAt": {"time": "0001-01-01T00:00:00Z", "valid": False}})
        assert not msg.is_deleted

    def test_edit_time_not_after_creation_dropped(self) -> None:
        msg = Message.model_validate({"id": 1, "timestamp": 2000_000_000_000, "updated_at": 1900_000_000_000})
        assert msg.updated_at is None

    def test_created_dt(self) -> None:
        msg = Message(id=1, timestamp=1_700_000_000_000)
        assert msg.created_dt == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_user_label(self) -> None:
        """Test display label fallbacks."""
        assert User(id=1, display_name="Ann", username="ann").label == "Ann"
        assert User(id=1, username="ann").label == "ann"
        assert User(id=1).label == "User 1"

    def test_user_rest_aliases(self) -> None:
        user = User.model_validate({"ID": 3, "Username": "bob"})
        assert user.id == 3
        assert user.username == "bob"

    def test_chat_with_last_message(self) -> None:
        chat = Chat.model_validate(
            {
                "id": 42,
                "name": None,
                "createdAt": "2023-11-14T22:13:20Z",
                "lastMessage": {"id": 3, "chatID": 42, "message": "hi", "createdAt": 1_700_000_000},
            }
        )
        assert chat.title == "Chat 42"
        assert chat.last_message is not None
        assert chat.last_message.timestamp == 1_700_000_000_000

    def test_history_page(self) -> None:
        page = HistoryPage.model_validate(
            {
                "data": [{"id": 1, "message": "a", "createdAt": 1}],
                "pagination": {"nextCursor": "abc", "hasNext": True, "limit": 20},
            }
        )
        assert len(page.messages) == 1
        assert page.has_more
        assert page.next_cursor == "abc"

    def test_history_page_null_data(self) -> None:
        page = HistoryPage.model_validate({"data": None})
        assert page.messages == []
        assert not page.has_more


class TestFrames:
    """Test inbound frame validation."""

    def test_typing_string_flag(self) -> None:
        frame = inbound_frame_adapter.validate_python({"type": "typing", "user_id": 3, "message": "true"})
        assert isinstance(frame, TypingFrame)
        assert frame.is_typing

        frame = inbound_frame_adapter.validate_python({"type": "typing", "user_id": 3, "message": "false"})
        assert not frame.is_typing

    def test_error_frame_default_text(self) -> None:
        frame = inbound_frame_adapter.validate_python({"type": "error"})
        assert frame.message == "Unknown error"

    def test_membership_frames(self) -> None:
        joined = inbound_frame_adapter.validate_python({"type": "user_joined", "user_id": 8})
        left = inbound_frame_adapter.validate_python({"type": "user_left", "user_id": 8})
        assert joined.type == "user_joined"
        assert left.type == "user_left"

    def test_message_frame_requires_message(self) -> None:
        with pytest.raises(ValidationError):
            inbound_frame_adapter.validate_python({"type": "message"})
