"""Pydantic models for BBBAB Messenger REST responses and realtime frames."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

# Numbers below this are epoch seconds, above it epoch milliseconds (~1973 in ms).
_SECONDS_THRESHOLD = 100_000_000_000


def to_epoch_ms(value: Any) -> int | None:
    """
    Normalize a wire timestamp to epoch milliseconds.

    Accepts ISO-8601 strings (with or without a trailing ``Z``), numeric
    strings, epoch seconds, epoch milliseconds and datetime objects. Naive
    datetimes are treated as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"unsupported timestamp: {value!r}")
        if abs(value) < _SECONDS_THRESHOLD:
            return int(value * 1000)
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return to_epoch_ms(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_epoch_ms(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp: {value!r}")


def _parse_bool(value: Any) -> bool:
    """Parse booleans sent either as JSON booleans or as "true"/"false" strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class Message(BaseModel):
    """
    A chat message as stored in a conversation timeline.

    Accepts both the realtime shape (``chat_id``, ``sender_id``,
    ``timestamp``, ``updated_at``) and the REST shape (``chatID``,
    ``senderID``, ``createdAt``, ``updatedAt``, ``deletedAt``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: int = 0
    conversation_id: int = Field(
        default=0,
        validation_alias=AliasChoices("conversation_id", "chat_id", "chatID", "chatId"),
    )
    sender_id: int = Field(
        default=0,
        validation_alias=AliasChoices("sender_id", "senderID", "senderId"),
    )
    text: str = Field(default="", validation_alias=AliasChoices("text", "message"))
    timestamp: int = Field(
        default=0,
        validation_alias=AliasChoices("timestamp", "createdAt", "created_at"),
    )
    updated_at: int | None = Field(
        default=None,
        validation_alias=AliasChoices("updated_at", "updatedAt"),
    )
    is_deleted: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_deleted", "isDeleted"),
    )
    read_by: frozenset[int] = Field(
        default_factory=frozenset,
        validation_alias=AliasChoices("read_by", "readBy"),
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_wire_shape(cls, data: Any) -> Any:
        """Fold REST-only fields (deletedAt, nested sender) into the common shape."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        deleted_at = data.pop("deletedAt", None)
        if isinstance(deleted_at, dict):
            deleted_at = deleted_at.get("time") if deleted_at.get("valid") else None
        if deleted_at and "is_deleted" not in data and "isDeleted" not in data:
            data["is_deleted"] = True
        sender = data.get("sender")
        if isinstance(sender, dict) and not any(
            k in data for k in ("sender_id", "senderID", "senderId")
        ):
            data["sender_id"] = sender.get("id") or sender.get("ID") or 0
        return data

    @field_validator("text", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> int:
        return to_epoch_ms(v) or 0

    @field_validator("updated_at", mode="before")
    @classmethod
    def parse_updated_at(cls, v: Any) -> int | None:
        return to_epoch_ms(v)

    @field_validator("updated_at")
    @classmethod
    def drop_unedited(cls, v: int | None, info: ValidationInfo) -> int | None:
        """Keep the edit time only when it is strictly after creation."""
        created = info.data.get("timestamp", 0)
        if v is None or v <= created:
            return None
        return v

    @field_validator("read_by", mode="before")
    @classmethod
    def parse_read_by(cls, v: Any) -> frozenset[int]:
        if not v:
            return frozenset()
        return frozenset(int(x) for x in v)

    @property
    def is_edited(self) -> bool:
        """A message is edited when it carries an edit time."""
        return self.updated_at is not None

    @property
    def version(self) -> int:
        """The latest instant this copy of the message reflects."""
        return max(self.timestamp, self.updated_at or 0)

    @property
    def created_dt(self) -> datetime:
        """Get the creation timestamp as an aware datetime."""
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)


class User(BaseModel):
    """A user profile from the REST API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: int = Field(validation_alias=AliasChoices("id", "ID"))
    username: str | None = Field(default=None, validation_alias=AliasChoices("username", "Username"))
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("display_name", "displayName")
    )
    phone: str | None = None

    @property
    def label(self) -> str:
        """Get the best display name for this user."""
        if self.display_name:
            return self.display_name
        if self.username:
            return self.username
        return f"User {self.id}"


class Chat(BaseModel):
    """A conversation as listed by ``GET /chat/list``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = Field(validation_alias=AliasChoices("id", "ID"))
    name: str = ""
    created_at: int | None = Field(default=None, validation_alias=AliasChoices("created_at", "createdAt"))
    last_message: Message | None = Field(
        default=None, validation_alias=AliasChoices("last_message", "lastMessage")
    )

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, v: Any) -> str:
        return v or ""

    @field_validator("created_at", mode="before")
    @classmethod
    def parse_created_at(cls, v: Any) -> int | None:
        return to_epoch_ms(v)

    @property
    def title(self) -> str:
        """Get display title for the chat."""
        return self.name or f"Chat {self.id}"


class Dialog(BaseModel):
    """Derived conversation summary used for conversation-list rendering."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    last_message: str | None = None
    last_time: int | None = None


class Pagination(BaseModel):
    """Cursor pagination block of a history page."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    next_cursor: str | None = Field(default=None, validation_alias=AliasChoices("next_cursor", "nextCursor"))
    previous_cursor: str | None = Field(
        default=None, validation_alias=AliasChoices("previous_cursor", "previousCursor")
    )
    has_next: bool = Field(default=False, validation_alias=AliasChoices("has_next", "hasNext"))
    has_previous: bool = Field(default=False, validation_alias=AliasChoices("has_previous", "hasPrevious"))
    limit: int = 0
    total_count: int = Field(default=0, validation_alias=AliasChoices("total_count", "totalCount"))


def _valid_messages(value: Any) -> list[Any]:
    """Validate history entries one by one, skipping those that fail."""
    if not isinstance(value, list):
        return value or []
    valid = []
    for raw in value:
        try:
            valid.append(Message.model_validate(raw))
        except ValidationError as e:
            logger.warning("Skipping invalid history message: %s", e.errors(include_url=False))
    return valid


class HistoryPage(BaseModel):
    """A page of messages from ``GET /chat/{id}/messages``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[Message] = Field(default_factory=list, validation_alias=AliasChoices("messages", "data"))
    pagination: Pagination = Field(default_factory=Pagination)

    @field_validator("messages", mode="before")
    @classmethod
    def coerce_messages(cls, v: Any) -> list[Any]:
        return _valid_messages(v)

    @property
    def has_more(self) -> bool:
        return self.pagination.has_next

    @property
    def next_cursor(self) -> str | None:
        return self.pagination.next_cursor


# Realtime frames (server -> client)


class MessageFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["message"]
    message: Message


class HistoryMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    count: int = 0
    has_more: bool = False


class HistoryFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["history"]
    messages: list[Message] = Field(default_factory=list)
    meta: HistoryMeta | None = None

    @field_validator("messages", mode="before")
    @classmethod
    def coerce_messages(cls, v: Any) -> list[Any]:
        return _valid_messages(v)


class MessageSentFrame(BaseModel):
    """Server acknowledgement of an outbound message."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["message_sent"]
    message_id: int
    timestamp: int | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> int | None:
        return to_epoch_ms(v)


class TypingFrame(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["typing"]
    user_id: int
    username: str | None = None
    is_typing: bool = Field(default=False, validation_alias=AliasChoices("is_typing", "message"))

    @field_validator("is_typing", mode="before")
    @classmethod
    def parse_is_typing(cls, v: Any) -> bool:
        return _parse_bool(v)


class ErrorFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["error"]
    message: str = "Unknown error"

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, v: Any) -> str:
        if isinstance(v, str) and v:
            return v
        return "Unknown error"


class RoomInfoFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["room_info"]
    message: Any = None


class MembershipFrame(BaseModel):
    """A user joined or left the conversation room."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["user_joined", "user_left"]
    user_id: int


InboundFrame = Annotated[
    Union[
        MessageFrame,
        HistoryFrame,
        MessageSentFrame,
        TypingFrame,
        ErrorFrame,
        RoomInfoFrame,
        MembershipFrame,
    ],
    Field(discriminator="type"),
]

# Frames that are neither timeline data nor typing updates.
ServerEvent = Union[MessageSentFrame, ErrorFrame, RoomInfoFrame, MembershipFrame]

inbound_frame_adapter: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)

INBOUND_TYPES = frozenset(
    {"message", "history", "message_sent", "typing", "error", "room_info", "user_joined", "user_left"}
)
HEARTBEAT_TYPES = frozenset({"ping", "pong", "heartbeat"})
