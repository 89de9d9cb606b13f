"""Conversation, message and attachment records.

Records are frozen: every change goes through ``model_copy(update=...)`` so a
reader holding a reference never sees a half-applied update. Field names are
camelCase on the wire and on disk (``createdAt``, ``isPinned``, ``mimeType``).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MessageRole = Literal["user", "assistant", "system"]
AttachmentType = Literal["image", "document"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Offset-less timestamps are read as UTC so every stored time compares."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Attachment(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: AttachmentType
    name: str
    mime_type: str
    data: str  # base64
    # Local preview handle (object URL / thumbnail path); never persisted.
    preview: str | None = Field(default=None, exclude=True)


class Message(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: MessageRole
    content: str
    attachments: tuple[Attachment, ...] | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _created_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Conversation(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    messages: tuple[Message, ...] = ()
    model: str
    system_prompt: str | None = None
    is_pinned: bool = False
    is_archived: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _times_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def message_index(self, message_id: str) -> int:
        for idx, msg in enumerate(self.messages):
            if msg.id == message_id:
                return idx
        return -1

    def first_user_message(self) -> Message | None:
        for msg in self.messages:
            if msg.role == "user":
                return msg
        return None
