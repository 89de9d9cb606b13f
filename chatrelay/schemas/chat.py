"""Chat and title-generation request/response schemas."""

from __future__ import annotations

from pydantic import Field, StrictStr

from chatrelay.schemas.conversation import Attachment, CamelModel, MessageRole


class ChatMessageIn(CamelModel):
    """A message as sent by a chat client; ``id``/``createdAt`` are optional."""

    role: MessageRole
    content: str = ""
    attachments: list[Attachment] | None = None
    id: str | None = None


class ChatRequest(CamelModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    model: str = Field(min_length=1)
    system_prompt: str | None = None
    attachments: list[Attachment] | None = None


class TitleRequest(CamelModel):
    message: StrictStr


class TitleOut(CamelModel):
    title: str


class ErrorOut(CamelModel):
    message: str
    status: int
    code: str = "error"
