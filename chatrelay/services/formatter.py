"""Convert stored messages into provider-neutral multi-part messages."""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterable, Sequence
from typing import Literal, Protocol, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from chatrelay.schemas.conversation import Attachment

logger = logging.getLogger(__name__)


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    image: str  # base64 payload, verbatim
    mime_type: str


ContentPart = Union[TextPart, ImagePart]


class ProviderMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: list[ContentPart]


class _MessageLike(Protocol):
    role: str
    content: str
    attachments: Sequence[Attachment] | None


def attachment_part(attachment: Attachment) -> ContentPart:
    if attachment.type == "image":
        return ImagePart(image=attachment.data, mime_type=attachment.mime_type)
    try:
        text = base64.b64decode(attachment.data, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        # Binary documents (pdf, docx) are referenced by name only
        logger.debug("Attachment %s is not UTF-8 text, sending label only", attachment.name)
        return TextPart(text=f"[Attached document: {attachment.name}]")
    return TextPart(text=f"[Document: {attachment.name}]\n{text}")


def format_message(message: _MessageLike) -> ProviderMessage:
    if message.role == "assistant" or not message.attachments:
        # Only user turns may carry attachments to the provider
        return ProviderMessage(role=message.role, content=[TextPart(text=message.content)])

    parts: list[ContentPart] = []
    if message.content:
        parts.append(TextPart(text=message.content))
    parts.extend(attachment_part(a) for a in message.attachments)
    return ProviderMessage(role="user", content=parts)


def format_messages(messages: Iterable[_MessageLike]) -> list[ProviderMessage]:
    """System-role messages are dropped; the system prompt travels separately."""
    return [format_message(m) for m in messages if m.role != "system"]


def _langchain_block(part: ContentPart) -> dict:
    if isinstance(part, ImagePart):
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{part.mime_type};base64,{part.image}"},
        }
    return {"type": "text", "text": part.text}


def to_langchain_messages(
    messages: Sequence[ProviderMessage],
    system_prompt: str | None = None,
) -> list[BaseMessage]:
    result: list[BaseMessage] = []
    if system_prompt:
        result.append(SystemMessage(content=system_prompt))
    for msg in messages:
        if msg.role == "assistant":
            result.append(AIMessage(content="".join(
                p.text for p in msg.content if isinstance(p, TextPart)
            )))
        elif len(msg.content) == 1 and isinstance(msg.content[0], TextPart):
            result.append(HumanMessage(content=msg.content[0].text))
        else:
            result.append(HumanMessage(content=[_langchain_block(p) for p in msg.content]))
    return result
