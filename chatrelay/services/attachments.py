"""Attachment intake: type and size checks before a file joins a message."""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from collections.abc import Sequence

from chatrelay.schemas.conversation import Attachment
from chatrelay.services.errors import AttachmentRejected

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
ALLOWED_DOCUMENT_TYPES = frozenset({
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})
ALLOWED_TYPES = ALLOWED_IMAGE_TYPES | ALLOWED_DOCUMENT_TYPES

MAX_ATTACHMENT_BYTES = 15 * 1024 * 1024
MAX_ATTACHMENTS_PER_MESSAGE = 5


def _attachment_id() -> str:
    return f"attachment_{uuid.uuid4().hex[:12]}"


def check_attachment(name: str, mime_type: str, size: int) -> None:
    if mime_type not in ALLOWED_TYPES:
        raise AttachmentRejected(f"Unsupported file type: {mime_type or 'unknown'}")
    if size > MAX_ATTACHMENT_BYTES:
        raise AttachmentRejected(f"File exceeds the 15MB limit: {name}")


def build_attachment(
    name: str,
    mime_type: str,
    data: bytes,
    *,
    preview: str | None = None,
) -> Attachment:
    """Validate raw file bytes and wrap them as a base64 Attachment."""
    check_attachment(name, mime_type, len(data))
    kind = "image" if mime_type in ALLOWED_IMAGE_TYPES else "document"
    return Attachment(
        id=_attachment_id(),
        type=kind,
        name=name,
        mime_type=mime_type,
        data=base64.b64encode(data).decode("ascii"),
        preview=preview if kind == "image" else None,
    )


def decoded_size(attachment: Attachment) -> int:
    try:
        return len(base64.b64decode(attachment.data, validate=True))
    except (binascii.Error, ValueError):
        raise AttachmentRejected(f"Attachment is not valid base64: {attachment.name}")


def validate_attachments(attachments: Sequence[Attachment] | None) -> tuple[Attachment, ...]:
    """Check an already-encoded attachment list (count, MIME type, payload size)."""
    if not attachments:
        return ()
    if len(attachments) > MAX_ATTACHMENTS_PER_MESSAGE:
        raise AttachmentRejected(
            f"At most {MAX_ATTACHMENTS_PER_MESSAGE} attachments are allowed per message"
        )
    for attachment in attachments:
        check_attachment(attachment.name, attachment.mime_type, decoded_size(attachment))
    return tuple(attachments)
