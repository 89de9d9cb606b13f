"""Tests for services/attachments.py."""

from __future__ import annotations

import base64

import pytest

from chatrelay.schemas.conversation import Attachment
from chatrelay.services.attachments import (
    MAX_ATTACHMENT_BYTES,
    MAX_ATTACHMENTS_PER_MESSAGE,
    build_attachment,
    validate_attachments,
)
from chatrelay.services.errors import AttachmentRejected


def test_build_image_attachment():
    att = build_attachment("cat.png", "image/png", b"\x89PNG", preview="blob:1")
    assert att.type == "image"
    assert att.id.startswith("attachment_")
    assert base64.b64decode(att.data) == b"\x89PNG"
    assert att.preview == "blob:1"


def test_build_document_attachment_has_no_preview():
    att = build_attachment("notes.txt", "text/plain", b"hi", preview="blob:2")
    assert att.type == "document"
    assert att.preview is None


def test_preview_is_never_serialized():
    att = build_attachment("cat.png", "image/png", b"\x89PNG", preview="blob:1")
    assert "preview" not in att.to_json_dict()
    assert att.to_json_dict()["mimeType"] == "image/png"


def test_unsupported_type_rejected():
    with pytest.raises(AttachmentRejected) as exc_info:
        build_attachment("run.exe", "application/x-msdownload", b"MZ")
    assert exc_info.value.status == 400


def test_oversize_rejected():
    with pytest.raises(AttachmentRejected):
        build_attachment("big.txt", "text/plain", b"x" * (MAX_ATTACHMENT_BYTES + 1))


def test_too_many_attachments():
    atts = [build_attachment(f"{i}.txt", "text/plain", b"x") for i in range(MAX_ATTACHMENTS_PER_MESSAGE + 1)]
    with pytest.raises(AttachmentRejected):
        validate_attachments(atts)


def test_invalid_base64_rejected():
    bad = Attachment(id="a", type="document", name="x.txt", mime_type="text/plain", data="not base64!!")
    with pytest.raises(AttachmentRejected):
        validate_attachments([bad])


def test_validate_returns_tuple():
    atts = [build_attachment("a.txt", "text/plain", b"a")]
    assert validate_attachments(atts) == tuple(atts)
    assert validate_attachments(None) == ()
