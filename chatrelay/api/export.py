"""Conversation export endpoint (Markdown, JSON, PDF)."""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter
from fastapi.responses import Response

from chatrelay.schemas.export import ExportRequest
from chatrelay.services.export import render_export

router = APIRouter()


def _content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode().strip("_") or "conversation"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


@router.post("/")
def export_conversation(payload: ExportRequest):
    body, content_type, filename = render_export(payload.conversation, payload.format)
    return Response(
        content=body,
        media_type=content_type,
        headers={
            "Content-Disposition": _content_disposition(filename),
            "X-Filename": quote(filename),
        },
    )
