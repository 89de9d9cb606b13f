"""Chat streaming endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from chatrelay.logging_config import conversation_id_var
from chatrelay.services.chat import encode_stream, open_chat_stream, parse_chat_request
from chatrelay.services.errors import BadRequest
from chatrelay.services.frames import STREAM_HEADER, STREAM_VERSION
from chatrelay.services.providers import credentials_from_headers

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat/")
async def chat(request: Request):
    """Stream one assistant reply as data-stream frames.

    Anything that fails before the first token is answered with a plain
    ``{message, status, code}`` JSON error instead of a stream.
    """
    try:
        raw = await request.json()
    except ValueError:
        raise BadRequest("Request body must be valid JSON") from None

    chat_request = parse_chat_request(raw)

    conversation_id = request.headers.get("x-conversation-id")
    if conversation_id:
        conversation_id_var.set(conversation_id)

    stream = await open_chat_stream(chat_request, credentials_from_headers(request.headers))
    return StreamingResponse(
        encode_stream(stream),
        media_type="text/plain; charset=utf-8",
        headers={STREAM_HEADER: STREAM_VERSION},
    )
