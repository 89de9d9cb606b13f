"""Chat turn service: validate, route, format and open the upstream stream.

The service is stateless across calls; conversation state lives with the
caller (see ``services.engine``).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from pydantic import ValidationError

from chatrelay.schemas.chat import ChatMessageIn, ChatRequest
from chatrelay.services import frames, providers
from chatrelay.services.attachments import validate_attachments
from chatrelay.services.errors import BadRequest, ChatError, classify_upstream_error
from chatrelay.services.formatter import format_messages, to_langchain_messages
from chatrelay.services.providers import ProviderFamily

logger = logging.getLogger(__name__)


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"Invalid request field '{location}': {first.get('msg', 'invalid value')}"


def parse_chat_request(raw: Any) -> ChatRequest:
    """Validate a raw JSON body, failing fast in a fixed order."""
    if not isinstance(raw, dict):
        raise BadRequest("Request body must be a JSON object")
    messages = raw.get("messages")
    if not isinstance(messages, list) or not messages:
        raise BadRequest("Messages array is required")
    model = raw.get("model")
    if not isinstance(model, str) or not model.strip():
        raise BadRequest("Model is required")
    try:
        request = ChatRequest.model_validate(raw)
    except ValidationError as exc:
        raise BadRequest(_describe_validation_error(exc)) from None
    # system entries are dropped when formatting; something must remain
    if all(m.role == "system" for m in request.messages):
        raise BadRequest("Messages must include a user or assistant message")
    return request


def resolve_system_prompt(conversation_prompt: str | None, global_prompt: str | None) -> str | None:
    """Conversation-level prompt overrides the global one; empty means none."""
    return conversation_prompt or global_prompt or None


def merge_request_attachments(request: ChatRequest) -> list[ChatMessageIn]:
    """Attach top-level ``attachments`` to the last user message if it has none."""
    messages = list(request.messages)
    if not request.attachments:
        return messages
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == "user":
            if not messages[idx].attachments:
                messages[idx] = messages[idx].model_copy(update={"attachments": request.attachments})
            break
    return messages


def chunk_text(chunk) -> str:
    """Extract text from an AIMessageChunk (string or content-block list)."""
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text") or "")
        return "".join(parts)
    return ""


async def _next_text(iterator: AsyncIterator) -> str | None:
    async for chunk in iterator:
        text = chunk_text(chunk)
        if text:
            return text
    return None


async def _aclose(iterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception:
            logger.debug("Error closing upstream stream", exc_info=True)


async def _relay(first: str | None, iterator: AsyncIterator) -> AsyncIterator[str]:
    try:
        if first:
            yield first
        async for chunk in iterator:
            text = chunk_text(chunk)
            if text:
                yield text
    except ChatError:
        raise
    except Exception as exc:
        logger.warning("Upstream stream failed mid-flight: %s", type(exc).__name__)
        raise classify_upstream_error(exc) from exc
    finally:
        await _aclose(iterator)


async def open_chat_stream(
    request: ChatRequest,
    request_credentials: Mapping[ProviderFamily, str] | None = None,
    *,
    environment: Mapping[ProviderFamily, str] | None = None,
    first_token_timeout: float | None = None,
) -> AsyncIterator[str]:
    """Open the upstream stream and wait for its first token.

    Everything that can fail before the first token (routing, credentials,
    attachment checks, upstream rejection, time-to-first-token) raises a
    ``ChatError`` here, so the caller can still answer with a plain error.
    """
    from chatrelay.config import settings

    if environment is None:
        environment = providers.environment_credentials()
    if first_token_timeout is None:
        first_token_timeout = settings.FIRST_TOKEN_TIMEOUT_SECONDS

    credential = providers.resolve_credential(request.model, request_credentials, environment)

    messages = merge_request_attachments(request)
    for message in messages:
        if message.role == "user" and message.attachments:
            validate_attachments(message.attachments)

    llm = providers.resolve_provider(request.model, credential)
    lc_messages = to_langchain_messages(format_messages(messages), request.system_prompt)
    logger.info(
        "Opening %s stream with %d messages (system prompt: %s)",
        request.model, len(lc_messages), "yes" if request.system_prompt else "no",
    )

    iterator = llm.astream(lc_messages).__aiter__()
    try:
        first = await asyncio.wait_for(
            _next_text(iterator),
            timeout=first_token_timeout if first_token_timeout and first_token_timeout > 0 else None,
        )
    except Exception as exc:
        await _aclose(iterator)
        err = classify_upstream_error(exc)
        logger.warning("Upstream call for %s failed before first token: %s", request.model, err.code)
        raise err from exc
    return _relay(first, iterator)


async def encode_stream(stream: AsyncIterator[str]) -> AsyncIterator[str]:
    """Wrap text deltas in data-stream frames, ending with finish or error."""
    try:
        async for text in stream:
            yield frames.encode_text(text)
    except ChatError as exc:
        yield frames.encode_error(exc.message, exc.code)
        return
    yield frames.encode_finish()
