"""Error taxonomy shared by the chat endpoint, the HTTP client and the engine."""

from __future__ import annotations

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base class for every error surfaced by the chat core.

    ``message`` is always safe to show to the user: it never contains
    credential material or raw upstream error text.
    """

    code = "error"
    status = 500
    retryable = False
    default_message = "An error occurred while processing your request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"message": self.message, "status": self.status, "code": self.code}


class BadRequest(ChatError):
    code = "bad_request"
    status = 400
    default_message = "Bad request"


class UnknownModel(BadRequest):
    code = "unknown_model"

    def __init__(self, model: str, message: str | None = None) -> None:
        self.model = model
        super().__init__(message or f"Unknown model: {model}")


class AttachmentRejected(BadRequest):
    code = "attachment_rejected"


class MissingCredential(ChatError):
    code = "missing_credential"
    status = 401
    default_message = "API key not configured"


class UpstreamAuthFailure(ChatError):
    code = "upstream_auth_failure"
    status = 401
    default_message = "API authentication failed"


class RateLimited(ChatError):
    code = "rate_limited"
    status = 429
    retryable = True
    default_message = "Too many requests. Please try again later."


class StreamInterrupted(ChatError):
    code = "stream_interrupted"
    status = 500
    retryable = True
    default_message = "Connection interrupted, please retry"


class FirstTokenTimeout(StreamInterrupted):
    code = "first_token_timeout"
    default_message = "Timed out waiting for the model to respond"


class UpstreamError(ChatError):
    code = "upstream_error"


class ConversationNotFound(ChatError):
    code = "conversation_not_found"
    status = 404
    default_message = "Conversation not found"


class MessageNotFound(ChatError):
    code = "message_not_found"
    status = 404
    default_message = "Message not found"


class TurnInProgress(ChatError):
    code = "turn_in_progress"
    status = 409
    default_message = "A response is already being generated for this conversation"


class StorageFailure(ChatError):
    code = "storage_failure"
    retryable = True
    default_message = "Failed to access conversation storage"


_ERRORS_BY_CODE: dict[str, type[ChatError]] = {
    cls.code: cls
    for cls in (
        ChatError,
        BadRequest,
        AttachmentRejected,
        MissingCredential,
        UpstreamAuthFailure,
        RateLimited,
        StreamInterrupted,
        FirstTokenTimeout,
        UpstreamError,
        ConversationNotFound,
        MessageNotFound,
        TurnInProgress,
        StorageFailure,
    )
}

_ERRORS_BY_STATUS: dict[int, type[ChatError]] = {
    400: BadRequest,
    401: MissingCredential,
    404: ConversationNotFound,
    409: TurnInProgress,
    429: RateLimited,
}

# Last-resort substring matching; structured status codes are checked first.
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "resource_exhausted", "quota")
_AUTH_MARKERS = (
    "401",
    "403",
    "authentication",
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "api_key_invalid",
    "permission_denied",
)


def _status_of(exc: BaseException) -> int | None:
    """Pull an HTTP status out of the provider SDK exception, if it carries one."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    # google.api_core exceptions expose the HTTP status as ``code``
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def classify_upstream_error(exc: BaseException) -> ChatError:
    """Map a provider SDK / transport exception onto the chat error taxonomy."""
    if isinstance(exc, ChatError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FirstTokenTimeout()
    if isinstance(exc, httpx.TransportError):
        return StreamInterrupted()

    status = _status_of(exc)
    if status == 429:
        return RateLimited()
    if status in (401, 403):
        return UpstreamAuthFailure()
    if status is not None and status >= 500:
        return UpstreamError()

    text = str(exc).lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimited()
    if any(marker in text for marker in _AUTH_MARKERS):
        return UpstreamAuthFailure()

    # openai/anthropic APIConnectionError carry no status
    if type(exc).__name__ in ("APIConnectionError", "APITimeoutError"):
        return StreamInterrupted()
    return UpstreamError()


def error_from_payload(payload: dict | None, status: int) -> ChatError:
    """Rebuild a typed error from a ``{message, status, code}`` response body."""
    payload = payload or {}
    message = payload.get("message") if isinstance(payload.get("message"), str) else None
    code = payload.get("code") or ""
    if code == UnknownModel.code:
        return UnknownModel("", message)
    cls = _ERRORS_BY_CODE.get(code)
    if cls is None:
        cls = _ERRORS_BY_STATUS.get(status, UpstreamError if status >= 500 else BadRequest)
    return cls(message)
