"""Chat clients used by the conversation engine.

``HttpChatClient`` talks to a running chatrelay server over HTTP;
``LocalChatClient`` calls the same services in-process.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import Protocol

import httpx

from chatrelay.schemas.chat import ChatRequest
from chatrelay.services import frames
from chatrelay.services.chat import open_chat_stream
from chatrelay.services.errors import ChatError, StreamInterrupted, error_from_payload
from chatrelay.services.providers import ProviderFamily, credentials_from_headers
from chatrelay.services.titles import PLACEHOLDER_TITLE, fallback_title, generate_title, title_credential

logger = logging.getLogger(__name__)

CONVERSATION_HEADER = "x-conversation-id"


class ChatClient(Protocol):
    def stream_chat(
        self,
        request: ChatRequest,
        credentials: Mapping[str, str] | None = None,
        *,
        conversation_id: str | None = None,
    ) -> AsyncIterator[str]: ...

    async def generate_title(
        self, message: str, credentials: Mapping[str, str] | None = None
    ) -> str: ...


def _json_or_none(response: httpx.Response) -> dict | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class HttpChatClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(timeout, connect=10.0)
        )

    async def stream_chat(
        self,
        request: ChatRequest,
        credentials: Mapping[str, str] | None = None,
        *,
        conversation_id: str | None = None,
    ) -> AsyncIterator[str]:
        headers = dict(credentials or {})
        if conversation_id:
            headers[CONVERSATION_HEADER] = conversation_id
        body = request.model_dump(mode="json", by_alias=True, exclude_none=True)

        try:
            async with self._client.stream("POST", "/api/v1/chat/", json=body, headers=headers) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise error_from_payload(_json_or_none(response), response.status_code)

                finished = False
                async for line in response.aiter_lines():
                    frame = frames.parse_frame(line)
                    if frame is None:
                        continue
                    if frame.kind == frames.TEXT and isinstance(frame.value, str):
                        yield frame.value
                    elif frame.kind == frames.ERROR:
                        payload = frame.value if isinstance(frame.value, dict) else {"message": str(frame.value)}
                        payload.setdefault("code", StreamInterrupted.code)
                        raise error_from_payload(payload, 500)
                    elif frame.kind == frames.FINISH:
                        finished = True
                if not finished:
                    raise StreamInterrupted()
        except httpx.TransportError as exc:
            logger.warning("Chat stream transport error: %s", type(exc).__name__)
            raise StreamInterrupted() from exc

    async def generate_title(self, message: str, credentials: Mapping[str, str] | None = None) -> str:
        try:
            response = await self._client.post(
                "/api/v1/generate-title/", json={"message": message}, headers=dict(credentials or {})
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Title request failed, using local fallback", exc_info=True)
            return fallback_title(message)
        return data.get("title") or PLACEHOLDER_TITLE

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalChatClient:
    """In-process client; credentials use the same header names as HTTP."""

    def __init__(self, environment: Mapping[ProviderFamily, str] | None = None):
        self._environment = environment

    async def stream_chat(
        self,
        request: ChatRequest,
        credentials: Mapping[str, str] | None = None,
        *,
        conversation_id: str | None = None,
    ) -> AsyncIterator[str]:
        stream = await open_chat_stream(
            request, credentials_from_headers(credentials or {}), environment=self._environment
        )
        async for text in stream:
            yield text

    async def generate_title(self, message: str, credentials: Mapping[str, str] | None = None) -> str:
        credential = title_credential(credentials_from_headers(credentials or {}), self._environment)
        try:
            return await generate_title(message, credential)
        except ChatError:
            return fallback_title(message)
