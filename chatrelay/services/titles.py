"""Conversation title generation with a deterministic local fallback."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from langchain_core.messages import HumanMessage, SystemMessage

from chatrelay.services import providers
from chatrelay.services.chat import chunk_text
from chatrelay.services.errors import ChatError
from chatrelay.services.providers import ProviderFamily

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "New Chat"
MAX_TITLE_LENGTH = 50
MAX_PROMPT_CHARS = 500

_SENTENCE_END = re.compile(r"[。！？.!?]")
_WHITESPACE = re.compile(r"\s+")
_QUOTES = "\"'“”‘’「」"

TITLE_SYSTEM_PROMPT = f"""You are a title generator. Generate a concise, descriptive title for a conversation based on the user's first message.
Rules:
- The title MUST be in the same language as the user's message
- The title MUST be {MAX_TITLE_LENGTH} characters or less
- The title should capture the main topic or intent
- Do NOT include quotes or special formatting
- Return ONLY the title text, nothing else"""


def truncate_title(title: str) -> str:
    if len(title) > MAX_TITLE_LENGTH:
        return title[: MAX_TITLE_LENGTH - 3] + "..."
    return title


def fallback_title(message: str | None) -> str:
    """Derive a title locally: first sentence if it ends early, else a clipped prefix."""
    if not message or not message.strip():
        return PLACEHOLDER_TITLE
    title = _WHITESPACE.sub(" ", message.strip())
    match = _SENTENCE_END.search(title)
    if match and 0 < match.start() < MAX_TITLE_LENGTH:
        title = title[: match.start() + 1]
    return truncate_title(title)


def clean_generated_title(text: str, message: str) -> str:
    title = _WHITESPACE.sub(" ", text.strip()).strip(_QUOTES).strip()
    if not title:
        return fallback_title(message)
    return truncate_title(title)


def title_credential(
    request_credentials: Mapping[ProviderFamily, str] | None,
    environment: Mapping[ProviderFamily, str] | None = None,
) -> str | None:
    """Credential for the title model, or None when no key is available."""
    from chatrelay.config import settings

    if environment is None:
        environment = providers.environment_credentials()
    try:
        return providers.resolve_credential(settings.TITLE_MODEL, request_credentials, environment)
    except ChatError:
        return None


async def generate_title(message: str, credential: str | None = None) -> str:
    """Never raises: any failure degrades to ``fallback_title``."""
    from chatrelay.config import settings

    if not message or not message.strip():
        return PLACEHOLDER_TITLE
    if not credential:
        return fallback_title(message)

    try:
        llm = providers.resolve_provider(settings.TITLE_MODEL, credential, max_tokens=50)
        result = await llm.ainvoke([
            SystemMessage(content=TITLE_SYSTEM_PROMPT),
            HumanMessage(content=f'Generate a title for this message: "{message[:MAX_PROMPT_CHARS]}"'),
        ])
    except Exception as exc:
        logger.warning("Title generation failed (%s), using fallback", type(exc).__name__)
        return fallback_title(message)
    return clean_generated_title(chunk_text(result), message)
