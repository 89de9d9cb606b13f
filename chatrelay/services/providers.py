"""Model → provider routing, credential resolution and LangChain model factory."""

from __future__ import annotations

import enum
from collections.abc import Mapping

from langchain_core.language_models import BaseChatModel

from chatrelay.services.errors import MissingCredential, UnknownModel


class ProviderFamily(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


# (model prefix, family), checked in order
MODEL_PREFIXES: tuple[tuple[str, ProviderFamily], ...] = (
    ("gpt", ProviderFamily.OPENAI),
    ("chatgpt", ProviderFamily.OPENAI),
    ("o1", ProviderFamily.OPENAI),
    ("o3", ProviderFamily.OPENAI),
    ("claude", ProviderFamily.ANTHROPIC),
    ("gemini", ProviderFamily.GOOGLE),
)

CREDENTIAL_HEADERS: dict[ProviderFamily, str] = {
    ProviderFamily.OPENAI: "x-openai-api-key",
    ProviderFamily.ANTHROPIC: "x-anthropic-api-key",
    ProviderFamily.GOOGLE: "x-google-api-key",
}

# Settings attribute holding the process-wide key for each family
ENVIRONMENT_KEYS: dict[ProviderFamily, str] = {
    ProviderFamily.OPENAI: "OPENAI_API_KEY",
    ProviderFamily.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderFamily.GOOGLE: "GOOGLE_GENERATIVE_AI_API_KEY",
}


def family_for_model(model: str) -> ProviderFamily:
    """Return the provider family for *model*; unmatched prefixes never default."""
    if model:
        for prefix, family in MODEL_PREFIXES:
            if model.startswith(prefix):
                return family
    raise UnknownModel(model)


def credentials_from_headers(headers: Mapping[str, str]) -> dict[ProviderFamily, str]:
    """Pick the per-provider credential headers out of a request's headers."""
    lowered = {k.lower(): v for k, v in headers.items()}
    found: dict[ProviderFamily, str] = {}
    for family, header in CREDENTIAL_HEADERS.items():
        value = (lowered.get(header) or "").strip()
        if value:
            found[family] = value
    return found


def environment_credentials() -> dict[ProviderFamily, str]:
    """Snapshot of process-wide credentials, read from settings on every call."""
    from chatrelay.config import settings

    found: dict[ProviderFamily, str] = {}
    for family, attr in ENVIRONMENT_KEYS.items():
        value = (getattr(settings, attr, "") or "").strip()
        if value:
            found[family] = value
    return found


def resolve_credential(
    model: str,
    request_credentials: Mapping[ProviderFamily, str] | None,
    environment: Mapping[ProviderFamily, str] | None,
) -> str:
    """Per-request credential first, then the process-wide one for the same family."""
    family = family_for_model(model)
    for source in (request_credentials, environment):
        if source and source.get(family):
            return source[family]
    raise MissingCredential(f"{ENVIRONMENT_KEYS[family]} is not configured")


def create_chat_model(
    family: ProviderFamily,
    model_name: str,
    api_key: str,
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: float | None = None,
    max_retries: int | None = None,
) -> BaseChatModel:
    kwargs: dict = {"model": model_name}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if timeout is not None:
        kwargs["timeout"] = timeout
    if max_retries is not None:
        kwargs["max_retries"] = max_retries

    if family is ProviderFamily.OPENAI:
        from langchain_openai import ChatOpenAI
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return ChatOpenAI(api_key=api_key, **kwargs)

    if family is ProviderFamily.ANTHROPIC:
        from langchain_anthropic import ChatAnthropic
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return ChatAnthropic(api_key=api_key, **kwargs)

    if family is ProviderFamily.GOOGLE:
        from langchain_google_genai import ChatGoogleGenerativeAI
        if max_tokens is not None:
            kwargs["max_output_tokens"] = max_tokens
        return ChatGoogleGenerativeAI(google_api_key=api_key, **kwargs)

    raise ValueError(f"Unsupported provider family: {family}")


def resolve_provider(model: str, credential: str, **options) -> BaseChatModel:
    """Build the upstream chat model client for *model* using *credential*."""
    return create_chat_model(family_for_model(model), model, credential, **options)
