"""Root conftest: shared fixtures for all chatrelay tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from chatrelay.config import settings


@pytest.fixture(autouse=True)
def _isolate_chatrelay_dir(tmp_path, monkeypatch):
    """Point the data dir and storage dir at tmp_path; clear process-wide keys."""
    data_dir = tmp_path / "chatrelay"
    data_dir.mkdir(parents=True)
    monkeypatch.setenv("CHATRELAY_DIR", str(data_dir))
    monkeypatch.setattr(settings, "CHAT_STORAGE_DIR", str(data_dir / "conversations"))
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", "")
    monkeypatch.setattr(settings, "GOOGLE_GENERATIVE_AI_API_KEY", "")
    monkeypatch.setattr(settings, "FIRST_TOKEN_TIMEOUT_SECONDS", 5.0)
    monkeypatch.setattr(settings, "STORAGE_RETRY_DELAY_SECONDS", 0.0)
    return data_dir


class FakeChatModel:
    """Stand-in for a LangChain chat model: streams *chunks*, optionally failing."""

    def __init__(self, chunks=("Hello", " world"), *, error=None, error_after=None, reply="Fake Title"):
        self.chunks = list(chunks)
        self.error = error
        self.error_after = error_after
        self.reply = reply
        self.calls: list = []
        self.closed = False

    async def astream(self, messages):
        self.calls.append(messages)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.error is not None and self.error_after == i:
                    raise self.error
                yield AIMessageChunk(content=chunk)
            if self.error is not None and self.error_after is None:
                raise self.error
        finally:
            self.closed = True

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.reply)


@pytest.fixture
def fake_llm():
    return FakeChatModel()


@pytest.fixture
def patch_llm(monkeypatch):
    """Route every provider through a FakeChatModel; returns the factory mock."""

    def _install(llm):
        factory = MagicMock(return_value=llm)
        monkeypatch.setattr("chatrelay.services.providers.create_chat_model", factory)
        return factory

    return _install
