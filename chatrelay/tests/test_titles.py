"""Tests for services/titles.py and the generate-title endpoint."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from chatrelay.config import settings
from chatrelay.conftest import FakeChatModel
from chatrelay.services.titles import (
    MAX_TITLE_LENGTH,
    PLACEHOLDER_TITLE,
    clean_generated_title,
    fallback_title,
    generate_title,
    truncate_title,
)


# ── fallback_title ────────────────────────────────────────────────────────────

class TestFallbackTitle:
    @pytest.mark.parametrize("message", ["", "   ", "\n\t", None])
    def test_empty_gives_placeholder(self, message):
        assert fallback_title(message) == PLACEHOLDER_TITLE

    def test_first_sentence_kept(self):
        assert fallback_title("How do I sort a list? I tried sorted().") == "How do I sort a list?"

    def test_cjk_sentence_end(self):
        assert fallback_title("今天天气怎么样？我想出去玩") == "今天天气怎么样？"

    def test_whitespace_collapsed(self):
        assert fallback_title("  hello \n\n  there  ") == "hello there"

    def test_long_text_truncated(self):
        title = fallback_title("a" * 80)
        assert title == "a" * 47 + "..."
        assert len(title) == MAX_TITLE_LENGTH

    def test_sentence_end_beyond_limit_truncates(self):
        title = fallback_title("word " * 20 + ".")
        assert len(title) <= MAX_TITLE_LENGTH
        assert title.endswith("...")

    @pytest.mark.parametrize("message", ["x", "?", ".leading dot", "a" * 500, "一" * 60, "Hi!"])
    def test_bounded_and_non_empty(self, message):
        title = fallback_title(message)
        assert 0 < len(title) <= MAX_TITLE_LENGTH


def test_truncate_title_keeps_short():
    assert truncate_title("short") == "short"


def test_clean_generated_title_strips_quotes():
    assert clean_generated_title('  "Sorting lists in Python"  ', "x") == "Sorting lists in Python"


def test_clean_generated_title_empty_falls_back():
    assert clean_generated_title('""', "Hello there. More") == "Hello there."


# ── generate_title ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_title_without_credential_uses_fallback(patch_llm):
    factory = patch_llm(FakeChatModel())
    assert await generate_title("Plan a trip to Kyoto. Three days.") == "Plan a trip to Kyoto."
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_generate_title_with_model(patch_llm):
    llm = FakeChatModel(reply='"Kyoto Trip Planning"')
    factory = patch_llm(llm)
    assert await generate_title("Plan a trip to Kyoto", "sk-test") == "Kyoto Trip Planning"
    family, model, key = factory.call_args[0]
    assert model == settings.TITLE_MODEL
    assert key == "sk-test"
    assert factory.call_args[1]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_generate_title_clips_prompt(patch_llm):
    llm = FakeChatModel(reply="Title")
    patch_llm(llm)
    await generate_title("z" * 2000, "sk-test")
    human = llm.calls[0][1]
    assert human.content.count("z") == 500


@pytest.mark.asyncio
async def test_generate_title_failure_falls_back(patch_llm):
    patch_llm(FakeChatModel(error=RuntimeError("boom")))
    assert await generate_title("What is asyncio? Explain.", "sk-test") == "What is asyncio?"


@pytest.mark.asyncio
async def test_generate_title_long_reply_truncated(patch_llm):
    patch_llm(FakeChatModel(reply="T" * 70))
    title = await generate_title("hello", "sk-test")
    assert title == "T" * 47 + "..."


# ── endpoint ──────────────────────────────────────────────────────────────────

@pytest.fixture
def client():
    from chatrelay.main import app
    return TestClient(app)


def test_endpoint_uses_header_credential(client, patch_llm):
    factory = patch_llm(FakeChatModel(reply="Greeting"))
    resp = client.post(
        "/api/v1/generate-title/",
        json={"message": "Hello"},
        headers={"x-openai-api-key": "sk-header"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"title": "Greeting"}
    assert factory.call_args[0][2] == "sk-header"


def test_endpoint_without_credential_still_200(client):
    resp = client.post("/api/v1/generate-title/", json={"message": "Hello world. Second."})
    assert resp.status_code == 200
    assert resp.json() == {"title": "Hello world."}


def test_endpoint_empty_message_gives_placeholder(client):
    resp = client.post("/api/v1/generate-title/", json={"message": ""})
    assert resp.status_code == 200
    assert resp.json() == {"title": PLACEHOLDER_TITLE}


@pytest.mark.parametrize("body", [{}, {"message": 42}, {"message": None}])
def test_endpoint_malformed_body_is_400(client, body):
    resp = client.post("/api/v1/generate-title/", json=body)
    assert resp.status_code == 400
    assert resp.json()["code"] == "bad_request"
