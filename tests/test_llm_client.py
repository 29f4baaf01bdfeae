"""Tests for llm_client module."""

from datetime import date
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from anthropic import APIConnectionError
from openai import OpenAIError

from errors import ProgramBuildError, ScriptGenerationError
from llm_client import (
    BODY_MAX_CHARS,
    ClaudeLanguageModel,
    OpenAIEmbedder,
    build_script_prompt,
    build_summary_prompt,
    strip_code_fences,
)


def _claude_response(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _model(client):
    return ClaudeLanguageModel(api_key="k", script_model="script-model",
                               summary_model="summary-model", client=client)


class TestStripCodeFences:
    def test_json_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'

    def test_none(self):
        assert strip_code_fences(None) == ""


class TestPrompts:
    def test_script_prompt_lists_article_ids(self, abc_articles):
        prompt = build_script_prompt("Picks", date(2025, 5, 3), abc_articles)
        assert "article_id: A" in prompt
        assert "article_id: C" in prompt
        assert "exactly 3 entries" in prompt
        assert "Saturday, May 03, 2025" in prompt
        assert "CONTEXT" not in prompt

    def test_script_prompt_with_context(self, abc_articles):
        prompt = build_script_prompt("Picks", date(2025, 5, 3), abc_articles, "Listener says hi")
        assert "CONTEXT:\nListener says hi" in prompt

    def test_summary_prompt_caps_body(self, make_article):
        article = make_article("A", body="x" * (BODY_MAX_CHARS + 500))
        prompt = build_summary_prompt(article, 400)
        assert "x" * BODY_MAX_CHARS in prompt
        assert "x" * (BODY_MAX_CHARS + 1) not in prompt
        assert "About 400 characters" in prompt


class TestClaudeLanguageModel:
    def test_summarize_uses_summary_model(self, make_article):
        client = MagicMock()
        client.messages.create.return_value = _claude_response("  A short summary.  ")
        assert _model(client).summarize(make_article("A")) == "A short summary."
        assert client.messages.create.call_args.kwargs["model"] == "summary-model"

    def test_generate_script_returns_raw_text(self, abc_articles):
        client = MagicMock()
        client.messages.create.return_value = _claude_response('```json\n{"title": "x"}\n```')
        text = _model(client).generate_script(date(2025, 5, 3), abc_articles, program_title="Picks")
        assert text.startswith("```json")
        assert client.messages.create.call_args.kwargs["model"] == "script-model"

    def test_api_error_is_wrapped(self, abc_articles):
        client = MagicMock()
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create.side_effect = APIConnectionError(request=request)
        with pytest.raises(ScriptGenerationError) as exc:
            _model(client).generate_script(date(2025, 5, 3), abc_articles, program_title="Picks")
        assert isinstance(exc.value.__cause__, APIConnectionError)
        assert client.messages.create.call_count == 1

    def test_empty_response(self, make_article):
        client = MagicMock()
        client.messages.create.return_value = _claude_response("   ")
        with pytest.raises(ScriptGenerationError):
            _model(client).summarize(make_article("A"))

    def test_missing_api_key(self):
        with pytest.raises(ScriptGenerationError):
            ClaudeLanguageModel(api_key="", script_model="m", summary_model="m")


class TestOpenAIEmbedder:
    def test_embed(self):
        client = MagicMock()
        client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(embedding=[0.1, 0.2])]
        )
        assert OpenAIEmbedder("k", "text-embedding-3-small", client=client).embed("hi") == [0.1, 0.2]

    def test_error_is_wrapped(self):
        client = MagicMock()
        client.embeddings.create.side_effect = OpenAIError("down")
        with pytest.raises(ProgramBuildError):
            OpenAIEmbedder("k", "m", client=client).embed("hi")
