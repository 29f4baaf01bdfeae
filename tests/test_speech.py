"""Tests for speech module."""

import os
from unittest.mock import MagicMock

import pytest
from openai import OpenAIError

from conftest import FakeSpeechClient
from errors import AudioGenerationError
from models import Script, ScriptSegment
from speech import (
    OpenAISpeechClient,
    SegmentSynthesizer,
    normalize_narration,
    split_for_tts,
)


class TestNormalizeNarration:
    def test_removes_backticks_and_newlines(self):
        assert normalize_narration("Run `pip install`\nnow", pause_marker="") == "Run pip install now"

    def test_removes_emoji(self):
        assert normalize_narration("Ship it 🚀 today ✨", pause_marker="") == "Ship it today"

    def test_pause_after_sentence_end(self):
        assert normalize_narration("Hello. World!", pause_marker=" ...") == "Hello. ... World! ..."

    def test_decimal_point_is_not_a_sentence_end(self):
        assert normalize_narration("Python 3.12 is out", pause_marker=" ...") == "Python 3.12 is out"

    def test_fullwidth_punctuation(self):
        assert normalize_narration("こんにちは。", pause_marker=" ...") == "こんにちは。 ..."

    def test_glossary_replacement(self):
        terms = [{"term": "kubectl", "reading": "cube control"}]
        assert normalize_narration("Use kubectl daily", terms, "") == "Use cube control daily"

    def test_longer_term_wins(self):
        terms = [
            {"term": "SQL", "reading": "sequel"},
            {"term": "PostgreSQL", "reading": "postgres"},
        ]
        assert normalize_narration("PostgreSQL and SQL", terms, "") == "postgres and sequel"

    def test_replacement_is_not_rewritten(self):
        terms = [
            {"term": "k8s", "reading": "kubernetes"},
            {"term": "kubernetes", "reading": "KUBE"},
        ]
        assert normalize_narration("k8s", terms, "") == "kubernetes"


class TestSplitForTts:
    def test_short_text_single_chunk(self):
        assert split_for_tts("Hello.", 100) == ["Hello."]

    def test_splits_on_sentences(self):
        text = "One sentence here. Two sentence here. Three sentence here."
        chunks = split_for_tts(text, 40)
        assert all(len(c) <= 40 for c in chunks)
        assert " ".join(chunks) == text

    def test_hard_splits_long_sentence(self):
        chunks = split_for_tts("x" * 95, 40)
        assert [len(c) for c in chunks] == [40, 40, 15]


class TestOpenAISpeechClient:
    def test_writes_audio(self, tmp_path):
        client = MagicMock()
        client.audio.speech.create.return_value = MagicMock(content=b"ID3audio")
        output = tmp_path / "out.mp3"
        OpenAISpeechClient(api_key="k", client=client).synthesize("Hi", "nova", str(output))
        assert output.read_bytes() == b"ID3audio"
        kwargs = client.audio.speech.create.call_args.kwargs
        assert kwargs["voice"] == "nova"
        assert kwargs["input"] == "Hi"

    def test_empty_audio_is_an_error(self, tmp_path):
        client = MagicMock()
        client.audio.speech.create.return_value = MagicMock(content=b"")
        with pytest.raises(AudioGenerationError):
            OpenAISpeechClient(api_key="k", client=client).synthesize("Hi", "nova", str(tmp_path / "o.mp3"))

    def test_upstream_error_is_wrapped(self, tmp_path):
        client = MagicMock()
        client.audio.speech.create.side_effect = OpenAIError("boom")
        with pytest.raises(AudioGenerationError) as exc:
            OpenAISpeechClient(api_key="k", client=client).synthesize("Hi", "nova", str(tmp_path / "o.mp3"))
        assert isinstance(exc.value.__cause__, OpenAIError)
        assert client.audio.speech.create.call_count == 1


class TestSegmentSynthesizer:
    def test_synthesizes_every_part(self, tmp_path):
        script = Script(
            title="t",
            opening="Welcome.",
            segments=[
                ScriptSegment("A", "Alpha", intro="Intro A.", explanation="Expl A.", summary="Sum A."),
                ScriptSegment("B", "Beta", intro="Intro B.", explanation="", summary="Sum B."),
            ],
            ending="Goodbye.",
        )
        speech_client = FakeSpeechClient()
        spoken = SegmentSynthesizer(speech_client).synthesize_script(script, str(tmp_path), "nova")

        assert os.path.basename(spoken.opening.path) == "opening.mp3"
        assert [len(a.parts) for a in spoken.articles] == [3, 2]
        assert spoken.articles[1].explanation is None
        assert spoken.ending.role == "ending"
        assert len(spoken.assets()) == 7
        assert all(voice == "nova" for _, voice, _ in speech_client.calls)

    def test_empty_opening_skipped(self, tmp_path):
        script = Script(title="t", opening="", segments=[ScriptSegment("A", "a", explanation="x")], ending="e")
        spoken = SegmentSynthesizer(FakeSpeechClient()).synthesize_script(script, str(tmp_path), "nova")
        assert spoken.opening is None
