"""Shared fixtures: in-process fakes for every external collaborator."""

import json
import os
from datetime import date, datetime

import pytest
import pytz

from audio_assembler import AudioAssembler
from models import AppUser, Article, FilterGroup, PersonalizedFeed
from program_builder import ProgramBuilder
from program_store import JsonProgramStore
from script_generator import ScriptGenerator
from speech import SegmentSynthesizer
from strategies import DailyStrategy, PersonalizedStrategy

TZ = pytz.timezone("Asia/Tokyo")

EFFECT_DURATIONS = {
    "stinger_opening.mp3": 2000,
    "stinger_ending.mp3": 3000,
    "se_short.mp3": 300,
    "se_part.mp3": 200,
    "se_long.mp3": 500,
    "bgm.mp3": 10000,
}


class FakeLanguageModel:
    def __init__(self, script_response=None, fail_summary_for=None):
        self.script_response = script_response
        self.fail_summary_for = fail_summary_for
        self.summarized = []
        self.script_calls = []

    def summarize(self, article, max_chars=800):
        if article.id == self.fail_summary_for:
            raise RuntimeError(f"summary failed for {article.id}")
        self.summarized.append(article.id)
        return f"Summary of {article.title}"

    def generate_script(self, program_date, articles, context=None, program_title=None):
        self.script_calls.append({
            "program_date": program_date,
            "articles": list(articles),
            "context": context,
            "program_title": program_title,
        })
        if self.script_response is not None:
            return self.script_response
        return json.dumps({
            "title": program_title or "Test Program",
            "opening": "Good morning and welcome.",
            "segments": [
                {
                    "article_id": a.id,
                    "title": a.title,
                    "intro": f"Next up, {a.title}.",
                    "explanation": f"This article explains {a.summary}.",
                    "summary": "That wraps it up.",
                }
                for a in articles
            ],
            "ending": "Thanks for listening.",
        })


class FakeSpeechClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def synthesize(self, text, voice, output_path):
        if self.fail:
            from errors import AudioGenerationError
            raise AudioGenerationError("speech service unavailable")
        self.calls.append((text, voice, os.path.basename(output_path)))
        with open(output_path, "wb") as f:
            f.write(b"ID3" + text.encode("utf-8"))
        return output_path


class FakeMediaTool:
    """Tracks durations instead of decoding audio; every output is a real file."""

    def __init__(self, speech_ms=1000, artifact_drift_ms=0):
        self.speech_ms = speech_ms
        self.artifact_drift_ms = artifact_drift_ms
        self.lengths = {}
        self.concat_calls = []
        self.embedded = None

    def _write(self, path, length_ms):
        with open(path, "wb") as f:
            f.write(b"ID3" + str(length_ms).encode())
        self.lengths[str(path)] = length_ms
        return path

    def measure_duration_ms(self, path):
        path = str(path)
        if path in self.lengths:
            return self.lengths[path]
        return EFFECT_DURATIONS.get(os.path.basename(path), self.speech_ms)

    def concat(self, paths, output_path):
        self.concat_calls.append([os.path.basename(p) for p in paths])
        return self._write(output_path, sum(self.measure_duration_ms(p) for p in paths))

    def loop_to_length(self, path, length_ms, output_path):
        return self._write(output_path, length_ms)

    def mix(self, main_path, bed_path, output_path, main_gain=2.0, bed_gain=0.05, volume_rate=2.5):
        return self._write(output_path, self.measure_duration_ms(main_path))

    def join_with_stingers(self, intro_path, main_path, outro_path, output_path,
                           sample_rate=44100, channels=2, bitrate="192k"):
        total = sum(self.measure_duration_ms(p) for p in (intro_path, main_path, outro_path) if p)
        return self._write(output_path, total + self.artifact_drift_ms)

    def embed_metadata(self, input_path, output_path, metadata, chapters):
        self.embedded = {"metadata": dict(metadata), "chapters": list(chapters)}
        return self._write(output_path, self.measure_duration_ms(input_path))


class FakeUploader:
    def __init__(self, error=None):
        self.error = error
        self.uploads = []

    def upload(self, object_key, file_path, content_type=None, bucket=None):
        if self.error is not None:
            raise self.error
        assert os.path.exists(file_path)
        self.uploads.append((object_key, os.path.basename(file_path), content_type))
        return f"https://cdn.example.com/{object_key}"


class FakeArticleSource:
    def __init__(self, articles=()):
        self.articles = list(articles)
        self.date_range_calls = []
        self.feed_calls = []

    def search_by_date_range(self, start, end):
        self.date_range_calls.append((start, end))
        return list(self.articles)

    def search_feed(self, article_query, today=None):
        self.feed_calls.append(article_query)
        return list(self.articles)


class FakeEmbedder:
    def __init__(self, fail=False):
        self.fail = fail
        self.texts = []

    def embed(self, text):
        if self.fail:
            raise RuntimeError("embedding service down")
        self.texts.append(text)
        return [0.1, 0.2, 0.3]


@pytest.fixture
def make_article():
    def _make(article_id, likes=0, title=None, **kwargs):
        return Article(
            id=article_id,
            title=title or f"Article {article_id}",
            body=kwargs.pop("body", f"Body of {article_id}"),
            author=kwargs.pop("author", "author1"),
            tags=kwargs.pop("tags", ("python",)),
            likes_count=likes,
            published_at=kwargs.pop("published_at", datetime(2025, 5, 1, 9, 0, tzinfo=pytz.utc)),
            **kwargs,
        )
    return _make


@pytest.fixture
def abc_articles(make_article):
    return [
        make_article("A", likes=10, title="Async IO in depth"),
        make_article("B", likes=5, title="Kubernetes operators"),
        make_article("C", likes=20, title="Rust for Python developers"),
    ]


@pytest.fixture
def program_date():
    return date(2025, 5, 3)


@pytest.fixture
def store(tmp_path):
    return JsonProgramStore(tmp_path / "store.json")


@pytest.fixture
def feed(store):
    store.save_user(AppUser(id="user-1", display_name="Dana"))
    feed = PersonalizedFeed(
        id="feed-1",
        user_id="user-1",
        name="Backend Picks",
        filter_groups=(FilterGroup(logic="OR", tags=("python", "go"), min_likes=1),),
    )
    store.save_feed(feed)
    return feed


@pytest.fixture
def assets(tmp_path):
    asset_dir = tmp_path / "assets"
    asset_dir.mkdir()
    paths = {}
    names = {
        "bgm": "bgm.mp3",
        "opening_stinger": "stinger_opening.mp3",
        "ending_stinger": "stinger_ending.mp3",
        "effect_short": "se_short.mp3",
        "effect_part": "se_part.mp3",
        "effect_long": "se_long.mp3",
    }
    for key, filename in names.items():
        path = asset_dir / filename
        path.write_bytes(b"ID3asset")
        paths[key] = str(path)
    return paths


@pytest.fixture
def media_tool():
    return FakeMediaTool()


@pytest.fixture
def assembler(media_tool, assets):
    return AudioAssembler(
        media_tool,
        assets,
        mix_config={"main_gain": 2.0, "bgm_gain": 0.05, "volume_rate": 2.5},
        chapter_config={
            "opening": "Opening",
            "introduction": "Introduction",
            "article": "Article {index}: {title}",
            "closing": "Ending",
            "tolerance_ms": 1000,
        },
        file_ready_timeout=5.0,
        poll_interval=0.001,
    )


@pytest.fixture
def language_model():
    return FakeLanguageModel()


@pytest.fixture
def speech_client():
    return FakeSpeechClient()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def article_source(abc_articles):
    return FakeArticleSource(abc_articles)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def strategies():
    return {
        "daily": DailyStrategy({
            "album": "Headline Topics",
            "title": "Headline Topics {date}",
            "min_articles": 1,
            "max_articles": 3,
            "voice": "alloy",
            "object_prefix": "headline-topic-program",
        }),
        "personalized": PersonalizedStrategy({
            "album": "Personalized Program",
            "title": "{feed_name} {date}",
            "min_articles": 3,
            "max_articles": 3,
            "retention_days": 30,
            "voice": "nova",
            "object_prefix": "personalized-program",
        }),
    }


@pytest.fixture
def builder(store, article_source, language_model, speech_client, assembler, uploader,
            embedder, strategies):
    return ProgramBuilder(
        store=store,
        article_source=article_source,
        script_generator=ScriptGenerator(language_model, summary_timeout=10),
        synthesizer=SegmentSynthesizer(speech_client, terms=[]),
        assembler=assembler,
        uploader=uploader,
        embedder=embedder,
        strategies=strategies,
        timezone="Asia/Tokyo",
        embedding_model="text-embedding-3-small",
        clock=lambda: TZ.localize(datetime(2025, 5, 3, 6, 0)),
    )
