#!/usr/bin/env python3
"""
Segment synthesizer: turns a validated script into one speech file per
spoken part (opening, per-article intro/explanation/summary, ending).
"""

import os
import re
from dataclasses import dataclass, field

from openai import OpenAI, OpenAIError
from pydub import AudioSegment

from errors import AudioGenerationError
from models import AudioAsset

# OpenAI TTS rejects inputs over 4096 characters
MAX_TTS_CHARS = 4000

EMOJI_PATTERN = re.compile(
    "["
    "\u2190-\u21ff"          # arrows
    "\u2300-\u23ff"          # misc technical
    "\u25a0-\u25ff"          # geometric shapes
    "\u2600-\u27bf"          # misc symbols, dingbats
    "\u2b00-\u2bff"
    "\ue000-\uf8ff"          # private use
    "\ufe0f\u200d"           # variation selector, zero-width joiner
    "\U0001F000-\U0001FAFF"  # emoji blocks
    "]+"
)
SENTENCE_END_PATTERN = re.compile(r"([\u3002\uff01\uff1f]|[.!?](?=\s|$))")


def _apply_terms(text, terms):
    """Replace glossary terms with their readings in one pass, longest term first."""
    if not terms:
        return text
    readings = {t["term"]: t["reading"] for t in terms if t.get("term")}
    ordered = sorted(readings, key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(term) for term in ordered))
    return pattern.sub(lambda m: readings[m.group(0)], text)


def normalize_narration(text, terms=None, pause_marker=" ..."):
    """Clean script text for the speech engine."""
    text = (text or "").replace("`", "")
    text = text.replace("\r", " ").replace("\n", " ")
    text = EMOJI_PATTERN.sub("", text)
    text = SENTENCE_END_PATTERN.sub(lambda m: m.group(1) + pause_marker, text)
    text = _apply_terms(text, terms)
    return re.sub(r"\s+", " ", text).strip()


def split_for_tts(text, max_chars=MAX_TTS_CHARS):
    """Split text at sentence boundaries into chunks the TTS API accepts."""
    if len(text) <= max_chars:
        return [text]

    sentences = re.split(r"(?<=[.!?\u3002\uff01\uff1f])\s+", text)
    chunks = []
    current = ""
    for sentence in sentences:
        while len(sentence) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(sentence[:max_chars])
            sentence = sentence[max_chars:]
        candidate = f"{current} {sentence}".strip() if current else sentence
        if len(candidate) > max_chars:
            chunks.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class OpenAISpeechClient:
    """Speech synthesis via the OpenAI TTS API (no retries)."""

    def __init__(self, api_key, model="tts-1-hd", timeout=120.0, client=None):
        if client is None:
            if not api_key:
                raise AudioGenerationError("OPENAI_API_KEY not found")
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.model = model

    def synthesize(self, text, voice, output_path):
        try:
            response = self.client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
        except OpenAIError as e:
            raise AudioGenerationError(f"Speech synthesis failed: {e}", context={"voice": voice}) from e

        content = response.content
        if not content:
            raise AudioGenerationError("Speech synthesis returned empty audio", context={"voice": voice})
        with open(output_path, "wb") as f:
            f.write(content)
        return output_path


@dataclass
class SpokenArticle:
    article_id: str
    title: str
    intro: AudioAsset = None
    explanation: AudioAsset = None
    summary: AudioAsset = None

    @property
    def parts(self):
        return [p for p in (self.intro, self.explanation, self.summary) if p is not None]


@dataclass
class SpokenScript:
    opening: AudioAsset = None
    articles: list = field(default_factory=list)
    ending: AudioAsset = None

    def assets(self):
        result = [self.opening] if self.opening else []
        for article in self.articles:
            result.extend(article.parts)
        if self.ending:
            result.append(self.ending)
        return result


class SegmentSynthesizer:
    def __init__(self, speech_client, terms=None, pause_marker=" ...", max_chars=MAX_TTS_CHARS):
        self.speech_client = speech_client
        self.terms = terms or []
        self.pause_marker = pause_marker
        self.max_chars = max_chars

    def _synthesize_part(self, text, voice, workdir, name, role, article_id=None):
        text = normalize_narration(text, self.terms, self.pause_marker)
        if not text:
            return None

        output_path = os.path.join(workdir, f"{name}.mp3")
        chunks = split_for_tts(text, self.max_chars)
        if len(chunks) == 1:
            self.speech_client.synthesize(text, voice, output_path)
        else:
            chunk_paths = []
            for i, chunk in enumerate(chunks):
                chunk_path = os.path.join(workdir, f"{name}_{i}.mp3")
                self.speech_client.synthesize(chunk, voice, chunk_path)
                chunk_paths.append(chunk_path)
            _merge_chunks(chunk_paths, output_path)

        print(f"  ✓ {name} ({len(text)} chars)")
        return AudioAsset(path=output_path, role=role, article_id=article_id)

    def synthesize_script(self, script, workdir, voice, check_cancelled=None):
        """Synthesize every non-empty part of a script into `workdir`."""
        print(f"🗣️  Synthesizing speech with voice '{voice}'...")
        spoken = SpokenScript()
        spoken.opening = self._synthesize_part(script.opening, voice, workdir, "opening", "opening")

        for i, segment in enumerate(script.segments, 1):
            if check_cancelled:
                check_cancelled()
            spoken.articles.append(SpokenArticle(
                article_id=segment.article_id,
                title=segment.title,
                intro=self._synthesize_part(
                    segment.intro, voice, workdir, f"article-{i}_intro", "intro", segment.article_id),
                explanation=self._synthesize_part(
                    segment.explanation, voice, workdir, f"article-{i}_explanation", "explanation",
                    segment.article_id),
                summary=self._synthesize_part(
                    segment.summary, voice, workdir, f"article-{i}_summary", "summary", segment.article_id),
            ))

        spoken.ending = self._synthesize_part(script.ending, voice, workdir, "ending", "ending")
        print(f"  ✅ Synthesized {len(spoken.assets())} speech files")
        return spoken


def _merge_chunks(chunk_paths, output_path):
    try:
        combined = AudioSegment.empty()
        for path in chunk_paths:
            combined += AudioSegment.from_file(path, format="mp3")
        combined.export(output_path, format="mp3").close()
    except Exception as e:
        raise AudioGenerationError(f"Could not merge speech chunks: {e}") from e
