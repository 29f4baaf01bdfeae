#!/usr/bin/env python3
"""
Data model for programs, scripts, chapters and their source articles.

Scripts and chapter lists are persisted as versioned JSON documents. Loading
migrates the legacy unversioned layout and rejects anything else with
ScriptValidationError instead of guessing.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime

from errors import ScriptValidationError

SCRIPT_SCHEMA_VERSION = 1
CHAPTERS_SCHEMA_VERSION = 1

KIND_DAILY = "daily"
KIND_PERSONALIZED = "personalized"

ATTEMPT_SUCCESS = "SUCCESS"
ATTEMPT_SKIPPED = "SKIPPED"
ATTEMPT_FAILED = "FAILED"


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    body: str = ""
    author: str = ""
    tags: tuple = ()
    likes_count: int = 0
    published_at: datetime = None
    private: bool = False
    url: str = ""
    summary: str = ""

    def with_summary(self, summary):
        return replace(self, summary=summary)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "author": self.author,
            "tags": list(self.tags),
            "likes_count": self.likes_count,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "private": self.private,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data):
        published = data.get("published_at")
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            author=data.get("author", ""),
            tags=tuple(data.get("tags", ())),
            likes_count=int(data.get("likes_count", 0)),
            published_at=datetime.fromisoformat(published) if published else None,
            private=bool(data.get("private", False)),
            url=data.get("url", ""),
        )


@dataclass(frozen=True)
class FilterGroup:
    """One AND/OR group of a feed's filter configuration."""
    logic: str = "OR"
    tags: tuple = ()
    authors: tuple = ()
    min_likes: int = 0
    days_ago: int = 0

    @classmethod
    def from_dict(cls, data):
        return cls(
            logic=(data.get("logic") or "OR").upper(),
            tags=tuple(data.get("tags", ())),
            authors=tuple(data.get("authors", ())),
            min_likes=int(data.get("min_likes") or 0),
            days_ago=int(data.get("days_ago") or 0),
        )

    def to_dict(self):
        return {
            "logic": self.logic,
            "tags": list(self.tags),
            "authors": list(self.authors),
            "min_likes": self.min_likes,
            "days_ago": self.days_ago,
        }


@dataclass(frozen=True)
class PersonalizedFeed:
    id: str
    user_id: str
    name: str
    is_active: bool = True
    filter_groups: tuple = ()

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            name=data.get("name", ""),
            is_active=bool(data.get("is_active", True)),
            filter_groups=tuple(FilterGroup.from_dict(g) for g in data.get("filter_groups", ())),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "is_active": self.is_active,
            "filter_groups": [g.to_dict() for g in self.filter_groups],
        }


@dataclass(frozen=True)
class AppUser:
    id: str
    display_name: str = ""
    plan_id: str = "free"

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data["id"]),
            display_name=data.get("display_name", ""),
            plan_id=data.get("plan_id", "free"),
        )

    def to_dict(self):
        return {"id": self.id, "display_name": self.display_name, "plan_id": self.plan_id}


@dataclass(frozen=True)
class ListenerNote:
    """A listener message the daily program can acknowledge on air."""
    id: str
    pen_name: str
    body: str
    introduced_program_id: str = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data["id"]),
            pen_name=data.get("pen_name", ""),
            body=data.get("body", ""),
            introduced_program_id=data.get("introduced_program_id"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "pen_name": self.pen_name,
            "body": self.body,
            "introduced_program_id": self.introduced_program_id,
        }


@dataclass
class ScriptSegment:
    article_id: str
    title: str
    intro: str = ""
    explanation: str = ""
    summary: str = ""

    @property
    def parts(self):
        return [p for p in (self.intro, self.explanation, self.summary) if p and p.strip()]

    @property
    def text(self):
        """Narration text spoken for this article."""
        return " ".join(p.strip() for p in self.parts)

    def to_dict(self):
        return {
            "article_id": self.article_id,
            "title": self.title,
            "intro": self.intro,
            "explanation": self.explanation,
            "summary": self.summary,
        }


@dataclass
class Script:
    title: str
    opening: str
    segments: list
    ending: str

    def to_dict(self):
        return {
            "schema_version": SCRIPT_SCHEMA_VERSION,
            "title": self.title,
            "opening": self.opening,
            "segments": [s.to_dict() for s in self.segments],
            "ending": self.ending,
        }

    def to_json(self):
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def full_text(self):
        """Plain text of the whole script, used for vectorization."""
        lines = [self.title, self.opening]
        for segment in self.segments:
            lines.append(segment.title)
            lines.append(segment.text)
        lines.append(self.ending)
        return "\n".join(line for line in lines if line)


def _require_str(data, key, where):
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ScriptValidationError(f"{where}.{key} must be a string")
    return value


def script_from_dict(data):
    """Build a Script from a decoded document, migrating legacy layouts."""
    if not isinstance(data, dict):
        raise ScriptValidationError("Script document must be a JSON object")

    version = data.get("schema_version")
    if version is None:
        # Legacy layout: intro / posts[{postId, title, intro, explanation, summary}] / ending
        posts = data.get("posts")
        if not isinstance(posts, list):
            raise ScriptValidationError("Legacy script is missing its posts list")
        data = {
            "title": data.get("title", ""),
            "opening": data.get("opening", data.get("intro", "")),
            "segments": [
                {
                    "article_id": p.get("postId", p.get("id", "")),
                    "title": p.get("title", ""),
                    "intro": p.get("intro", ""),
                    "explanation": p.get("explanation", ""),
                    "summary": p.get("summary", ""),
                }
                for p in posts if isinstance(p, dict)
            ],
            "ending": data.get("ending", ""),
        }
    elif version != SCRIPT_SCHEMA_VERSION:
        raise ScriptValidationError(f"Unsupported script schema version: {version}")

    segments_data = data.get("segments")
    if not isinstance(segments_data, list):
        raise ScriptValidationError("Script is missing its segments list")

    segments = []
    for i, item in enumerate(segments_data):
        if not isinstance(item, dict):
            raise ScriptValidationError(f"segments[{i}] must be an object")
        article_id = item.get("article_id")
        if article_id is None or str(article_id).strip() == "":
            raise ScriptValidationError(f"segments[{i}] has no article_id")
        segments.append(ScriptSegment(
            article_id=str(article_id),
            title=_require_str(item, "title", f"segments[{i}]"),
            intro=_require_str(item, "intro", f"segments[{i}]"),
            explanation=_require_str(item, "explanation", f"segments[{i}]"),
            summary=_require_str(item, "summary", f"segments[{i}]"),
        ))

    return Script(
        title=_require_str(data, "title", "script"),
        opening=_require_str(data, "opening", "script"),
        segments=segments,
        ending=_require_str(data, "ending", "script"),
    )


def parse_script(raw):
    """Parse a stored script (JSON text or dict)."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ScriptValidationError(f"Stored script is not valid JSON: {e}") from e
    return script_from_dict(raw)


@dataclass(frozen=True)
class Chapter:
    title: str
    start_ms: int
    end_ms: int

    def to_dict(self):
        return {"title": self.title, "start_ms": self.start_ms, "end_ms": self.end_ms}


def chapters_to_json(chapters):
    return json.dumps({
        "schema_version": CHAPTERS_SCHEMA_VERSION,
        "chapters": [c.to_dict() for c in chapters],
    }, ensure_ascii=False)


def parse_chapters(raw):
    """Parse stored chapters; a bare list is the legacy {title, startTime, endTime} layout."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ScriptValidationError(f"Stored chapters are not valid JSON: {e}") from e

    if isinstance(raw, list):
        return [
            Chapter(title=c["title"], start_ms=int(c["startTime"]), end_ms=int(c["endTime"]))
            for c in raw
        ]
    if not isinstance(raw, dict) or raw.get("schema_version") != CHAPTERS_SCHEMA_VERSION:
        raise ScriptValidationError("Unsupported chapters document")
    return [
        Chapter(title=c["title"], start_ms=int(c["start_ms"]), end_ms=int(c["end_ms"]))
        for c in raw.get("chapters", [])
    ]


@dataclass(frozen=True)
class AudioAsset:
    """A synthesized speech file in the build's scratch directory."""
    path: str
    role: str
    article_id: str = None


@dataclass
class Program:
    id: str
    kind: str
    source_key: str
    program_date: date
    title: str
    script: Script
    chapters: list
    audio_url: str
    duration_ms: int
    article_ids: list = field(default_factory=list)
    created_at: datetime = None
    updated_at: datetime = None
    user_id: str = None
    feed_id: str = None
    expires_at: datetime = None
    is_active: bool = True

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "source_key": self.source_key,
            "program_date": self.program_date.isoformat(),
            "title": self.title,
            "script": self.script.to_json(),
            "chapters": chapters_to_json(self.chapters),
            "audio_url": self.audio_url,
            "duration_ms": self.duration_ms,
            "article_ids": list(self.article_ids),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "user_id": self.user_id,
            "feed_id": self.feed_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data):
        def _dt(key):
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            kind=data["kind"],
            source_key=data["source_key"],
            program_date=date.fromisoformat(data["program_date"]),
            title=data.get("title", ""),
            script=parse_script(data["script"]),
            chapters=parse_chapters(data["chapters"]),
            audio_url=data.get("audio_url", ""),
            duration_ms=int(data.get("duration_ms", 0)),
            article_ids=list(data.get("article_ids", [])),
            created_at=_dt("created_at"),
            updated_at=_dt("updated_at"),
            user_id=data.get("user_id"),
            feed_id=data.get("feed_id"),
            expires_at=_dt("expires_at"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class GenerationAttempt:
    id: str
    feed_id: str
    user_id: str
    program_date: date
    status: str
    reason: str = None
    article_count: int = 0
    program_id: str = None
    created_at: datetime = None
    notified: bool = False

    def to_dict(self):
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "user_id": self.user_id,
            "program_date": self.program_date.isoformat(),
            "status": self.status,
            "reason": self.reason,
            "article_count": self.article_count,
            "program_id": self.program_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "notified": self.notified,
        }

    @classmethod
    def from_dict(cls, data):
        created = data.get("created_at")
        return cls(
            id=data["id"],
            feed_id=data["feed_id"],
            user_id=data["user_id"],
            program_date=date.fromisoformat(data["program_date"]),
            status=data["status"],
            reason=data.get("reason"),
            article_count=int(data.get("article_count", 0)),
            program_id=data.get("program_id"),
            created_at=datetime.fromisoformat(created) if created else None,
            notified=bool(data.get("notified", False)),
        )
