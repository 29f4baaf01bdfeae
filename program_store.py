#!/usr/bin/env python3
"""
JSON-file Program Store.
Keeps programs, generation attempts, linked articles, feeds, users, listener
notes and script vectors in one JSON document. Writes are serialized with a
lock and replace the file atomically.
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path

from errors import PersistenceError, ProgramAlreadyExistsError
from models import AppUser, Article, GenerationAttempt, ListenerNote, PersonalizedFeed, Program

COLLECTIONS = ("programs", "attempts", "articles", "feeds", "users", "notes", "vectors")


class JsonProgramStore:
    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.RLock()

    def _load(self):
        """Load the store document, return empty collections if it doesn't exist."""
        data = {}
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise PersistenceError(f"Could not read program store {self.path}: {e}") from e
        for name in COLLECTIONS:
            data.setdefault(name, [] if name == "attempts" else {})
        return data

    def _save(self, data):
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not write program store {self.path}: {e}") from e

    # Programs

    def find_existing(self, source_key, program_date):
        """Return the program for (source_key, program_date), or None."""
        date_key = program_date.isoformat()
        with self._lock:
            for item in self._load()["programs"].values():
                if item["source_key"] == source_key and item["program_date"] == date_key:
                    return Program.from_dict(item)
        return None

    def get_program(self, program_id):
        with self._lock:
            item = self._load()["programs"].get(program_id)
        return Program.from_dict(item) if item else None

    def find_programs(self, kind=None, source_key=None):
        with self._lock:
            items = list(self._load()["programs"].values())
        return [
            Program.from_dict(item) for item in items
            if (kind is None or item["kind"] == kind)
            and (source_key is None or item["source_key"] == source_key)
        ]

    def create(self, program, articles=()):
        """Insert a program and link its articles; the (source_key, date) pair is unique."""
        with self._lock:
            data = self._load()
            date_key = program.program_date.isoformat()
            for item in data["programs"].values():
                if item["source_key"] == program.source_key and item["program_date"] == date_key:
                    raise ProgramAlreadyExistsError(
                        f"Program already exists for {program.source_key} on {date_key}",
                        source_key=program.source_key,
                        program_date=program.program_date,
                    )
            data["programs"][program.id] = program.to_dict()
            for article in articles:
                data["articles"][article.id] = article.to_dict()
            self._save(data)
        return program

    def update(self, program, articles=()):
        with self._lock:
            data = self._load()
            if program.id not in data["programs"]:
                raise PersistenceError(f"Program not found: {program.id}")
            data["programs"][program.id] = program.to_dict()
            for article in articles:
                data["articles"][article.id] = article.to_dict()
            self._save(data)
        return program

    def find_used_article_ids(self, source_key):
        """Ids of every article already used by programs of this source."""
        used = set()
        with self._lock:
            for item in self._load()["programs"].values():
                if item["source_key"] == source_key:
                    used.update(item.get("article_ids", []))
        return used

    def find_recent_titles(self, source_key, limit=20):
        """Titles of articles used by the latest programs of this source."""
        with self._lock:
            data = self._load()
        programs = sorted(
            (p for p in data["programs"].values() if p["source_key"] == source_key),
            key=lambda p: p["program_date"],
            reverse=True,
        )
        titles = []
        for program in programs:
            for article_id in program.get("article_ids", []):
                article = data["articles"].get(article_id)
                if article:
                    titles.append(article["title"])
        return titles[:limit]

    def find_articles(self, article_ids):
        """Stored articles in the requested order (missing ids are skipped)."""
        with self._lock:
            articles = self._load()["articles"]
        return [Article.from_dict(articles[i]) for i in article_ids if i in articles]

    def invalidate_expired_programs(self, now):
        """Deactivate programs whose expiry has passed. Returns the number changed."""
        changed = 0
        with self._lock:
            data = self._load()
            for item in data["programs"].values():
                expires_at = item.get("expires_at")
                if not item.get("is_active", True) or not expires_at:
                    continue
                if datetime.fromisoformat(expires_at) <= now:
                    item["is_active"] = False
                    item["updated_at"] = now.isoformat()
                    changed += 1
            if changed:
                self._save(data)
        return changed

    # Generation attempts

    def record_attempt(self, attempt):
        with self._lock:
            data = self._load()
            data["attempts"].append(attempt.to_dict())
            self._save(data)
        return attempt

    def find_attempts(self, feed_id=None):
        with self._lock:
            items = list(self._load()["attempts"])
        return [
            GenerationAttempt.from_dict(item) for item in items
            if feed_id is None or item["feed_id"] == feed_id
        ]

    # Feeds and users

    def save_feed(self, feed):
        with self._lock:
            data = self._load()
            data["feeds"][feed.id] = feed.to_dict()
            self._save(data)
        return feed

    def find_feed(self, feed_id):
        with self._lock:
            item = self._load()["feeds"].get(feed_id)
        return PersonalizedFeed.from_dict(item) if item else None

    def find_active_feeds(self):
        with self._lock:
            items = list(self._load()["feeds"].values())
        return [PersonalizedFeed.from_dict(item) for item in items if item.get("is_active", True)]

    def save_user(self, user):
        with self._lock:
            data = self._load()
            data["users"][user.id] = user.to_dict()
            self._save(data)
        return user

    def find_user(self, user_id):
        with self._lock:
            item = self._load()["users"].get(user_id)
        return AppUser.from_dict(item) if item else None

    # Listener notes

    def save_note(self, note):
        with self._lock:
            data = self._load()
            data["notes"][note.id] = note.to_dict()
            self._save(data)
        return note

    def find_pending_note(self):
        """First listener note that has not been read on air yet."""
        with self._lock:
            items = list(self._load()["notes"].values())
        for item in items:
            if not item.get("introduced_program_id"):
                return ListenerNote.from_dict(item)
        return None

    def mark_note_introduced(self, note_id, program_id):
        with self._lock:
            data = self._load()
            if note_id not in data["notes"]:
                raise PersistenceError(f"Listener note not found: {note_id}")
            data["notes"][note_id]["introduced_program_id"] = program_id
            self._save(data)

    # Vectors

    def save_vector(self, program_id, vector, model):
        with self._lock:
            data = self._load()
            data["vectors"][program_id] = {"model": model, "vector": list(vector)}
            self._save(data)

    def find_vector(self, program_id):
        with self._lock:
            return self._load()["vectors"].get(program_id)
