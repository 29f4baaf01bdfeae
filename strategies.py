#!/usr/bin/env python3
"""
Content strategies for the two program variants.

The builder runs one pipeline; a strategy decides where candidates come
from, how many are needed, what the program is called and where its audio
is stored.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta

import pytz

from article_filter import build_article_query, filter_by_likes
from config_loader import get_variant_config, load_program_config
from dedup_articles import format_previous_coverage_context, select_candidates
from errors import ArticleSourceNotFoundError, UserNotFoundError
from models import KIND_DAILY, KIND_PERSONALIZED


@dataclass
class BuildTarget:
    source_key: str
    feed: object = None
    user: object = None


class ContentStrategy:
    kind = None
    records_attempts = False
    vectorize = False

    def __init__(self, variant_config=None):
        self.config = dict(variant_config or get_variant_config(self.kind))

    @property
    def min_articles(self):
        return int(self.config.get("min_articles", 1))

    @property
    def max_articles(self):
        return int(self.config.get("max_articles", 3))

    @property
    def voice(self):
        return self.config["voice"]

    def resolve(self, store, selector):
        raise NotImplementedError

    def fetch_candidates(self, article_source, target, program_date):
        raise NotImplementedError

    def filter_new(self, candidates, store, target):
        raise NotImplementedError

    def build_context(self, store, target, candidates):
        """Return (context text or None, listener note or None)."""
        return None, None

    def program_title(self, target, program_date):
        raise NotImplementedError

    def file_stem(self, target, program_date):
        raise NotImplementedError

    def artifact_name(self, target, program_date):
        return f"{self.file_stem(target, program_date)}.mp3"

    def object_key(self, target, program_date):
        return f"{self.kind}/{program_date.strftime('%Y%m%d')}/{self.artifact_name(target, program_date)}"

    def expires_at(self, program_date, tz_name):
        return None

    def metadata(self, target, program_date, title):
        """Container tags for the final artifact."""
        program = load_program_config()
        return {
            "title": title,
            "artist": program.get("artist", program["title"]),
            "album": self.config.get("album", program["title"]),
            "album_artist": program.get("album_artist", program["title"]),
            "date": program_date.isoformat(),
            "genre": program.get("genre", "Podcast"),
            "language": program.get("language", "en"),
            "copyright": program.get("copyright", ""),
            "filename": self.artifact_name(target, program_date),
        }


class DailyStrategy(ContentStrategy):
    """One shared program per day from the previous day's most-liked articles."""

    kind = KIND_DAILY
    vectorize = True

    def resolve(self, store, selector=None):
        return BuildTarget(source_key=KIND_DAILY)

    def fetch_candidates(self, article_source, target, program_date):
        previous_day = program_date - timedelta(days=1)
        return article_source.search_by_date_range(previous_day, previous_day)

    def filter_new(self, candidates, store, target):
        used = store.find_used_article_ids(target.source_key)
        return select_candidates(candidates, used_ids=used, max_articles=self.max_articles)

    def build_context(self, store, target, candidates):
        parts = []
        note = store.find_pending_note()
        if note:
            parts.append(f"LISTENER LETTER from \"{note.pen_name}\":\n{note.body}")

        followups = format_previous_coverage_context(
            candidates, store.find_recent_titles(target.source_key)
        )
        if followups:
            parts.append(followups.strip())

        return ("\n\n".join(parts) or None), note

    def program_title(self, target, program_date):
        return self.config["title"].format(date=program_date.isoformat())

    def file_stem(self, target, program_date):
        return f"{self.config.get('object_prefix', 'daily')}_{program_date.strftime('%Y%m%d')}"


class PersonalizedStrategy(ContentStrategy):
    """One program per personalized feed per day, built from the feed's filters."""

    kind = KIND_PERSONALIZED
    records_attempts = True

    @staticmethod
    def source_key_for(feed_id):
        return f"feed:{feed_id}"

    @property
    def retention_days(self):
        return int(self.config.get("retention_days", 30))

    def resolve(self, store, selector):
        feed = store.find_feed(selector)
        if feed is None:
            raise ArticleSourceNotFoundError(f"Personalized feed not found: {selector}",
                                             context={"feed_id": selector})
        user = store.find_user(feed.user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {feed.user_id}",
                                    context={"feed_id": feed.id, "user_id": feed.user_id})
        return BuildTarget(source_key=self.source_key_for(feed.id), feed=feed, user=user)

    def fetch_candidates(self, article_source, target, program_date):
        query = build_article_query(target.feed)
        return article_source.search_feed(query, today=program_date)

    def filter_new(self, candidates, store, target):
        query = build_article_query(target.feed)
        liked = filter_by_likes(candidates, query.min_likes)
        used = store.find_used_article_ids(target.source_key)
        return select_candidates(liked, used_ids=used, max_articles=self.max_articles)

    def program_title(self, target, program_date):
        return self.config["title"].format(feed_name=target.feed.name, date=program_date.isoformat())

    def file_stem(self, target, program_date):
        prefix = self.config.get("object_prefix", "personalized")
        return f"{prefix}_{target.feed.id}_{program_date.strftime('%Y%m%d')}"

    def object_key(self, target, program_date):
        return (f"{self.kind}/{program_date.strftime('%Y%m%d')}/{target.feed.id}/"
                f"{self.artifact_name(target, program_date)}")

    def expires_at(self, program_date, tz_name):
        tz = pytz.timezone(tz_name)
        expiry_day = program_date + timedelta(days=self.retention_days)
        return tz.localize(datetime.combine(expiry_day, time.min))


STRATEGIES = {
    KIND_DAILY: DailyStrategy,
    KIND_PERSONALIZED: PersonalizedStrategy,
}


def get_strategy(kind, variant_config=None):
    if kind not in STRATEGIES:
        raise KeyError(f"Unknown program kind: {kind}")
    return STRATEGIES[kind](variant_config)
