#!/usr/bin/env python3
"""
Translate a personalized feed's filter groups into an article-source search.

Query syntax:
    tag:python                  single tag
    (tag:a OR tag:b)            OR group
    tag:a tag:b                 AND group (space separated)
    user:alice / (user:a OR user:b)
    created:>=YYYY-MM-DD        date lower bound
"""

from dataclasses import dataclass, field
from datetime import date, timedelta

DATE_FORMAT = "%Y-%m-%d"
PER_PAGE_ITEMS = 100


@dataclass
class ArticleQuery:
    tag_filters: list = field(default_factory=list)     # [(tags tuple, logic)]
    author_filters: list = field(default_factory=list)  # [authors tuple]
    days_ago: int = 0
    min_likes: int = 0
    per_page: int = PER_PAGE_ITEMS
    page: int = 1

    @property
    def is_empty(self):
        return not self.tag_filters and not self.author_filters and not self.days_ago


def build_article_query(feed):
    """Build the search conditions for a personalized feed."""
    query = ArticleQuery()
    for i, group in enumerate(feed.filter_groups):
        if group.tags:
            query.tag_filters.append((tuple(group.tags), group.logic))
        if group.authors:
            query.author_filters.append(tuple(group.authors))
        if group.days_ago:
            query.days_ago = group.days_ago
        # Likes threshold comes from the first group only
        if i == 0:
            query.min_likes = group.min_likes
    return query


def build_tag_query(tags, logic="OR"):
    if not tags:
        return ""
    parts = [f"tag:{t}" for t in tags]
    if len(parts) == 1:
        return parts[0]
    if logic == "AND":
        return " ".join(parts)
    return f"({' OR '.join(parts)})"


def build_author_query(authors):
    """Authors are always OR-ed; requiring two authors on one article never matches."""
    if not authors:
        return ""
    parts = [f"user:{a}" for a in authors]
    if len(parts) == 1:
        return parts[0]
    return f"({' OR '.join(parts)})"


def build_date_query(days_ago=None, start=None, end=None, today=None):
    """Build a created: range from a days-ago window or explicit start/end dates."""
    if days_ago:
        today = today or date.today()
        return f"created:>={(today - timedelta(days=days_ago)).strftime(DATE_FORMAT)}"

    conditions = []
    if start:
        conditions.append(f"created:>={start.strftime(DATE_FORMAT)}")
    if end:
        conditions.append(f"created:<={end.strftime(DATE_FORMAT)}")
    return " ".join(conditions)


def build_search_query(query, today=None):
    """Render an ArticleQuery as a search string ('' when there is nothing to filter on)."""
    parts = []
    date_part = build_date_query(days_ago=query.days_ago, today=today)
    if date_part:
        parts.append(date_part)
    for tags, logic in query.tag_filters:
        tag_part = build_tag_query(tags, logic)
        if tag_part:
            parts.append(tag_part)
    for authors in query.author_filters:
        author_part = build_author_query(authors)
        if author_part:
            parts.append(author_part)
    return " ".join(parts)


def filter_by_likes(articles, min_likes):
    if not min_likes:
        return list(articles)
    return [a for a in articles if a.likes_count >= min_likes]
