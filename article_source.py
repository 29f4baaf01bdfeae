#!/usr/bin/env python3
"""
Article source client (Qiita-compatible items API).
Fetches articles by search query and auto-paginates at 100 items per page.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime

import requests

from article_filter import (
    PER_PAGE_ITEMS,
    build_author_query,
    build_date_query,
    build_search_query,
    build_tag_query,
)
from errors import ArticleSourceError
from models import Article

REQUEST_TIMEOUT = 10


@dataclass
class SearchResult:
    articles: list
    total_count: int
    page: int = 1
    per_page: int = PER_PAGE_ITEMS
    rate_limit_remaining: int = None
    rate_limit_reset: int = None

    @property
    def max_page(self):
        if self.per_page <= 0:
            return 1
        return max(1, math.ceil(self.total_count / self.per_page))


@dataclass
class ArticleSourceClient:
    base_url: str
    token: str = ""
    timeout: float = REQUEST_TIMEOUT
    last_rate_limit: dict = field(default_factory=dict)

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def search_query(self, query, page=1, per_page=PER_PAGE_ITEMS):
        """Run one page of a raw search query."""
        params = {"query": query, "page": page, "per_page": per_page}
        try:
            response = requests.get(
                f"{self.base_url}/items",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            items = response.json()
        except requests.exceptions.RequestException as e:
            raise ArticleSourceError(f"Article search failed: {e}", context=params) from e
        except ValueError as e:
            raise ArticleSourceError(f"Article search returned invalid JSON: {e}", context=params) from e

        result = SearchResult(
            articles=[parse_article(item) for item in items],
            total_count=_int_header(response.headers, "Total-Count", len(items)),
            page=page,
            per_page=per_page,
            rate_limit_remaining=_int_header(response.headers, "Rate-Remaining"),
            rate_limit_reset=_int_header(response.headers, "Rate-Reset"),
        )
        self.last_rate_limit = {
            "remaining": result.rate_limit_remaining,
            "reset": result.rate_limit_reset,
        }
        if result.rate_limit_remaining is not None and result.rate_limit_remaining < 10:
            print(f"  ⚠️ Article API rate limit low: {result.rate_limit_remaining} requests left")
        return result

    def search(self, authors=(), tags=(), min_published_date=None, page=1,
               per_page=PER_PAGE_ITEMS, tag_logic="OR"):
        """Search one page by authors, tags and a lower publish-date bound."""
        parts = [
            build_date_query(start=min_published_date),
            build_tag_query(tags, tag_logic),
            build_author_query(authors),
        ]
        query = " ".join(p for p in parts if p)
        return self.search_query(query, page=page, per_page=per_page)

    def search_all(self, query, per_page=PER_PAGE_ITEMS, start_page=1):
        """Fetch every page of a search query."""
        articles = []
        page = start_page
        while True:
            result = self.search_query(query, page=page, per_page=per_page)
            articles.extend(result.articles)
            if page >= result.max_page or not result.articles:
                break
            page += 1
        return articles

    def search_by_date_range(self, start, end):
        """Fetch every article published between two dates (inclusive)."""
        query = build_date_query(start=start, end=end)
        print(f"📥 Fetching articles published {start} to {end}...")
        articles = self.search_all(query)
        print(f"✅ Loaded {len(articles)} articles")
        return articles

    def search_feed(self, article_query, today=None):
        """Fetch every article matching a personalized feed's query."""
        query = build_search_query(article_query, today=today)
        if not query:
            return []
        print(f"📥 Searching articles: {query}")
        articles = self.search_all(query, per_page=article_query.per_page,
                                   start_page=article_query.page)
        print(f"✅ Loaded {len(articles)} articles")
        return articles


def _int_header(headers, name, default=None):
    value = headers.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_article(item):
    """Convert an items-API JSON object into an Article."""
    created = item.get("created_at")
    return Article(
        id=str(item["id"]),
        title=item.get("title", ""),
        body=item.get("body", ""),
        author=(item.get("user") or {}).get("id", ""),
        tags=tuple(t.get("name", "") for t in item.get("tags", [])),
        likes_count=int(item.get("likes_count", 0)),
        published_at=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
        private=bool(item.get("private", False)),
        url=item.get("url", ""),
    )
