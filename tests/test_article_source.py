"""Tests for article_source module."""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from article_filter import ArticleQuery
from article_source import ArticleSourceClient, SearchResult, parse_article
from errors import ArticleSourceError


def _item(item_id, likes=1, **kwargs):
    item = {
        "id": item_id,
        "title": f"Title {item_id}",
        "body": "body",
        "user": {"id": "author1"},
        "tags": [{"name": "python"}, {"name": "asyncio"}],
        "likes_count": likes,
        "created_at": "2025-05-02T10:00:00Z",
        "private": False,
        "url": f"https://example.com/items/{item_id}",
    }
    item.update(kwargs)
    return item


def _response(items, total=None, remaining="900"):
    response = MagicMock()
    response.json.return_value = items
    response.headers = {
        "Total-Count": str(len(items) if total is None else total),
        "Rate-Remaining": remaining,
        "Rate-Reset": "1746230400",
    }
    return response


class TestParseArticle:
    def test_fields(self):
        article = parse_article(_item("abc", likes=7))
        assert article.id == "abc"
        assert article.author == "author1"
        assert article.tags == ("python", "asyncio")
        assert article.likes_count == 7
        assert article.published_at.utcoffset().total_seconds() == 0

    def test_missing_optional_fields(self):
        article = parse_article({"id": 5, "title": "t"})
        assert article.id == "5"
        assert article.tags == ()
        assert article.published_at is None


class TestSearchResult:
    def test_max_page(self):
        assert SearchResult(articles=[], total_count=250, per_page=100).max_page == 3
        assert SearchResult(articles=[], total_count=0).max_page == 1


class TestArticleSourceClient:
    def test_search_query_sends_auth_and_params(self):
        client = ArticleSourceClient("https://api.example.com/v2", token="secret")
        with patch("article_source.requests.get", return_value=_response([_item("a")])) as get:
            result = client.search_query("tag:python", page=2, per_page=50)

        args, kwargs = get.call_args
        assert args[0] == "https://api.example.com/v2/items"
        assert kwargs["params"] == {"query": "tag:python", "page": 2, "per_page": 50}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == 10
        assert result.rate_limit_remaining == 900
        assert [a.id for a in result.articles] == ["a"]

    def test_search_by_authors_tags_and_date(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        response = _response([_item("a"), _item("b")], total=230)
        with patch("article_source.requests.get", return_value=response) as get:
            result = client.search(authors=["alice"], tags=["python", "go"],
                                   min_published_date=date(2025, 5, 1), page=3, per_page=20)

        params = get.call_args.kwargs["params"]
        assert params["query"] == "created:>=2025-05-01 (tag:python OR tag:go) user:alice"
        assert (params["page"], params["per_page"]) == (3, 20)
        assert isinstance(result, SearchResult)
        assert result.total_count == 230
        assert result.max_page == 12
        assert [a.id for a in result.articles] == ["a", "b"]

    def test_search_and_tags(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", return_value=_response([])) as get:
            client.search(tags=["python", "asyncio"], tag_logic="AND")
        assert get.call_args.kwargs["params"]["query"] == "tag:python tag:asyncio"

    def test_low_rate_limit_warns(self, capsys):
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", return_value=_response([], remaining="3")):
            client.search_query("tag:go")
        assert "rate limit low" in capsys.readouterr().out

    def test_paginates_until_total(self):
        pages = [
            _response([_item(f"p1-{i}") for i in range(100)], total=150),
            _response([_item(f"p2-{i}") for i in range(50)], total=150),
        ]
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", side_effect=pages) as get:
            articles = client.search_all("tag:python")
        assert len(articles) == 150
        assert [c.kwargs["params"]["page"] for c in get.call_args_list] == [1, 2]

    def test_http_error_is_wrapped(self):
        response = _response([])
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("503")
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", return_value=response):
            with pytest.raises(ArticleSourceError):
                client.search_query("tag:python")

    def test_timeout_is_wrapped(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(ArticleSourceError) as exc:
                client.search_query("tag:python")
        assert isinstance(exc.value.__cause__, requests.exceptions.Timeout)

    def test_search_by_date_range_query(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get", return_value=_response([])) as get:
            client.search_by_date_range(date(2025, 5, 2), date(2025, 5, 2))
        assert get.call_args.kwargs["params"]["query"] == "created:>=2025-05-02 created:<=2025-05-02"

    def test_search_feed_empty_query_skips_request(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        with patch("article_source.requests.get") as get:
            assert client.search_feed(ArticleQuery()) == []
        get.assert_not_called()

    def test_search_feed(self):
        client = ArticleSourceClient("https://api.example.com/v2")
        query = ArticleQuery(tag_filters=[(("python", "go"), "OR")])
        with patch("article_source.requests.get", return_value=_response([_item("a")])) as get:
            articles = client.search_feed(query, today=date(2025, 5, 3))
        assert get.call_args.kwargs["params"]["query"] == "(tag:python OR tag:go)"
        assert [a.id for a in articles] == ["a"]
