#!/usr/bin/env python3
"""
Candidate de-duplication and selection for program builds.
Drops articles already covered by earlier programs of the same source,
collapses near-identical reposts (same topic, different id) and ranks what
is left by likes.
"""

import re
from difflib import SequenceMatcher


def normalize_title(title):
    """Normalize title for comparison by removing bracket tags and cleaning."""
    # Remove tags like [Update] or 【Series】
    cleaned = re.sub(r'[\[【].*?[\]】]\s*', '', title or '')
    cleaned = cleaned.lower().strip()
    return cleaned


def title_similarity(title1, title2):
    """Calculate similarity ratio between two titles (0.0 to 1.0)."""
    norm1 = normalize_title(title1)
    norm2 = normalize_title(title2)
    if not norm1 and not norm2:
        return 1.0
    return SequenceMatcher(None, norm1, norm2).ratio()


def dedupe_by_id(articles):
    """Keep the first occurrence of every article id, preserving order."""
    seen = set()
    unique = []
    for article in articles:
        if article.id in seen:
            continue
        seen.add(article.id)
        unique.append(article)
    return unique


def collapse_similar_titles(articles, similarity_threshold=0.9):
    """
    Collapse reposts of the same story.

    When two titles are at least `similarity_threshold` similar only the
    better-liked article survives; on a tie the earlier one is kept.
    Survivor order follows the input order.
    """
    kept = []
    for article in articles:
        match_index = None
        for i, existing in enumerate(kept):
            if title_similarity(article.title, existing.title) >= similarity_threshold:
                match_index = i
                break

        if match_index is None:
            kept.append(article)
        elif article.likes_count > kept[match_index].likes_count:
            kept[match_index] = article
    return kept


def select_candidates(articles, used_ids=(), max_articles=None, min_likes=0,
                      similarity_threshold=0.9):
    """
    Pick the candidate articles for a build.

    Args:
        articles: Articles returned by the article source
        used_ids: Ids already used by earlier programs of the same source
        max_articles: Cap on the number of candidates (None for no cap)
        min_likes: Minimum likes an article needs to be considered
        similarity_threshold: Title similarity treated as the same story

    Returns:
        Candidates ranked by likes (descending, stable), private articles excluded.
    """
    used = set(used_ids)
    fresh = [
        a for a in dedupe_by_id(articles)
        if a.id not in used and not a.private and a.likes_count >= min_likes
    ]
    skipped = len(articles) - len(fresh)

    collapsed = collapse_similar_titles(fresh, similarity_threshold)
    ranked = sorted(collapsed, key=lambda a: a.likes_count, reverse=True)
    if max_articles is not None:
        ranked = ranked[:max_articles]

    print(f"  ✅ Candidates: {len(ranked)} articles")
    print(f"  🔄 Reposts collapsed: {len(fresh) - len(collapsed)}")
    print(f"  ⏭️  Skipped: {skipped} used, private, duplicate or under-liked")
    return ranked


def format_previous_coverage_context(articles, previous_titles, similarity_threshold=0.7):
    """Format follow-ups to earlier coverage for the script prompt."""
    lines = []
    for article in articles:
        for title in previous_titles:
            if title_similarity(article.title, title) >= similarity_threshold:
                lines.append(f"- \"{article.title}\" follows up on the earlier story \"{title}\"")
                break

    if not lines:
        return ""
    return "\n".join(["\n**FOLLOW-UPS - Topics covered in earlier programs:**"] + lines)
