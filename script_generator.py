#!/usr/bin/env python3
"""
Script generation: summarize candidate articles, ask the language model for a
structured script, then validate it against the candidate set.
"""

import json
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait

from dedup_articles import dedupe_by_id
from errors import ScriptGenerationError, ScriptValidationError
from llm_client import strip_code_fences
from models import SCRIPT_SCHEMA_VERSION, script_from_dict

SUMMARY_TIMEOUT_SECONDS = 300
SUMMARY_WORKERS = 4


def summarize_articles(language_model, articles, max_chars=800,
                       timeout=SUMMARY_TIMEOUT_SECONDS, max_workers=SUMMARY_WORKERS):
    """
    Summarize every article in parallel.

    Returns copies of the articles with `summary` filled in, in input order.
    Any failure (or the fan-in timeout) cancels the pending summaries and
    raises ScriptGenerationError.
    """
    if not articles:
        return []

    print(f"📝 Summarizing {len(articles)} articles...")
    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(articles)))
    try:
        futures = [executor.submit(language_model.summarize, a, max_chars) for a in articles]
        done, not_done = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)

        for future in futures:
            if future in done and future.exception() is not None:
                for pending in not_done:
                    pending.cancel()
                e = future.exception()
                if isinstance(e, ScriptGenerationError):
                    raise e
                raise ScriptGenerationError(f"Article summary failed: {e}") from e

        if not_done:
            for pending in not_done:
                pending.cancel()
            raise ScriptGenerationError(
                f"Article summaries timed out after {timeout}s",
                context={"pending": len(not_done)},
            )

        summarized = []
        for article, future in zip(articles, futures):
            summary = (future.result() or "").strip()[:max_chars]
            summarized.append(article.with_summary(summary))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    print(f"  ✅ Summarized {len(summarized)} articles")
    return summarized


def parse_script_response(text):
    """Parse the model's JSON output into a Script."""
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise ScriptGenerationError(f"Script response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ScriptGenerationError("Script response must be a JSON object")
    data.setdefault("schema_version", SCRIPT_SCHEMA_VERSION)

    try:
        return script_from_dict(data)
    except ScriptValidationError as e:
        raise ScriptGenerationError(f"Script response is malformed: {e}") from e


def validate_script(script, candidates):
    """
    Reconcile the generated segments with the candidate articles.

    - Segments for unknown article ids are dropped with a warning.
    - Every candidate must have at least one segment.
    - For duplicate segments the longest narration text wins; on a tie the
      first one is kept. Output follows the first appearance of each article.
    - A winning segment with no text is rejected.
    """
    candidate_ids = {a.id for a in candidates}
    winners = {}
    order = []

    for segment in script.segments:
        if segment.article_id not in candidate_ids:
            print(f"  ⚠️ Dropping segment for unknown article {segment.article_id}")
            continue
        current = winners.get(segment.article_id)
        if current is None:
            winners[segment.article_id] = segment
            order.append(segment.article_id)
        elif len(segment.text) > len(current.text):
            winners[segment.article_id] = segment

    missing = [a.id for a in candidates if a.id not in winners]
    if missing:
        raise ScriptValidationError(
            f"Script has no segment for articles: {', '.join(missing)}",
            context={"missing": missing},
        )

    for article_id in order:
        if not winners[article_id].text:
            raise ScriptValidationError(
                f"Segment for article {article_id} has no narration text",
                context={"article_id": article_id},
            )

    script.segments = [winners[article_id] for article_id in order]
    return script


class ScriptGenerator:
    def __init__(self, language_model, summary_max_chars=800,
                 summary_timeout=SUMMARY_TIMEOUT_SECONDS, max_workers=SUMMARY_WORKERS):
        self.language_model = language_model
        self.summary_max_chars = summary_max_chars
        self.summary_timeout = summary_timeout
        self.max_workers = max_workers

    def generate(self, program_date, articles, context=None, program_title=None):
        """Build a validated Script for the given candidate articles."""
        candidates = dedupe_by_id(articles)
        summarized = summarize_articles(
            self.language_model,
            candidates,
            max_chars=self.summary_max_chars,
            timeout=self.summary_timeout,
            max_workers=self.max_workers,
        )

        print(f"🎙️ Generating script for {len(summarized)} articles...")
        raw = self.language_model.generate_script(
            program_date, summarized, context=context, program_title=program_title
        )
        script = validate_script(parse_script_response(raw), summarized)
        print(f"  ✅ Script ready: {script.title} ({len(script.segments)} segments)")
        return script
