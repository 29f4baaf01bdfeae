#!/usr/bin/env python3
"""
Language generation adapters.
Claude writes article summaries and the program script; OpenAI embeddings
vectorize finished scripts for search.
"""

from anthropic import Anthropic, APIError
from openai import OpenAI, OpenAIError

from config_loader import load_program_config, load_prompts_config
from errors import ProgramBuildError, ScriptGenerationError

SUMMARY_MAX_TOKENS = 1000
SCRIPT_MAX_TOKENS = 8000
BODY_MAX_CHARS = 12000


def strip_code_fences(text):
    """Strip markdown code fences Claude sometimes wraps JSON in."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def format_articles_text(articles):
    """Format candidate articles for the script prompt."""
    blocks = []
    for i, article in enumerate(articles, 1):
        blocks.append(
            f"{i}. article_id: {article.id}\n"
            f"   title: {article.title}\n"
            f"   author: {article.author}\n"
            f"   likes: {article.likes_count}\n"
            f"   summary: {article.summary}"
        )
    return "\n\n".join(blocks)


def build_script_prompt(program_title, program_date, articles, context=None):
    template = load_prompts_config()["script_generation"]
    if context:
        context_instruction = (
            "\n   After the greeting, introduce the listener material under CONTEXT"
            " and respond to it briefly."
        )
        context_text = f"\nCONTEXT:\n{context}\n"
    else:
        context_instruction = ""
        context_text = ""

    return template["template"].format(
        program_title=program_title,
        date_str=program_date.strftime("%A, %B %d, %Y"),
        article_count=len(articles),
        context_instruction=context_instruction,
        explanation_min=template["explanation_min"],
        explanation_max=template["explanation_max"],
        articles_text=format_articles_text(articles),
        context_text=context_text,
    )


def build_summary_prompt(article, max_chars):
    template = load_prompts_config()["article_summary"]["template"]
    return template.format(
        max_chars=max_chars,
        title=article.title,
        author=article.author,
        tags=", ".join(article.tags),
        body=article.body[:BODY_MAX_CHARS],
    )


class ClaudeLanguageModel:
    """Summaries and scripts via the Anthropic messages API (no retries)."""

    def __init__(self, api_key, script_model, summary_model, timeout=120.0, client=None):
        if client is None:
            if not api_key:
                raise ScriptGenerationError("ANTHROPIC_API_KEY not found")
            client = Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.script_model = script_model
        self.summary_model = summary_model

    def _complete(self, model, prompt, max_tokens):
        try:
            response = self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}]
            )
        except APIError as e:
            raise ScriptGenerationError(f"Claude request failed: {e}", context={"model": model}) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        if not text.strip():
            raise ScriptGenerationError("Claude returned an empty response", context={"model": model})
        return text

    def summarize(self, article, max_chars=800):
        """Summarize one article as plain prose."""
        prompt = build_summary_prompt(article, max_chars)
        return self._complete(self.summary_model, prompt, SUMMARY_MAX_TOKENS).strip()

    def generate_script(self, program_date, articles, context=None, program_title=None):
        """Return Claude's raw JSON script text."""
        program_title = program_title or load_program_config()["title"]
        prompt = build_script_prompt(program_title, program_date, articles, context)
        return self._complete(self.script_model, prompt, SCRIPT_MAX_TOKENS)


class OpenAIEmbedder:
    """Script vectorization via the OpenAI embeddings API."""

    def __init__(self, api_key, model, timeout=120.0, client=None):
        if client is None:
            if not api_key:
                raise ProgramBuildError("OPENAI_API_KEY not found")
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.model = model

    def embed(self, text):
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
        except OpenAIError as e:
            raise ProgramBuildError(f"Embedding request failed: {e}") from e
        return list(response.data[0].embedding)
