#!/usr/bin/env python3
"""
Configuration loader for the narrated program builder.
Loads program text and audio settings from the config/ directory and
secrets, model names and timeouts from the environment.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path

import pytz

BASE_DIR = Path(__file__).parent
CONFIG_DIR = BASE_DIR / "config"

VARIANTS = ("daily", "personalized")


@lru_cache(maxsize=1)
def load_program_config():
    """Load main program configuration (cached)."""
    with open(CONFIG_DIR / "program.json", 'r') as f:
        return json.load(f)


@lru_cache(maxsize=1)
def load_prompts_config():
    """Load generation prompt templates (cached)."""
    with open(CONFIG_DIR / "prompts.json", 'r') as f:
        return json.load(f)


@lru_cache(maxsize=1)
def load_terms():
    """Load the pronunciation glossary as a list of {term, reading} dicts (cached)."""
    terms_path = CONFIG_DIR / "terms.json"
    if terms_path.exists():
        with open(terms_path, 'r') as f:
            return json.load(f)["terms"]
    return []


def get_variant_config(variant):
    """Get the settings block for 'daily' or 'personalized' programs."""
    if variant not in VARIANTS:
        raise KeyError(f"Unknown program variant: {variant}")
    return load_program_config()[variant]


def get_voice_for_variant(variant):
    """Get TTS voice for a program variant."""
    return get_variant_config(variant)["voice"]


def get_asset_path(name):
    """Resolve an audio asset from program.json relative to the repo root."""
    path = Path(load_program_config()["assets"][name])
    if not path.is_absolute():
        path = BASE_DIR / path
    return path


def _env_float(name, default):
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return float(value)


@dataclass(frozen=True)
class Settings:
    anthropic_api_key: str
    openai_api_key: str
    script_model: str
    summary_model: str
    tts_model: str
    embedding_model: str
    r2_account_id: str
    r2_access_key_id: str
    r2_secret_access_key: str
    bucket_name: str
    audio_url_prefix: str
    article_api_base_url: str
    article_api_token: str
    store_path: Path
    timezone: str
    llm_timeout_seconds: float
    tts_timeout_seconds: float
    media_timeout_seconds: float
    upload_timeout_seconds: float
    file_ready_timeout_seconds: float


def get_settings():
    """Read environment-backed settings (not cached so tests can patch env)."""
    return Settings(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        script_model=os.getenv("CLAUDE_SCRIPT_MODEL", "claude-sonnet-4-20250514"),
        summary_model=os.getenv("CLAUDE_SUMMARY_MODEL", "claude-3-5-haiku-latest"),
        tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1-hd"),
        embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
        r2_account_id=os.getenv("CF_ACCOUNT_ID", ""),
        r2_access_key_id=os.getenv("R2_ACCESS_KEY_ID", ""),
        r2_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", ""),
        bucket_name=os.getenv("R2_BUCKET_NAME", "tech-post-radio"),
        audio_url_prefix=os.getenv("PROGRAM_AUDIO_URL_PREFIX", "").rstrip("/"),
        article_api_base_url=os.getenv("ARTICLE_API_BASE_URL", "https://qiita.com/api/v2").rstrip("/"),
        article_api_token=os.getenv("ARTICLE_API_TOKEN", ""),
        store_path=Path(os.getenv("PROGRAM_STORE_PATH", str(BASE_DIR / "programs" / "store.json"))),
        timezone=os.getenv("PROGRAM_TIMEZONE", "Asia/Tokyo"),
        llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 120.0),
        tts_timeout_seconds=_env_float("TTS_TIMEOUT_SECONDS", 120.0),
        media_timeout_seconds=_env_float("MEDIA_TIMEOUT_SECONDS", 600.0),
        upload_timeout_seconds=_env_float("UPLOAD_TIMEOUT_SECONDS", 120.0),
        file_ready_timeout_seconds=_env_float("FILE_READY_TIMEOUT_SECONDS", 30.0),
    )


def get_program_now(tz_name=None):
    """Get current datetime in the program timezone."""
    tz_name = tz_name or get_settings().timezone
    return datetime.now(pytz.timezone(tz_name))


def get_program_date(tz_name=None):
    """Get today's program date in the program timezone."""
    return get_program_now(tz_name).date()


def get_all_config():
    """Load all file-based configuration at once."""
    return {
        'program': load_program_config(),
        'prompts': load_prompts_config(),
        'terms': load_terms(),
    }


if __name__ == "__main__":
    print("Testing configuration loader...")

    config = get_all_config()

    print(f"\n📻 Program: {config['program']['title']}")
    print(f"🗣️  Voices: daily={get_voice_for_variant('daily')}, personalized={get_voice_for_variant('personalized')}")
    print(f"📖 Glossary: {len(config['terms'])} terms")
    print(f"🤖 Prompts: {len(config['prompts'])} prompt templates")
    print(f"🕒 Program date: {get_program_date()}")

    print("\n✅ All configs loaded successfully!")
