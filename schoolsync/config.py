"""
SchoolSync — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module reads its knobs from the `settings` singleton.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

# Load .env from project root (one level up from schoolsync/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM — provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str

    # Gmail
    GOOGLE_CREDENTIALS_PATH: str = "credentials.json"
    GOOGLE_TOKEN_PATH: str = "token.json"

    # SQLite
    DATABASE_PATH: str = "data/schoolsync.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    TIMEZONE: str = "Europe/London"

    # Sync
    SYNC_LOOKBACK_MONTHS: int = 2
    SYNC_MAX_RESULTS: int = 50
    SYNC_HISTORY_LIMIT: int = 20
    CLASSIFIER_TIMEOUT_SECONDS: float = 60.0
    UNATTRIBUTED_POLICY: str = "first_child"   # "first_child" | "unassigned"

    # Auto-sync scheduler
    SCHEDULER_POLL_SECONDS: int = 30
    DAILY_WINDOW_MINUTES: int = 5

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("UNATTRIBUTED_POLICY")
    @classmethod
    def check_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("first_child", "unassigned"):
            raise ValueError(f"UNATTRIBUTED_POLICY must be first_child or unassigned, got {v!r}")
        return v

    @field_validator("SYNC_LOOKBACK_MONTHS", "SCHEDULER_POLL_SECONDS", "DAILY_WINDOW_MINUTES")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys.

    Every Settings field is read from the variable of the same name; unset
    variables keep the model default.
    """
    for key in ("TELEGRAM_BOT_TOKEN", "LLM_API_KEY"):
        value = os.getenv(key, "")
        if not value or value.startswith("your-"):
            print(f"ERROR: {key} is missing or not set in .env", file=sys.stderr)
            sys.exit(1)

    overrides = {
        name: os.environ[name]
        for name in Settings.model_fields
        if name in os.environ
    }
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env:\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton — imported by all other modules as:
#   from schoolsync.config import settings
settings = _load_settings()
