"""Configuration constants for MoneySeed, read from the environment."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.environ.get("MONEYSEED_DATABASE_URL", "sqlite:///moneyseed.db")
LOG_PATH = os.environ.get("MONEYSEED_LOG_PATH") or None
SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")
USER_ID_HEADER = "X-User-Id"

SETTLEMENT_WINDOW_DAYS = _env_int("SETTLEMENT_WINDOW_DAYS", 30, minimum=0)
URGENT_AFTER_DAYS = _env_int("URGENT_AFTER_DAYS", 3, minimum=0)
MAX_REWARD_AMOUNT = _env_int("MAX_REWARD_AMOUNT", 1_000_000, minimum=1)

DEFAULT_STREAK_TARGET = _env_int("DEFAULT_STREAK_TARGET", 7, minimum=1)
DEFAULT_STREAK_BONUS = _env_int("DEFAULT_STREAK_BONUS", 1000, minimum=0)
DEFAULT_STREAK_REPEAT = _env_bool("DEFAULT_STREAK_REPEAT", True)
STREAK_AUTO_CLAIM = _env_bool("STREAK_AUTO_CLAIM", True)

__all__ = [
    "DATABASE_URL",
    "LOG_PATH",
    "SESSION_SECRET",
    "USER_ID_HEADER",
    "SETTLEMENT_WINDOW_DAYS",
    "URGENT_AFTER_DAYS",
    "MAX_REWARD_AMOUNT",
    "DEFAULT_STREAK_TARGET",
    "DEFAULT_STREAK_BONUS",
    "DEFAULT_STREAK_REPEAT",
    "STREAK_AUTO_CLAIM",
]
