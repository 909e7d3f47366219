from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import time as dtime
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


def env_clock(key: str, default: str) -> dtime:
    """Parse an ``HH:MM`` wall-clock value; falls back to ``default`` when malformed."""
    raw = env_str(key, default) or default
    try:
        hour, minute = (int(part) for part in raw.strip().split(":", 1))
        return dtime(hour, minute)
    except ValueError:
        hour, minute = (int(part) for part in default.split(":", 1))
        return dtime(hour, minute)


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    LEADS_TABLE: str
    MESSAGES_TABLE: str
    TASKS_TABLE: str
    FORCE_IN_MEMORY: bool
    STORE_TIMEOUT_SEC: float
    TELNYX_API_KEY: Optional[str]
    TELNYX_MESSAGING_PROFILE_ID: Optional[str]
    TELNYX_FROM_NUMBER: Optional[str]
    TELNYX_API_URL: str
    TRANSPORT_TIMEOUT_SEC: float
    TRANSPORT_DRY_RUN: bool
    NURTURE_TZ: str
    BUSINESS_START: dtime
    BUSINESS_END: dtime
    JITTER_MIN_MINUTES: int
    JITTER_MAX_MINUTES: int
    SWEEP_BATCH_SIZE: int
    SWEEP_MAX_WORKERS: int
    CLAIM_TTL_SEC: int
    SNOOZE_BATCH_SIZE: int
    NOT_NOW_DAYS: int
    CRON_TOKEN: Optional[str]
    WEBHOOK_TOKEN: Optional[str]
    AGENT_ALERT_NUMBER: Optional[str]
    AGENT_NAME: str

    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.NURTURE_TZ)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        LEADS_TABLE=env_str("LEADS_TABLE", "Leads"),
        MESSAGES_TABLE=env_str("MESSAGES_TABLE", "Messages"),
        TASKS_TABLE=env_str("TASKS_TABLE", "Tasks"),
        FORCE_IN_MEMORY=env_bool("NURTURE_FORCE_IN_MEMORY", False),
        STORE_TIMEOUT_SEC=env_float("STORE_TIMEOUT_SEC", 15.0),
        TELNYX_API_KEY=env_str("TELNYX_API_KEY"),
        TELNYX_MESSAGING_PROFILE_ID=env_str("TELNYX_MESSAGING_PROFILE_ID"),
        TELNYX_FROM_NUMBER=env_str("TELNYX_FROM_NUMBER") or env_str("TELNYX_US_NUMBER"),
        TELNYX_API_URL=env_str("TELNYX_API_URL", "https://api.telnyx.com/v2/messages"),
        TRANSPORT_TIMEOUT_SEC=env_float("TRANSPORT_TIMEOUT_SEC", 15.0),
        TRANSPORT_DRY_RUN=env_bool("TRANSPORT_DRY_RUN", False),
        NURTURE_TZ=env_str("NURTURE_TZ", "America/Chicago"),
        BUSINESS_START=env_clock("BUSINESS_START", "09:15"),
        BUSINESS_END=env_clock("BUSINESS_END", "20:00"),
        JITTER_MIN_MINUTES=env_int("JITTER_MIN_MINUTES", 15),
        JITTER_MAX_MINUTES=env_int("JITTER_MAX_MINUTES", 65),
        SWEEP_BATCH_SIZE=env_int("SWEEP_BATCH_SIZE", 20),
        SWEEP_MAX_WORKERS=env_int("SWEEP_MAX_WORKERS", 4),
        CLAIM_TTL_SEC=env_int("CLAIM_TTL_SEC", 600),
        SNOOZE_BATCH_SIZE=env_int("SNOOZE_BATCH_SIZE", 100),
        NOT_NOW_DAYS=env_int("NOT_NOW_DAYS", 30),
        CRON_TOKEN=env_str("CRON_TOKEN") or env_str("NURTURE_SECRET"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        AGENT_ALERT_NUMBER=env_str("AGENT_ALERT_NUMBER"),
        AGENT_NAME=env_str("AGENT_NAME", "Machaih"),
    )


def refresh_settings() -> Settings:
    settings.cache_clear()
    return settings()
