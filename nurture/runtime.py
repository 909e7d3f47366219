"""
🌱 Nurture runtime helpers
--------------------------
Process-wide logging setup, UTC timestamp handling, US phone normalization
and a small backoff retry used around store calls.
"""

from __future__ import annotations
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_NON_DIGITS = re.compile(r"\D+")
_configured = False


# ────────────────────────────────────────────────
# Logging
# ────────────────────────────────────────────────
def _redact(secret: Optional[str]) -> str:
    if not secret or not secret.strip():
        return "<unset>"
    s = secret.strip()
    return f"{s[:3]}…({len(s)})" if len(s) > 6 else "***"


def _resolve_level(level: int | str | None) -> int:
    raw = level if level is not None else os.getenv("NURTURE_LOG_LEVEL", "INFO")
    if isinstance(raw, int):
        return raw
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Configure the root logger on first call; later calls are no-ops."""
    global _configured
    if _configured:
        return
    logging.basicConfig(level=_resolve_level(level), format=LOG_FORMAT)
    _configured = True
    logging.getLogger("env").info(
        "store=%s base=%s telnyx=%s from=%s tz=%s",
        "memory" if os.getenv("NURTURE_FORCE_IN_MEMORY") else "airtable",
        os.getenv("AIRTABLE_BASE_ID") or "<unset>",
        _redact(os.getenv("TELNYX_API_KEY")),
        os.getenv("TELNYX_FROM_NUMBER") or "<unset>",
        os.getenv("NURTURE_TZ", "America/Chicago"),
    )


def get_logger(name: str = "nurture") -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# Timestamps (always aware UTC)
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """``2025-01-06T16:00:00Z``; naive input is read as UTC, sub-second precision is dropped."""
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def iso_now() -> str:
    return to_iso(utc_now())


def parse_timestamp(value: datetime | str | None) -> Optional[datetime]:
    """
    Coerce a datetime or ISO8601 string (``Z`` allowed) to aware UTC.

    Empty or unparseable input gives None.
    """
    if isinstance(value, datetime):
        parsed = value
    elif value is None or not str(value).strip():
        return None
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ────────────────────────────────────────────────
# Phones
# ────────────────────────────────────────────────
def only_digits(value: str | None) -> str:
    return _NON_DIGITS.sub("", str(value)) if value is not None else ""


def last_10_digits(value: str | None) -> Optional[str]:
    """Lookup key for a phone: its trailing 10 digits, or None when shorter."""
    digits = only_digits(value)
    return digits[-10:] if len(digits) >= 10 else None


def normalize_phone(value: str | None) -> Optional[str]:
    """
    E.164 for a US/CA number (10 digits, or 11 starting with 1).

    Other numbers are accepted only when written with a leading ``+`` and
    8 to 15 digits. Anything else gives None.
    """
    digits = only_digits(value)
    if len(digits) == 10:
        return "+1" + digits
    if len(digits) == 11 and digits[0] == "1":
        return "+" + digits
    if value and str(value).lstrip().startswith("+") and 8 <= len(digits) <= 15:
        return "+" + digits
    return None


# ────────────────────────────────────────────────
# Retry
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Call ``func``; on one of ``exceptions`` sleep and try again, up to ``retries`` extra times."""
    log = logger or get_logger(__name__)
    retry_on = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if attempt >= retries:
                log.error("Giving up after %d attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * backoff ** attempt
            log.warning("Attempt %d/%d failed (%s); retrying in %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
