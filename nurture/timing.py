# nurture/timing.py
"""
Stage Timing Policy
-------------------
Computes the next nurture stage and send time for the tight loop:

    DAY_1 ─24h→ DAY_2 ─24h→ DAY_3 ─48h→ DAY_5 ─48h→ DAY_7 (stop)

Offsets are measured from the previous send. Every target gets 15–65 min of
jitter ("bot breaker") and is then clamped into the daily send window
[09:15, 20:00) in the lead's local time ("safety valve").
"""

from __future__ import annotations
import random
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone, tzinfo
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nurture.config import settings
from nurture.errors import ValidationError
from nurture.runtime import get_logger, parse_timestamp
from nurture.schema import NurtureStage

logger = get_logger("timing")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
STAGE_SEQUENCE: Tuple[NurtureStage, ...] = (
    NurtureStage.DAY_1,
    NurtureStage.DAY_2,
    NurtureStage.DAY_3,
    NurtureStage.DAY_5,
    NurtureStage.DAY_7,
)

# Hours from the current stage's send to the next stage
STAGE_NEXT_OFFSET_HOURS: Dict[NurtureStage, int] = {
    NurtureStage.DAY_1: 24,
    NurtureStage.DAY_2: 24,
    NurtureStage.DAY_3: 48,
    NurtureStage.DAY_5: 48,
}


@dataclass(frozen=True)
class NextNurture:
    stage: Optional[NurtureStage]
    send_at: Optional[datetime]

    @property
    def terminal(self) -> bool:
        return self.stage is None


TERMINAL = NextNurture(None, None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def coerce_stage(value: object) -> Optional[NurtureStage]:
    if isinstance(value, NurtureStage):
        return value
    try:
        return NurtureStage(str(value or "").strip().upper())
    except ValueError:
        return None


def resolve_tz(name: Optional[str] = None) -> tzinfo:
    """Lead-local zone by IANA name; falls back to NURTURE_TZ."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r; using %s", name, settings().NURTURE_TZ)
    return settings().tz()


def apply_jitter(
    target: datetime,
    *,
    rng: Optional[random.Random] = None,
    min_minutes: Optional[int] = None,
    max_minutes: Optional[int] = None,
) -> datetime:
    s = settings()
    lo = s.JITTER_MIN_MINUTES if min_minutes is None else min_minutes
    hi = s.JITTER_MAX_MINUTES if max_minutes is None else max_minutes
    minutes = (rng or random).randint(lo, max(lo, hi))
    return target + timedelta(minutes=minutes)


def clamp_to_business_hours(
    target: datetime,
    tz: tzinfo,
    *,
    start: Optional[dtime] = None,
    end: Optional[dtime] = None,
) -> datetime:
    """
    Move ``target`` into the daily window [start, end) of ``tz``.

    Before the window → same local day at ``start``.
    At/after ``end`` → next local day at ``start``.
    Returns an aware UTC datetime.
    """
    s = settings()
    start = start or s.BUSINESS_START
    end = end or s.BUSINESS_END

    local = target.astimezone(tz)
    wall = local.time().replace(tzinfo=None)
    if start <= wall < end:
        return local.astimezone(timezone.utc)

    day = local.date() if wall < start else local.date() + timedelta(days=1)
    snapped = datetime.combine(day, start, tzinfo=tz)
    return snapped.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Core policy
# ---------------------------------------------------------------------------
def next_stage(
    current_stage: object,
    last_sent_at: datetime | str,
    *,
    tz: Optional[tzinfo] = None,
    rng: Optional[random.Random] = None,
) -> NextNurture:
    """Given the current stage and when it was sent, compute the next stage and send time."""
    stage = coerce_stage(current_stage)
    if stage is None or stage not in STAGE_SEQUENCE or stage == STAGE_SEQUENCE[-1]:
        return TERMINAL

    sent_at = parse_timestamp(last_sent_at)
    if sent_at is None:
        raise ValidationError(f"Invalid last_sent_at: {last_sent_at!r}")

    successor = STAGE_SEQUENCE[STAGE_SEQUENCE.index(stage) + 1]
    target = sent_at + timedelta(hours=STAGE_NEXT_OFFSET_HOURS[stage])
    target = apply_jitter(target, rng=rng)
    target = clamp_to_business_hours(target, tz or resolve_tz())
    return NextNurture(successor, target)


__all__ = [
    "STAGE_SEQUENCE",
    "STAGE_NEXT_OFFSET_HOURS",
    "NextNurture",
    "TERMINAL",
    "apply_jitter",
    "clamp_to_business_hours",
    "coerce_stage",
    "next_stage",
    "resolve_tz",
]
