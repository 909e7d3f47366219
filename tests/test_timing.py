import random
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from nurture.errors import ValidationError
from nurture.schema import NurtureStage
from nurture.timing import apply_jitter, clamp_to_business_hours, next_stage, resolve_tz

CHICAGO = ZoneInfo("America/Chicago")


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_day_1_advances_to_day_2_inside_window():
    sent = _utc(2025, 1, 6, 15, 0)  # 09:00 CST
    for seed in range(25):
        nxt = next_stage(NurtureStage.DAY_1, sent, tz=CHICAGO, rng=random.Random(seed))
        assert nxt.stage == NurtureStage.DAY_2
        assert _utc(2025, 1, 7, 15, 15) <= nxt.send_at <= _utc(2025, 1, 7, 16, 5)
        local = nxt.send_at.astimezone(CHICAGO).time()
        assert time(9, 15) <= local < time(20, 0)


@pytest.mark.parametrize(
    "stage,successor,hours",
    [
        (NurtureStage.DAY_2, NurtureStage.DAY_3, 24),
        (NurtureStage.DAY_3, NurtureStage.DAY_5, 48),
        (NurtureStage.DAY_5, NurtureStage.DAY_7, 48),
    ],
)
def test_stage_offsets(stage, successor, hours):
    sent = _utc(2025, 1, 6, 16, 0)  # 10:00 CST
    nxt = next_stage(stage, sent, tz=CHICAGO, rng=random.Random(1))
    assert nxt.stage == successor
    delta = nxt.send_at - sent
    assert timedelta(hours=hours, minutes=15) <= delta <= timedelta(hours=hours, minutes=65)


@pytest.mark.parametrize("stage", [NurtureStage.DAY_7, NurtureStage.LONG_TERM, "FOO", None])
def test_terminal_stages(stage):
    nxt = next_stage(stage, _utc(2025, 1, 6, 16, 0))
    assert nxt.terminal
    assert nxt.stage is None and nxt.send_at is None


def test_accepts_iso_string_with_z():
    nxt = next_stage("DAY_1", "2025-01-06T15:00:00Z", tz=CHICAGO, rng=random.Random(3))
    assert nxt.stage == NurtureStage.DAY_2
    assert nxt.send_at.tzinfo is not None


def test_invalid_timestamp_raises():
    with pytest.raises(ValidationError):
        next_stage(NurtureStage.DAY_1, "not-a-date")


def test_naive_datetime_is_utc():
    naive = next_stage(NurtureStage.DAY_1, datetime(2025, 1, 6, 15, 0), tz=CHICAGO, rng=random.Random(9))
    aware = next_stage(NurtureStage.DAY_1, _utc(2025, 1, 6, 15, 0), tz=CHICAGO, rng=random.Random(9))
    assert naive == aware


def test_jitter_bounds():
    base = _utc(2025, 1, 6, 12, 0)
    rng = random.Random(42)
    for _ in range(200):
        shifted = apply_jitter(base, rng=rng)
        assert timedelta(minutes=15) <= shifted - base <= timedelta(minutes=65)
    assert apply_jitter(base, min_minutes=30, max_minutes=30) == base + timedelta(minutes=30)


def test_clamp_before_window_moves_to_same_day_start():
    early = _utc(2025, 1, 7, 13, 0)  # 07:00 CST
    assert clamp_to_business_hours(early, CHICAGO) == _utc(2025, 1, 7, 15, 15)


def test_clamp_after_window_moves_to_next_day_start():
    late = _utc(2025, 1, 7, 3, 0)  # 21:00 CST on Jan 6
    assert clamp_to_business_hours(late, CHICAGO) == _utc(2025, 1, 7, 15, 15)


def test_clamp_at_window_end_moves_to_next_day():
    at_end = _utc(2025, 1, 7, 2, 0)  # 20:00 CST on Jan 6
    assert clamp_to_business_hours(at_end, CHICAGO) == _utc(2025, 1, 7, 15, 15)


def test_clamp_inside_window_is_unchanged():
    inside = _utc(2025, 1, 6, 18, 30)  # 12:30 CST
    assert clamp_to_business_hours(inside, CHICAGO) == inside


class _FixedJitter:
    def __init__(self, minutes):
        self.minutes = minutes

    def randint(self, lo, hi):
        return self.minutes


def test_late_send_rolls_into_next_morning():
    # 19:30 CST + 24h + 45min jitter = 20:15 CST → next day 09:15 CST
    sent = _utc(2025, 1, 7, 1, 30)
    nxt = next_stage(NurtureStage.DAY_1, sent, tz=CHICAGO, rng=_FixedJitter(45))
    assert nxt.stage == NurtureStage.DAY_2
    assert nxt.send_at == _utc(2025, 1, 8, 15, 15)


def test_resolve_tz_falls_back_to_default():
    assert resolve_tz("Not/AZone") == ZoneInfo("America/Chicago")
    assert resolve_tz("America/New_York") == ZoneInfo("America/New_York")
