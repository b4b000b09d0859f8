"""Next-trigger calculator — pure business logic.

Given an alarm and the current instant, finds the epoch-millisecond time at
which the alarm must ring next, or None if it never will.

No I/O and no clock reads: ``now`` is always passed in, and randomness comes
from a caller-supplied or per-call ``random.Random``.
"""

from __future__ import annotations

import logging
import random
from datetime import date, datetime, timedelta, tzinfo

from src.data.models import (
    Alarm,
    FixedSchedule,
    WindowSchedule,
    sunday_first_weekday,
)

logger = logging.getLogger(__name__)

MIN_LEAD_SECONDS = 30   # enabling inside a window rings no sooner than this
LOOKAHEAD_DAYS = 7


def to_epoch_ms(dt: datetime) -> int:
    """Epoch millis for *dt* (naive values are local time)."""
    return round(dt.timestamp() * 1000)


def from_epoch_ms(ms: int, tz: tzinfo | None = None) -> datetime:
    """Inverse of to_epoch_ms; naive local time when *tz* is None."""
    return datetime.fromtimestamp(ms / 1000, tz=tz)


def calculate_next_trigger(
    alarm: Alarm,
    now: datetime,
    rng: random.Random | None = None,
) -> int | None:
    """Return the next trigger (epoch ms, strictly after *now*) or None.

    Scans today plus the following week, skipping inactive weekdays, and
    returns the first trigger the alarm's schedule yields. A window that
    crosses midnight is also checked against yesterday's occurrence, since
    at 01:00 we may still be inside a 23:00-02:00 window opened yesterday.
    """
    if not alarm.enabled or not alarm.active_days or alarm.schedule is None:
        return None

    if rng is None:
        rng = random.Random()

    active_days = sorted(alarm.active_days)
    today = now.date()

    schedule = alarm.schedule
    if isinstance(schedule, WindowSchedule) and schedule.crosses_midnight:
        yesterday = today - timedelta(days=1)
        if sunday_first_weekday(yesterday) in active_days:
            trigger = resolve_window(alarm, yesterday, now, rng)
            if trigger is not None:
                logger.debug("Using overnight window opened on %s", yesterday)
                return trigger

    for offset in range(LOOKAHEAD_DAYS + 1):
        candidate = today + timedelta(days=offset)
        if sunday_first_weekday(candidate) not in active_days:
            continue

        if isinstance(schedule, FixedSchedule):
            trigger = resolve_fixed(alarm, candidate, now)
        else:
            trigger = resolve_window(alarm, candidate, now, rng)

        if trigger is not None:
            return trigger

    return None


def next_trigger_from_now(alarm: Alarm, rng: random.Random | None = None) -> int | None:
    """calculate_next_trigger against the current wall-clock time."""
    return calculate_next_trigger(alarm, datetime.now(), rng)


def resolve_fixed(alarm: Alarm, candidate_date: date, now: datetime) -> int | None:
    """Fixed time on *candidate_date*, or None if it is not after *now*."""
    schedule = alarm.schedule
    if not isinstance(schedule, FixedSchedule):
        return None

    # Compare instants, not wall-clock times: same-zone datetime comparison
    # ignores fold, which matters in the repeated hour after a DST fall-back
    trigger_ms = to_epoch_ms(schedule.time.on(candidate_date, tz=now.tzinfo))
    if trigger_ms <= to_epoch_ms(now):
        return None
    return trigger_ms


def resolve_window(
    alarm: Alarm,
    candidate_date: date,
    now: datetime,
    rng: random.Random,
) -> int | None:
    """Random instant in the window opening on *candidate_date*.

    Returns None when that occurrence is already over, too close to its
    end to honour the lead time, or already fired in.
    """
    schedule = alarm.schedule
    if not isinstance(schedule, WindowSchedule):
        return None

    start_ms = to_epoch_ms(schedule.start.on(candidate_date, tz=now.tzinfo))
    end_day = candidate_date + timedelta(days=1) if schedule.crosses_midnight else candidate_date
    end_ms = to_epoch_ms(schedule.end.on(end_day, tz=now.tzinfo))
    now_ms = to_epoch_ms(now)

    if _fired_within(alarm.last_fired_at, start_ms, end_ms):
        logger.debug(
            "Skipping window %s-%s on %s: already fired at %d",
            schedule.start, schedule.end, candidate_date, alarm.last_fired_at,
        )
        return None

    if now_ms > end_ms:
        return None

    if end_ms == start_ms:
        # Zero-width window: the only instant it has is its start
        return start_ms if start_ms > now_ms else None

    if now_ms > start_ms:
        floor_ms = now_ms + MIN_LEAD_SECONDS * 1000
    else:
        floor_ms = max(start_ms, now_ms + 1)

    # Whole-second floor, so truncating the sample never goes below it
    floor_ms = -(-floor_ms // 1000) * 1000
    if floor_ms >= end_ms:
        return None

    return _sample(floor_ms, end_ms, rng)


def _sample(floor_ms: int, end_ms: int, rng: random.Random) -> int:
    """Uniform draw in [floor_ms, end_ms), truncated to whole seconds."""
    offset = rng.randrange(end_ms - floor_ms)
    return (floor_ms + offset) // 1000 * 1000


def _fired_within(last_fired_at: int | None, start_ms: int, end_ms: int) -> bool:
    if last_fired_at is None:
        return False
    return start_ms <= last_fired_at < end_ms
