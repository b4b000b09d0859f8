"""
Threshold Alarms — Data Models.

An alarm's schedule is a closed variant: either a fixed time of day or a
start/end window in which a random ring time is drawn. Records coming from
storage or from a client arrive in the flat shape (mode string plus optional
"HH:MM" fields) and are converted here into the closed domain type.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from enum import Enum

from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# 0=Sunday .. 6=Saturday, matching the phone/watch apps
SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(7)
ALL_DAYS: frozenset[int] = frozenset(range(7))


def sunday_first_weekday(d: date) -> int:
    """Weekday number of *d* with Sunday as 0."""
    # Python weekday: Mon=0..Sun=6
    return (d.weekday() + 1) % 7


class AlarmMode(Enum):
    FIXED = "FIXED"
    WINDOW = "WINDOW"


@dataclass(frozen=True, order=True)
class TimeOfDay:
    """Hour/minute pair; seconds are always zero."""

    hour: int
    minute: int

    def __post_init__(self) -> None:
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError(f"Hour/minute out of range: {self.hour}:{self.minute}")

    @classmethod
    def parse(cls, raw: str) -> TimeOfDay:
        """Parse "HH:MM". Raises ValueError on malformed input."""
        match = _HHMM_RE.match(str(raw or "").strip())
        if match is None:
            raise ValueError(f"Time must be in HH:MM format: {raw!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def on(self, day: date, tz: tzinfo | None = None) -> datetime:
        """Compose this time with *day* (second and microsecond = 0)."""
        return datetime(day.year, day.month, day.day, self.hour, self.minute, tzinfo=tz)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class FixedSchedule:
    """Ring once at the same time on every active day."""

    time: TimeOfDay

    @property
    def mode(self) -> AlarmMode:
        return AlarmMode.FIXED


@dataclass(frozen=True)
class WindowSchedule:
    """Ring once at a random instant in [start, end) on every active day.

    An end earlier than the start means the window runs past midnight.
    """

    start: TimeOfDay
    end: TimeOfDay

    @property
    def mode(self) -> AlarmMode:
        return AlarmMode.WINDOW

    @property
    def crosses_midnight(self) -> bool:
        return self.end < self.start


Schedule = FixedSchedule | WindowSchedule


@dataclass
class Alarm:
    """A configured alarm.

    ``schedule`` is None when the stored record is structurally broken
    (e.g. a window alarm without an end time); such an alarm never rings.
    ``next_trigger`` and ``last_fired_at`` are epoch milliseconds.
    """

    enabled: bool
    schedule: Schedule | None
    active_days: frozenset[int] = field(default_factory=frozenset)
    last_fired_at: int | None = None
    id: int | None = None
    label: str | None = None
    next_trigger: int | None = None
    sound_uri: str | None = None
    sound_title: str | None = None

    @property
    def mode(self) -> AlarmMode | None:
        return self.schedule.mode if self.schedule is not None else None


def build_schedule(
    mode: AlarmMode | str,
    fixed_time: str | None = None,
    window_start: str | None = None,
    window_end: str | None = None,
) -> Schedule | None:
    """Build the closed schedule variant from flat record fields.

    Returns None (and logs a warning) when the fields required by *mode*
    are missing or unparsable.
    """
    try:
        mode = AlarmMode(mode)
    except ValueError:
        logger.warning("Unknown alarm mode %r", mode)
        return None

    try:
        if mode is AlarmMode.FIXED:
            if not fixed_time:
                logger.warning("Fixed alarm missing fixed_time")
                return None
            return FixedSchedule(TimeOfDay.parse(fixed_time))

        if not window_start or not window_end:
            logger.warning("Window alarm missing window_start/window_end")
            return None
        return WindowSchedule(TimeOfDay.parse(window_start), TimeOfDay.parse(window_end))
    except ValueError as exc:
        logger.warning("Unparsable alarm time: %s", exc)
        return None


def flatten_schedule(schedule: Schedule | None) -> dict:
    """Inverse of build_schedule: the flat record fields for *schedule*."""
    if isinstance(schedule, FixedSchedule):
        return {
            "mode": AlarmMode.FIXED.value,
            "fixed_time": str(schedule.time),
            "window_start": None,
            "window_end": None,
        }
    if isinstance(schedule, WindowSchedule):
        return {
            "mode": AlarmMode.WINDOW.value,
            "fixed_time": None,
            "window_start": str(schedule.start),
            "window_end": str(schedule.end),
        }
    raise ValueError("Alarm has no valid schedule")


class AlarmInput(BaseModel):
    """Alarm create/update payload in the flat client shape.

    JSON example:
    {
        "label": "Wake up",
        "enabled": true,
        "mode": "WINDOW",
        "window_start": "06:30",
        "window_end": "07:00",
        "active_days": [1, 2, 3, 4, 5]
    }
    """
    id: int | None = None
    label: str | None = None
    enabled: bool = True
    mode: AlarmMode = AlarmMode.FIXED
    fixed_time: str | None = None       # HH:MM, FIXED only
    window_start: str | None = None     # HH:MM, WINDOW only
    window_end: str | None = None       # HH:MM, WINDOW only
    active_days: list[int] = [1, 2, 3, 4, 5]
    sound_uri: str | None = None
    sound_title: str | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def parse_mode(cls, v: str | AlarmMode) -> AlarmMode:
        if isinstance(v, AlarmMode):
            return v
        return AlarmMode(str(v).strip().upper())

    @field_validator("active_days")
    @classmethod
    def check_days(cls, v: list[int]) -> list[int]:
        for day in v:
            if not (0 <= day <= 6):
                raise ValueError(f"Weekday must be 0 (Sun) .. 6 (Sat), got {day}")
        return sorted(set(v))

    def to_alarm(self) -> Alarm:
        """Convert to the domain Alarm (schedule None if fields are broken)."""
        return Alarm(
            id=self.id,
            label=self.label,
            enabled=self.enabled,
            schedule=build_schedule(
                self.mode, self.fixed_time, self.window_start, self.window_end,
            ),
            active_days=frozenset(self.active_days),
            sound_uri=self.sound_uri,
            sound_title=self.sound_title,
        )
