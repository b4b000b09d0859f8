"""Alarm scheduler port — abstract interface to the platform alarm mechanism.

Core modules depend on this protocol, never on a specific OS scheduler
(Android AlarmManager, a desktop timer thread, ...).
"""

from __future__ import annotations

from typing import Protocol


class AlarmSchedulerError(Exception):
    """Raised when the platform scheduler cannot register or cancel an alarm."""


class AlarmSchedulerPort(Protocol):
    """Abstract native-alarm interface used by core modules."""

    def schedule(self, alarm_id: int, trigger_at: int, sound_uri: str | None) -> None: ...

    def cancel(self, alarm_id: int) -> None:
        """Remove the registration for *alarm_id*; a no-op if there is none."""
        ...
