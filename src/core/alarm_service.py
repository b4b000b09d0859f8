"""
Threshold Alarms — Alarm Lifecycle Service.

Orchestrates the alarm lifecycle: validate input -> compute the next
trigger -> persist -> keep the platform scheduler in step.

The trigger calculation itself lives in src.core.trigger_calculator; this
module only decides when to recompute and what to do with the result.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from src.core.trigger_calculator import (
    calculate_next_trigger,
    from_epoch_ms,
    to_epoch_ms,
)
from src.ports.alarm_scheduler_port import AlarmSchedulerError

if TYPE_CHECKING:
    from src.data.db import AlarmDB
    from src.data.models import Alarm, AlarmInput
    from src.ports.alarm_scheduler_port import AlarmSchedulerPort

logger = logging.getLogger(__name__)


class AlarmNotFoundError(LookupError):
    """Raised when an operation names an alarm id that is not stored."""


def _fmt(ms: int | None) -> str:
    if ms is None:
        return "never"
    return from_epoch_ms(ms).isoformat(sep=" ", timespec="seconds")


class AlarmService:
    """Alarm lifecycle operations on top of an AlarmDB.

    ``scheduler`` is optional: without one, triggers are computed and stored
    but nothing is registered with the platform.
    """

    def __init__(
        self,
        db: AlarmDB,
        scheduler: AlarmSchedulerPort | None = None,
        clock: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ) -> None:
        self._db = db
        self._scheduler = scheduler
        self._clock = clock
        self._rng = rng or random.Random()
        # alarm id -> trigger currently registered with the scheduler
        self._scheduled: dict[int, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def save_alarm(self, alarm_input: AlarmInput) -> Alarm:
        """Create or update an alarm and schedule its next trigger.

        Raises ValueError if the input has no usable schedule and
        AlarmNotFoundError if it names an id that does not exist.
        """
        alarm = alarm_input.to_alarm()
        if alarm.schedule is None:
            raise ValueError(f"Alarm input has no valid {alarm_input.mode.value} schedule")

        if alarm.id is not None:
            existing = self._get(alarm.id)
            alarm.last_fired_at = existing.last_fired_at

        alarm.next_trigger = self._next_trigger(alarm)
        if alarm.id is None:
            self._db.add_alarm(alarm)
        else:
            self._db.update_alarm(alarm)

        logger.info("Alarm #%d saved, next trigger %s", alarm.id, _fmt(alarm.next_trigger))
        self._sync_one(alarm, self._now_ms())
        return alarm

    def toggle_alarm(self, alarm_id: int, enabled: bool) -> Alarm:
        """Enable or disable an alarm, recomputing its next trigger."""
        alarm = self._get(alarm_id)
        alarm.enabled = enabled
        alarm.next_trigger = self._next_trigger(alarm)
        self._db.set_enabled(alarm_id, enabled)
        self._db.set_next_trigger(alarm_id, alarm.next_trigger)

        logger.info(
            "Alarm #%d %s, next trigger %s",
            alarm_id, "enabled" if enabled else "disabled", _fmt(alarm.next_trigger),
        )
        self._sync_one(alarm, self._now_ms())
        return alarm

    def delete_alarm(self, alarm_id: int) -> bool:
        """Delete an alarm and cancel any platform registration.

        Cancels even when this instance never registered the id: the
        registration may come from an earlier process.
        """
        deleted = self._db.delete_alarm(alarm_id)
        if self._scheduler is not None:
            self._cancel(alarm_id)
        return deleted

    def dismiss_alarm(self, alarm_id: int) -> Alarm:
        """Dismiss a ringing alarm: record the ring now and move on."""
        return self.report_alarm_fired(alarm_id, self._now_ms())

    def report_alarm_fired(self, alarm_id: int, fired_at: int) -> Alarm:
        """Record that an alarm rang at *fired_at* (epoch ms) and reschedule.

        Recording the firing is what keeps a window alarm from ringing a
        second time inside the same window occurrence.
        """
        alarm = self._get(alarm_id)
        alarm.last_fired_at = fired_at
        self._db.set_last_fired_at(alarm_id, fired_at)

        alarm.next_trigger = self._next_trigger(alarm)
        self._db.set_next_trigger(alarm_id, alarm.next_trigger)

        logger.info(
            "Alarm #%d fired at %s, next trigger %s",
            alarm_id, _fmt(fired_at), _fmt(alarm.next_trigger),
        )
        self._sync_one(alarm, self._now_ms())
        return alarm

    def reschedule_all(self) -> list[Alarm]:
        """Recompute and store every alarm's next trigger, then sync.

        Used at startup and after the system clock or time zone changed.
        """
        alarms = self._db.list_all()
        for alarm in alarms:
            alarm.next_trigger = self._next_trigger(alarm)
            self._db.set_next_trigger(alarm.id, alarm.next_trigger)

        self.sync_native(alarms)
        logger.info("Rescheduled %d alarm(s)", len(alarms))
        return alarms

    # ------------------------------------------------------------------
    # Platform scheduler sync
    # ------------------------------------------------------------------

    def sync_native(self, alarms: list[Alarm]) -> None:
        """Bring the platform scheduler in line with *alarms*.

        *alarms* is the complete current set: registered ids that are no
        longer present are cancelled.
        """
        if self._scheduler is None:
            return

        now_ms = self._now_ms()
        current_ids: set[int] = set()
        for alarm in alarms:
            current_ids.add(alarm.id)
            self._sync_one(alarm, now_ms)

        for alarm_id in [i for i in self._scheduled if i not in current_ids]:
            logger.info("Alarm #%d removed, cancelling platform alarm", alarm_id)
            self._cancel(alarm_id)

    def _sync_one(self, alarm: Alarm, now_ms: int) -> None:
        if self._scheduler is None:
            return

        if alarm.enabled and alarm.next_trigger is not None and alarm.next_trigger > now_ms:
            if self._scheduled.get(alarm.id) == alarm.next_trigger:
                return
            try:
                self._scheduler.schedule(alarm.id, alarm.next_trigger, alarm.sound_uri)
            except AlarmSchedulerError as exc:
                logger.error("Failed to schedule alarm #%d: %s", alarm.id, exc)
                return
            self._scheduled[alarm.id] = alarm.next_trigger
            logger.info("Alarm #%d registered for %s", alarm.id, _fmt(alarm.next_trigger))
        else:
            # _scheduled only covers this process; cancel unconditionally
            self._cancel(alarm.id)

    def _cancel(self, alarm_id: int) -> None:
        try:
            self._scheduler.cancel(alarm_id)
        except AlarmSchedulerError as exc:
            # Left in _scheduled so the next sync retries
            logger.error("Failed to cancel alarm #%d: %s", alarm_id, exc)
            return
        self._scheduled.pop(alarm_id, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, alarm_id: int) -> Alarm:
        alarm = self._db.get_alarm(alarm_id)
        if alarm is None:
            raise AlarmNotFoundError(f"Alarm {alarm_id} not found")
        return alarm

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    def _next_trigger(self, alarm: Alarm) -> int | None:
        return calculate_next_trigger(alarm, self._clock(), self._rng)
