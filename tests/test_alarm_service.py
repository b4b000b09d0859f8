"""Tests for src.core.alarm_service — alarm lifecycle orchestration.

Uses a real AlarmDB on a temp file, a fixed clock, and a MagicMock in place
of the platform scheduler port.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.core.alarm_service import AlarmNotFoundError, AlarmService
from src.core.trigger_calculator import to_epoch_ms
from src.data.models import AlarmInput
from src.ports.alarm_scheduler_port import AlarmSchedulerError

# Wed Nov 1 2023, 10:00 local time
BASE = datetime(2023, 11, 1, 10, 0, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_service(alarm_db, scheduler=None, now: datetime = BASE):
    clock = _Clock(now)
    return AlarmService(alarm_db, scheduler=scheduler, clock=clock), clock


def _ms(*args) -> int:
    return to_epoch_ms(datetime(*args))


def _fixed_input(hhmm: str = "12:00", **kwargs) -> AlarmInput:
    return AlarmInput(mode="FIXED", fixed_time=hhmm, active_days=[0, 1, 2, 3, 4, 5, 6], **kwargs)


def _window_input(start: str = "09:00", end: str = "11:00", **kwargs) -> AlarmInput:
    kwargs.setdefault("active_days", [3])
    return AlarmInput(mode="WINDOW", window_start=start, window_end=end, **kwargs)


# ---------------------------------------------------------------------------
# save_alarm
# ---------------------------------------------------------------------------


class TestSaveAlarm:
    def test_new_alarm_gets_next_trigger(self, alarm_db):
        service, _ = _make_service(alarm_db)
        alarm = service.save_alarm(_fixed_input("12:00"))
        assert alarm.id is not None
        assert alarm.next_trigger == _ms(2023, 11, 1, 12, 0)
        assert alarm_db.get_alarm(alarm.id).next_trigger == _ms(2023, 11, 1, 12, 0)

    def test_new_alarm_registered_with_scheduler(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input("12:00", sound_uri="chime"))
        scheduler.schedule.assert_called_once_with(alarm.id, _ms(2023, 11, 1, 12, 0), "chime")

    def test_update_keeps_last_fired_at(self, alarm_db):
        service, _ = _make_service(alarm_db)
        alarm = service.save_alarm(_window_input())
        alarm_db.set_last_fired_at(alarm.id, _ms(2023, 11, 1, 9, 30))

        updated = service.save_alarm(_window_input("09:00", "11:30", id=alarm.id, label="Late"))
        assert updated.last_fired_at == _ms(2023, 11, 1, 9, 30)
        assert updated.label == "Late"
        # already fired in today's window, so next Wednesday
        assert _ms(2023, 11, 8, 9, 0) <= updated.next_trigger < _ms(2023, 11, 8, 11, 30)

    def test_update_unknown_id(self, alarm_db):
        service, _ = _make_service(alarm_db)
        with pytest.raises(AlarmNotFoundError):
            service.save_alarm(_fixed_input(id=99))

    def test_broken_input_rejected(self, alarm_db):
        service, _ = _make_service(alarm_db)
        with pytest.raises(ValueError):
            service.save_alarm(AlarmInput(mode="WINDOW", window_start="09:00"))
        assert alarm_db.list_all() == []

    def test_disabled_alarm_has_no_trigger(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input(enabled=False))
        assert alarm.next_trigger is None
        scheduler.schedule.assert_not_called()


# ---------------------------------------------------------------------------
# toggle / delete
# ---------------------------------------------------------------------------


class TestToggleAndDelete:
    def test_disable_cancels_registration(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input())

        toggled = service.toggle_alarm(alarm.id, False)
        assert toggled.enabled is False
        assert toggled.next_trigger is None
        scheduler.cancel.assert_called_once_with(alarm.id)
        assert alarm_db.get_alarm(alarm.id).enabled is False

    def test_enable_inside_window_honours_lead_time(self, alarm_db):
        service, _ = _make_service(alarm_db)
        alarm = service.save_alarm(_window_input(enabled=False))

        toggled = service.toggle_alarm(alarm.id, True)
        assert to_epoch_ms(BASE) + 30_000 <= toggled.next_trigger < _ms(2023, 11, 1, 11, 0)

    def test_toggle_broken_stored_alarm(self, alarm_db, tmp_db_path):
        import sqlite3

        with sqlite3.connect(tmp_db_path) as conn:
            alarm_id = conn.execute(
                "INSERT INTO alarms (enabled, mode, window_start, active_days) "
                "VALUES (0, 'WINDOW', '09:00', '[3]')"
            ).lastrowid

        service, _ = _make_service(alarm_db)
        toggled = service.toggle_alarm(alarm_id, True)
        assert toggled.enabled is True
        assert toggled.next_trigger is None

    def test_toggle_unknown_id(self, alarm_db):
        service, _ = _make_service(alarm_db)
        with pytest.raises(AlarmNotFoundError):
            service.toggle_alarm(123, True)

    def test_delete_cancels_registration(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input())

        assert service.delete_alarm(alarm.id) is True
        scheduler.cancel.assert_called_once_with(alarm.id)
        assert alarm_db.get_alarm(alarm.id) is None

    def test_delete_after_restart_cancels(self, alarm_db):
        scheduler = MagicMock()
        first, _ = _make_service(alarm_db, scheduler)
        alarm = first.save_alarm(_fixed_input())

        # fresh service, as after an app restart: nothing registered in memory
        restarted, _ = _make_service(alarm_db, scheduler)
        assert restarted.delete_alarm(alarm.id) is True
        scheduler.cancel.assert_called_once_with(alarm.id)

    def test_disable_after_restart_cancels(self, alarm_db):
        scheduler = MagicMock()
        first, _ = _make_service(alarm_db, scheduler)
        alarm = first.save_alarm(_fixed_input())

        restarted, _ = _make_service(alarm_db, scheduler)
        restarted.toggle_alarm(alarm.id, False)
        scheduler.cancel.assert_called_once_with(alarm.id)

    def test_delete_without_scheduler(self, alarm_db):
        service, _ = _make_service(alarm_db)
        alarm = service.save_alarm(_fixed_input())
        assert service.delete_alarm(alarm.id) is True


# ---------------------------------------------------------------------------
# dismiss / report fired
# ---------------------------------------------------------------------------


class TestFiring:
    def test_dismiss_window_alarm_skips_rest_of_window(self, alarm_db):
        service, clock = _make_service(alarm_db)
        alarm = service.save_alarm(_window_input(active_days=[3]))

        clock.now = BASE + timedelta(minutes=20)   # rang at 10:20, inside window
        dismissed = service.dismiss_alarm(alarm.id)

        assert dismissed.last_fired_at == to_epoch_ms(clock.now)
        assert _ms(2023, 11, 8, 9, 0) <= dismissed.next_trigger < _ms(2023, 11, 8, 11, 0)
        stored = alarm_db.get_alarm(alarm.id)
        assert stored.last_fired_at == to_epoch_ms(clock.now)
        assert stored.next_trigger == dismissed.next_trigger

    def test_report_fixed_alarm_fired(self, alarm_db):
        service, clock = _make_service(alarm_db)
        alarm = service.save_alarm(_fixed_input("12:00"))

        clock.now = datetime(2023, 11, 1, 12, 0)
        fired = service.report_alarm_fired(alarm.id, _ms(2023, 11, 1, 12, 0))
        assert fired.next_trigger == _ms(2023, 11, 2, 12, 0)

    def test_report_unknown_id(self, alarm_db):
        service, _ = _make_service(alarm_db)
        with pytest.raises(AlarmNotFoundError):
            service.report_alarm_fired(7, 0)

    def test_reregisters_new_trigger(self, alarm_db):
        scheduler = MagicMock()
        service, clock = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input("12:00"))

        clock.now = datetime(2023, 11, 1, 12, 0, 5)
        service.dismiss_alarm(alarm.id)
        assert scheduler.schedule.call_count == 2
        scheduler.schedule.assert_called_with(alarm.id, _ms(2023, 11, 2, 12, 0), None)


# ---------------------------------------------------------------------------
# reschedule_all / sync_native
# ---------------------------------------------------------------------------


class TestRescheduleAndSync:
    def test_reschedule_all_refreshes_stale_triggers(self, alarm_db):
        service, clock = _make_service(alarm_db)
        a = service.save_alarm(_fixed_input("12:00"))
        b = service.save_alarm(_fixed_input("08:00", enabled=False))

        clock.now = datetime(2023, 11, 3, 13, 0)   # Friday afternoon
        alarms = service.reschedule_all()

        by_id = {alarm.id: alarm for alarm in alarms}
        assert by_id[a.id].next_trigger == _ms(2023, 11, 4, 12, 0)
        assert by_id[b.id].next_trigger is None
        assert alarm_db.get_alarm(a.id).next_trigger == _ms(2023, 11, 4, 12, 0)

    def test_reschedule_all_without_scheduler(self, alarm_db):
        service, _ = _make_service(alarm_db)
        service.save_alarm(_fixed_input())
        assert len(service.reschedule_all()) == 1

    def test_unchanged_trigger_not_registered_twice(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        service.save_alarm(_fixed_input("12:00"))

        service.reschedule_all()
        scheduler.schedule.assert_called_once()

    def test_removed_alarm_cancelled(self, alarm_db):
        scheduler = MagicMock()
        service, _ = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input())

        service.sync_native([])
        scheduler.cancel.assert_called_once_with(alarm.id)

    def test_past_trigger_cancelled(self, alarm_db):
        scheduler = MagicMock()
        service, clock = _make_service(alarm_db, scheduler)
        alarm = service.save_alarm(_fixed_input("12:00"))

        clock.now = datetime(2023, 11, 1, 12, 30)
        service.sync_native([alarm])   # stale next_trigger 12:00 is now past
        scheduler.cancel.assert_called_once_with(alarm.id)

    def test_schedule_failure_is_logged_and_retried(self, alarm_db, caplog):
        scheduler = MagicMock()
        scheduler.schedule.side_effect = [AlarmSchedulerError("denied"), None, None]
        service, _ = _make_service(alarm_db, scheduler)

        first = service.save_alarm(_fixed_input("12:00"))
        second = service.save_alarm(_fixed_input("13:00"))
        assert "Failed to schedule alarm" in caplog.text

        service.sync_native([first, second])
        assert scheduler.schedule.call_count == 3
        scheduler.schedule.assert_called_with(first.id, _ms(2023, 11, 1, 12, 0), None)

    def test_cancel_failure_keeps_registration(self, alarm_db):
        scheduler = MagicMock()
        scheduler.cancel.side_effect = [AlarmSchedulerError("busy"), None]
        service, _ = _make_service(alarm_db, scheduler)
        service.save_alarm(_fixed_input())

        service.sync_native([])
        service.sync_native([])
        assert scheduler.cancel.call_count == 2
        service.sync_native([])
        assert scheduler.cancel.call_count == 2
