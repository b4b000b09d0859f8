"""
Threshold Alarms — Entry Point.

`python main.py` recomputes the next trigger of every stored alarm and
prints the schedule.
"""

import logging

from src.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.core.alarm_service import AlarmService
from src.core.trigger_calculator import from_epoch_ms
from src.data.db import AlarmDB


def main() -> None:
    service = AlarmService(AlarmDB())
    for alarm in service.reschedule_all():
        when = (
            from_epoch_ms(alarm.next_trigger).strftime("%a %Y-%m-%d %H:%M:%S")
            if alarm.next_trigger is not None else "-"
        )
        state = "on " if alarm.enabled else "off"
        print(f"#{alarm.id:<4} {state} {alarm.label or '(no label)':<24} {when}")


if __name__ == "__main__":
    main()
