"""
Threshold Alarms — Alarm Database.

Alarms persist in SQLite across restarts. Rows keep the flat shape
(mode string plus "HH:MM" columns); conversion to the closed schedule
variant happens on read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from src.data.models import Alarm, build_schedule, flatten_schedule

logger = logging.getLogger(__name__)


class AlarmDB:
    """SQLite-backed storage for alarms."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the alarms table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alarms (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    label        TEXT,
                    enabled      INTEGER NOT NULL DEFAULT 0 CHECK(enabled IN (0, 1)),
                    mode         TEXT    NOT NULL,
                    fixed_time   TEXT,
                    window_start TEXT,
                    window_end   TEXT,
                    active_days  TEXT    NOT NULL,
                    next_trigger INTEGER,
                    sound_uri    TEXT,
                    sound_title  TEXT
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(alarms)").fetchall()
            }
            if "last_fired_at" not in existing_cols:
                conn.execute("ALTER TABLE alarms ADD COLUMN last_fired_at INTEGER")
        logger.debug("Alarms table initialized at %s", self._db_path)

    @staticmethod
    def _parse_days(raw: str, alarm_id: int) -> frozenset[int]:
        try:
            days = json.loads(raw)
            return frozenset(int(d) for d in days if 0 <= int(d) <= 6)
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Failed to parse active_days for alarm %d: %s, using empty set",
                alarm_id, exc,
            )
            return frozenset()

    @classmethod
    def _row_to_alarm(cls, row: sqlite3.Row) -> Alarm:
        schedule = build_schedule(
            row["mode"], row["fixed_time"], row["window_start"], row["window_end"],
        )
        if schedule is None:
            logger.warning("Alarm %d has an invalid schedule and will not ring", row["id"])
        return Alarm(
            id=row["id"],
            label=row["label"],
            enabled=bool(row["enabled"]),
            schedule=schedule,
            active_days=cls._parse_days(row["active_days"], row["id"]),
            last_fired_at=row["last_fired_at"],
            next_trigger=row["next_trigger"],
            sound_uri=row["sound_uri"],
            sound_title=row["sound_title"],
        )

    @staticmethod
    def _to_params(alarm: Alarm) -> dict:
        params = flatten_schedule(alarm.schedule)
        params.update(
            label=alarm.label,
            enabled=int(alarm.enabled),
            active_days=json.dumps(sorted(alarm.active_days)),
            next_trigger=alarm.next_trigger,
            last_fired_at=alarm.last_fired_at,
            sound_uri=alarm.sound_uri,
            sound_title=alarm.sound_title,
        )
        return params

    def add_alarm(self, alarm: Alarm) -> Alarm:
        """Insert a new alarm and return it with its assigned id.

        Raises ValueError if the alarm has no valid schedule.
        """
        params = self._to_params(alarm)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alarms
                    (label, enabled, mode, fixed_time, window_start, window_end,
                     active_days, next_trigger, last_fired_at, sound_uri, sound_title)
                VALUES
                    (:label, :enabled, :mode, :fixed_time, :window_start, :window_end,
                     :active_days, :next_trigger, :last_fired_at, :sound_uri, :sound_title)
                """,
                params,
            )
            alarm.id = cursor.lastrowid

        logger.info("Alarm added: #%d %s (%s)", alarm.id, alarm.label or "", params["mode"])
        return alarm

    def update_alarm(self, alarm: Alarm) -> bool:
        """Overwrite every column of an existing alarm. Returns False if missing."""
        params = self._to_params(alarm)
        params["id"] = alarm.id
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE alarms SET
                    label = :label, enabled = :enabled, mode = :mode,
                    fixed_time = :fixed_time, window_start = :window_start,
                    window_end = :window_end, active_days = :active_days,
                    next_trigger = :next_trigger, last_fired_at = :last_fired_at,
                    sound_uri = :sound_uri, sound_title = :sound_title
                WHERE id = :id
                """,
                params,
            )
        updated = cursor.rowcount > 0
        if updated:
            logger.info("Alarm #%d updated", alarm.id)
        return updated

    def get_alarm(self, alarm_id: int) -> Alarm | None:
        """Fetch a single alarm by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM alarms WHERE id = ?", (alarm_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alarm(row)

    def list_all(self, enabled_only: bool = False) -> list[Alarm]:
        """List all alarms, optionally only the enabled ones."""
        query = "SELECT * FROM alarms"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()

        return [self._row_to_alarm(r) for r in rows]

    def set_enabled(self, alarm_id: int, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE alarms SET enabled = ? WHERE id = ?",
                (int(enabled), alarm_id),
            )

    def set_next_trigger(self, alarm_id: int, next_trigger: int | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE alarms SET next_trigger = ? WHERE id = ?",
                (next_trigger, alarm_id),
            )

    def set_last_fired_at(self, alarm_id: int, fired_at: int) -> None:
        """Record the most recent actual firing of an alarm."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE alarms SET last_fired_at = ? WHERE id = ?",
                (fired_at, alarm_id),
            )
        logger.info("Alarm #%d fired at %d", alarm_id, fired_at)

    def delete_alarm(self, alarm_id: int) -> bool:
        """Permanently delete an alarm by ID."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM alarms WHERE id = ?", (alarm_id,),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Alarm #%d deleted", alarm_id)
        return deleted
