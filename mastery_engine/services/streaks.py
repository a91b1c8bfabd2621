"""Study-Streak Tracker.

One entry per (user, day) holds the questions completed that day and whether
the daily goal was met. The streak itself is never stored: it is recomputed
from the goal-met days each time it is read.

register_daily_study takes INCREMENTAL counts. Each call adds to the day's
total, so callers must submit only the questions answered since their last
call, never a running total.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable

from mastery_engine.clock import SystemClock
from mastery_engine.db import learning_state as ls
from mastery_engine.db.database import run_storage
from mastery_engine.errors import InvalidInput
from mastery_engine.models import DailyStudyResult, EngineConfig, StudyStreakEntry

logger = logging.getLogger(__name__)


def compute_streak(goal_dates: Iterable[date], today: date) -> int:
    """Count consecutive goal-met days ending today, or yesterday if today
    has not qualified yet. Any other gap means there is no current streak.
    """
    qualifying = set(goal_dates)
    if today in qualifying:
        cursor = today
    elif today - timedelta(days=1) in qualifying:
        cursor = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while cursor in qualifying:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def parse_study_date(value, today: date) -> date:
    """Accept a date, datetime or YYYY-MM-DD string; reject future days."""
    if value is None:
        return today
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = date.fromisoformat(value.strip())
        except ValueError:
            raise InvalidInput(f"Malformed date {value!r}, expected YYYY-MM-DD", date=value) from None
    else:
        raise InvalidInput(f"Unsupported date value {value!r}", date=str(value))

    if parsed > today:
        raise InvalidInput(f"Date {parsed.isoformat()} is in the future", date=parsed.isoformat())
    return parsed


def _entry_from_row(row: dict) -> StudyStreakEntry:
    return StudyStreakEntry(
        user_id=row["user_id"],
        date=date.fromisoformat(row["study_date"]),
        questions_completed=row["questions_completed"],
        completed_daily_goal=bool(row["completed_daily_goal"]),
    )


class StudyStreakTracker:
    def __init__(self, db, config: EngineConfig, clock=None):
        self.db = db
        self.config = config
        self.clock = clock or SystemClock()

    async def _storage(self, operation: str, awaitable):
        return await run_storage(self.db, operation, awaitable, self.config.storage_timeout_seconds)

    async def register_daily_study(self, user_id: str, questions_count: int, study_date=None) -> DailyStudyResult:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInput("user_id must be a non-empty string", field="user_id")
        if isinstance(questions_count, bool) or not isinstance(questions_count, int):
            raise InvalidInput(f"questions_count must be an integer, got {questions_count!r}")
        if questions_count < 0:
            raise InvalidInput(
                f"questions_count must not be negative, got {questions_count}",
                questions_count=questions_count,
            )
        today = self.clock.today()
        day = parse_study_date(study_date, today)

        row = await self._storage(
            "add_daily_questions",
            ls.add_daily_questions(
                self.db,
                user_id,
                day.isoformat(),
                questions_count,
                self.config.daily_goal,
                self.clock.now().isoformat(),
            ),
        )
        entry = _entry_from_row(row)
        streak = await self.get_current_streak(user_id)

        logger.info(
            "User %s studied %d questions on %s (total %d, goal %s, streak %d)",
            user_id, questions_count, day, entry.questions_completed,
            "met" if entry.completed_daily_goal else "not met", streak,
        )
        return DailyStudyResult(
            current_streak=streak,
            questions_completed=entry.questions_completed,
            completed_daily_goal=entry.completed_daily_goal,
            date=day,
        )

    async def get_current_streak(self, user_id: str) -> int:
        today = self.clock.today()
        rows = await self._storage(
            "get_goal_dates", ls.get_goal_dates(self.db, user_id, today.isoformat())
        )
        return compute_streak((date.fromisoformat(d) for d in rows), today)

    async def list_entries(self, user_id: str, days: int | None = None) -> list[StudyStreakEntry]:
        """Entries for the last `days` days including today, oldest first."""
        if days is None:
            days = self.config.recent_activity_days
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise InvalidInput(f"days must be a positive integer, got {days!r}", days=days)
        today = self.clock.today()
        since = today - timedelta(days=days - 1)
        rows = await self._storage(
            "get_streak_entries",
            ls.get_streak_entries(self.db, user_id, since.isoformat(), today.isoformat()),
        )
        return [_entry_from_row(r) for r in rows]
