"""
learning_state.py - Database helper queries for per-user learning state

Provides insert/fetch functions for:
- user_competencies
- topic_statistics / competency_statistics
- study_streaks
- practice_sessions / practice_session_answers

Every write is a single-statement upsert or conditional update so concurrent
requests for the same user never duplicate rows or lose increments.
"""

import json
from typing import Optional, List, Dict, Any, Iterable

import aiosqlite

from mastery_engine.db.database import atomic


# ══════════════════════════════════════════════════════════════════════════════
# USER COMPETENCIES
# ══════════════════════════════════════════════════════════════════════════════

async def get_user_competency(
    db: aiosqlite.Connection,
    user_id: str,
    competency_id: str
) -> Optional[Dict[str, Any]]:
    """Get the stored mastery row for one competency, or None."""
    cursor = await db.execute(
        """SELECT user_id, competency_id, level, last_evaluated_at
           FROM user_competencies
           WHERE user_id = ? AND competency_id = ?""",
        (user_id, competency_id)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row)


async def get_user_competencies(db: aiosqlite.Connection, user_id: str) -> List[Dict[str, Any]]:
    """Get every stored mastery row for a user."""
    cursor = await db.execute(
        """SELECT user_id, competency_id, level, last_evaluated_at
           FROM user_competencies
           WHERE user_id = ?
           ORDER BY competency_id""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


async def insert_missing_user_competencies(
    db: aiosqlite.Connection,
    user_id: str,
    competency_ids: Iterable[str],
    evaluated_at: str
) -> int:
    """Create level-0 rows for the given competencies. Returns rows created.

    Rows that already exist (or are created concurrently by another request)
    are skipped by the conflict clause instead of raising.
    """
    created = 0
    for competency_id in competency_ids:
        cursor = await db.execute(
            """INSERT INTO user_competencies (user_id, competency_id, level, last_evaluated_at)
               VALUES (?, ?, 0, ?)
               ON CONFLICT (user_id, competency_id) DO NOTHING""",
            (user_id, competency_id, evaluated_at)
        )
        if cursor.rowcount and cursor.rowcount > 0:
            created += cursor.rowcount
    await db.commit()
    return created


async def upsert_user_competency_level(
    db: aiosqlite.Connection,
    user_id: str,
    competency_id: str,
    level: int,
    evaluated_at: str
) -> None:
    """Set the level for a competency, creating the row if absent."""
    await db.execute(
        """INSERT INTO user_competencies (user_id, competency_id, level, last_evaluated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (user_id, competency_id) DO UPDATE SET
               level = excluded.level,
               last_evaluated_at = excluded.last_evaluated_at""",
        (user_id, competency_id, level, evaluated_at)
    )
    await db.commit()


async def step_user_competency_level(
    db: aiosqlite.Connection,
    user_id: str,
    competency_id: str,
    delta: int,
    max_level: int,
    evaluated_at: str
) -> None:
    """Move a level by `delta`, clamped to 0..max_level, in one statement."""
    initial = max(0, min(max_level, delta))
    await db.execute(
        """INSERT INTO user_competencies (user_id, competency_id, level, last_evaluated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (user_id, competency_id) DO UPDATE SET
               level = CASE
                   WHEN user_competencies.level + ? > ? THEN ?
                   WHEN user_competencies.level + ? < 0 THEN 0
                   ELSE user_competencies.level + ? END,
               last_evaluated_at = excluded.last_evaluated_at""",
        (user_id, competency_id, initial, evaluated_at,
         delta, max_level, max_level, delta, delta)
    )
    await db.commit()


async def get_known_user_ids(db: aiosqlite.Connection) -> List[str]:
    """Every user id that has any learning state, for backfill jobs."""
    cursor = await db.execute(
        """SELECT user_id FROM user_competencies
           UNION SELECT user_id FROM topic_statistics
           UNION SELECT user_id FROM study_streaks
           UNION SELECT user_id FROM practice_sessions
           ORDER BY user_id"""
    )
    rows = await cursor.fetchall()
    return [r["user_id"] for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# ANSWER STATISTICS
# ══════════════════════════════════════════════════════════════════════════════

async def increment_answer_counters(
    db: aiosqlite.Connection,
    user_id: str,
    topic_id: str,
    subtopic_id: str,
    competency_id: str,
    is_correct: bool,
    updated_at: str
) -> None:
    """Add one answer to the topic and competency counters.

    The increments run inside the database (col = col + 1), never as a
    read-modify-write in Python. Both counters commit together or not at all.
    """
    async with atomic(db):
        await _increment_counters(
            db, user_id, topic_id, subtopic_id, competency_id, is_correct, updated_at
        )


async def _increment_counters(
    db: aiosqlite.Connection,
    user_id: str,
    topic_id: str,
    subtopic_id: str,
    competency_id: str,
    is_correct: bool,
    updated_at: str
) -> None:
    correct = 1 if is_correct else 0
    await db.execute(
        """INSERT INTO topic_statistics
               (user_id, topic_id, subtopic_id, questions_answered, correct_answers, updated_at)
           VALUES (?, ?, ?, 1, ?, ?)
           ON CONFLICT (user_id, topic_id, subtopic_id) DO UPDATE SET
               questions_answered = topic_statistics.questions_answered + 1,
               correct_answers = topic_statistics.correct_answers + excluded.correct_answers,
               updated_at = excluded.updated_at""",
        (user_id, topic_id, subtopic_id, correct, updated_at)
    )
    await db.execute(
        """INSERT INTO competency_statistics
               (user_id, competency_id, questions_answered, correct_answers, updated_at)
           VALUES (?, ?, 1, ?, ?)
           ON CONFLICT (user_id, competency_id) DO UPDATE SET
               questions_answered = competency_statistics.questions_answered + 1,
               correct_answers = competency_statistics.correct_answers + excluded.correct_answers,
               updated_at = excluded.updated_at""",
        (user_id, competency_id, correct, updated_at)
    )


async def get_topic_statistic(
    db: aiosqlite.Connection,
    user_id: str,
    topic_id: str,
    subtopic_id: str
) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT topic_id, subtopic_id, questions_answered, correct_answers
           FROM topic_statistics
           WHERE user_id = ? AND topic_id = ? AND subtopic_id = ?""",
        (user_id, topic_id, subtopic_id)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row)


async def get_topic_statistics(db: aiosqlite.Connection, user_id: str) -> List[Dict[str, Any]]:
    """Get all (topic, subtopic) counters for a user."""
    cursor = await db.execute(
        """SELECT topic_id, subtopic_id, questions_answered, correct_answers
           FROM topic_statistics
           WHERE user_id = ?
           ORDER BY topic_id, subtopic_id""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


async def get_competency_statistics(db: aiosqlite.Connection, user_id: str) -> List[Dict[str, Any]]:
    """Get all per-competency counters for a user."""
    cursor = await db.execute(
        """SELECT competency_id, questions_answered, correct_answers
           FROM competency_statistics
           WHERE user_id = ?
           ORDER BY competency_id""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# STUDY STREAKS
# ══════════════════════════════════════════════════════════════════════════════

async def add_daily_questions(
    db: aiosqlite.Connection,
    user_id: str,
    study_date: str,
    questions_count: int,
    daily_goal: int,
    updated_at: str
) -> Dict[str, Any]:
    """Add questions to a user's day and recompute the goal flag atomically.

    Returns the stored entry after the write.
    """
    await db.execute(
        """INSERT INTO study_streaks
               (user_id, study_date, questions_completed, completed_daily_goal, updated_at)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT (user_id, study_date) DO UPDATE SET
               questions_completed = study_streaks.questions_completed + excluded.questions_completed,
               completed_daily_goal = CASE
                   WHEN study_streaks.questions_completed + excluded.questions_completed >= ?
                   THEN 1 ELSE 0 END,
               updated_at = excluded.updated_at""",
        (
            user_id,
            study_date,
            questions_count,
            1 if questions_count >= daily_goal else 0,
            updated_at,
            daily_goal,
        )
    )
    await db.commit()
    return await get_streak_entry(db, user_id, study_date)


async def get_streak_entry(
    db: aiosqlite.Connection,
    user_id: str,
    study_date: str
) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT user_id, study_date, questions_completed, completed_daily_goal
           FROM study_streaks
           WHERE user_id = ? AND study_date = ?""",
        (user_id, study_date)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row)


async def get_goal_dates(db: aiosqlite.Connection, user_id: str, until: str) -> List[str]:
    """Dates (ISO, newest first) on or before `until` where the goal was met."""
    cursor = await db.execute(
        """SELECT study_date FROM study_streaks
           WHERE user_id = ? AND completed_daily_goal = 1 AND study_date <= ?
           ORDER BY study_date DESC""",
        (user_id, until)
    )
    rows = await cursor.fetchall()
    return [r["study_date"] for r in rows]


async def get_streak_entries(
    db: aiosqlite.Connection,
    user_id: str,
    since: str,
    until: str
) -> List[Dict[str, Any]]:
    """Entries between two ISO dates (inclusive), oldest first."""
    cursor = await db.execute(
        """SELECT user_id, study_date, questions_completed, completed_daily_goal
           FROM study_streaks
           WHERE user_id = ? AND study_date >= ? AND study_date <= ?
           ORDER BY study_date""",
        (user_id, since, until)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# PRACTICE SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

async def create_practice_session(
    db: aiosqlite.Connection,
    user_id: str,
    max_questions: int,
    plan: Dict[str, Any],
    created_at: str
) -> int:
    """Insert an in-progress session. Returns the new session ID.

    Raises the driver's integrity error when the user already has an
    in-progress session (partial unique index).
    """
    cursor = await db.execute(
        """INSERT INTO practice_sessions
               (user_id, status, max_questions, total_questions, answered_count, plan_json, created_at)
           VALUES (?, 'in_progress', ?, ?, 0, ?, ?)""",
        (user_id, max_questions, len(plan["questions"]), json.dumps(plan), created_at)
    )
    await db.commit()
    return cursor.lastrowid


async def get_practice_session(db: aiosqlite.Connection, session_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM practice_sessions WHERE id = ?",
        (session_id,)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row, parse_json_fields=['plan_json'])


async def get_active_practice_session(db: aiosqlite.Connection, user_id: str) -> Optional[Dict[str, Any]]:
    """Get the user's in-progress session, if any."""
    cursor = await db.execute(
        """SELECT * FROM practice_sessions
           WHERE user_id = ? AND status = 'in_progress'
           ORDER BY id DESC
           LIMIT 1""",
        (user_id,)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row, parse_json_fields=['plan_json'])


class SessionAnswerRejected(Exception):
    """A session answer was refused by the storage layer; nothing was written."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


async def record_session_answer(
    db: aiosqlite.Connection,
    session_id: int,
    user_id: str,
    question_id: str,
    topic_id: str,
    subtopic_id: str,
    competency_id: str,
    is_correct: bool,
    answered_at: str
) -> Dict[str, Any]:
    """Record one planned question's answer and advance its session.

    In one transaction: claims the (session, question) pair, counts it on the
    session (completing it on the last question) and bumps the answer
    counters. Returns the session row after the write.

    Raises SessionAnswerRejected("already_answered") when the question was
    answered before, or ("not_in_progress") when the session is closed.
    """
    async with atomic(db):
        cursor = await db.execute(
            """INSERT INTO practice_session_answers
                   (session_id, user_id, question_id, competency_id, is_correct, answered_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (session_id, question_id) DO NOTHING""",
            (session_id, user_id, question_id, competency_id, 1 if is_correct else 0, answered_at)
        )
        if not cursor.rowcount or cursor.rowcount < 1:
            raise SessionAnswerRejected("already_answered")

        cursor = await db.execute(
            """UPDATE practice_sessions SET
                   answered_count = answered_count + 1,
                   status = CASE
                       WHEN answered_count + 1 >= total_questions THEN 'completed'
                       ELSE status END,
                   completed_at = CASE
                       WHEN answered_count + 1 >= total_questions THEN ?
                       ELSE completed_at END
               WHERE id = ? AND status = 'in_progress'""",
            (answered_at, session_id)
        )
        if not cursor.rowcount or cursor.rowcount < 1:
            raise SessionAnswerRejected("not_in_progress")

        await _increment_counters(
            db, user_id, topic_id, subtopic_id, competency_id, is_correct, answered_at
        )
        session = await get_practice_session(db, session_id)
    return session


async def get_session_answers(db: aiosqlite.Connection, session_id: int) -> List[Dict[str, Any]]:
    """Answers recorded for a session, in answer order."""
    cursor = await db.execute(
        """SELECT question_id, competency_id, is_correct, answered_at
           FROM practice_session_answers
           WHERE session_id = ?
           ORDER BY id""",
        (session_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_dict(row: aiosqlite.Row, parse_json_fields: List[str] = None) -> Dict[str, Any]:
    """Convert a database row to a dictionary, optionally parsing JSON fields."""
    if row is None:
        return None

    result = dict(row)

    if parse_json_fields:
        for field in parse_json_fields:
            if field in result and result[field]:
                try:
                    result[field] = json.loads(result[field])
                except (json.JSONDecodeError, TypeError):
                    pass  # Keep original value if JSON parsing fails

    return result
