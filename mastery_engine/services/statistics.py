"""Statistics Aggregator - answer counters and the user statistics report.

Counters are exact integers and are the only source of truth. Percentages
are derived when the report is built and rounded there, half-up, to
`accuracy_decimals` places.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable

from pydantic import ValidationError

from mastery_engine.clock import SystemClock
from mastery_engine.db import learning_state as ls
from mastery_engine.db.database import run_storage
from mastery_engine.errors import InvalidInput, NotFound
from mastery_engine.models import (
    AnswerEvent,
    CompetencyProgress,
    DailyActivity,
    EngineConfig,
    GeneralStatistics,
    SubtopicProgress,
    TopicProgress,
    UserStatistics,
)
from mastery_engine.services.catalog import CatalogReader
from mastery_engine.services.mastery_store import BASELINE_LEVEL, MasteryStore, summarize_levels
from mastery_engine.services.streaks import StudyStreakTracker

logger = logging.getLogger(__name__)

PostWriteHook = Callable[[AnswerEvent], Awaitable[None]]


def percent(part: int, whole: int, decimals: int = 0):
    """100 * part / whole rounded half-up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    quantum = Decimal(1).scaleb(-decimals)
    value = (Decimal(100) * part / whole).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(value) if decimals == 0 else float(value)


def coerce_answer_event(event) -> AnswerEvent:
    if isinstance(event, AnswerEvent):
        return event
    try:
        return AnswerEvent.model_validate(event)
    except ValidationError as exc:
        raise InvalidInput(f"Malformed answer event: {exc.errors()[0]['msg']}") from None


class StatisticsAggregator:
    def __init__(
        self,
        db,
        config: EngineConfig,
        catalog: CatalogReader,
        mastery_store: MasteryStore,
        streak_tracker: StudyStreakTracker,
        clock=None,
    ):
        self.db = db
        self.config = config
        self.catalog = catalog
        self.mastery_store = mastery_store
        self.streak_tracker = streak_tracker
        self.clock = clock or SystemClock()
        self.post_write_hooks: list[PostWriteHook] = []

    async def _storage(self, operation: str, awaitable):
        return await run_storage(self.db, operation, awaitable, self.config.storage_timeout_seconds)

    def add_post_write_hook(self, hook: PostWriteHook) -> None:
        """Register a coroutine run after every recorded answer (level evaluation)."""
        self.post_write_hooks.append(hook)

    async def _check_references(self, event: AnswerEvent) -> None:
        competencies = await self._storage("list_competencies", self.catalog.list_competencies())
        if event.competency_id not in {c.id for c in competencies}:
            raise NotFound(
                f"Competency {event.competency_id} not found", competency_id=event.competency_id
            )
        topics = await self._storage("list_topics", self.catalog.list_topics())
        topic = next((t for t in topics if t.id == event.topic_id), None)
        if topic is None:
            raise NotFound(f"Topic {event.topic_id} not found", topic_id=event.topic_id)
        if event.subtopic_id not in {s.id for s in topic.subtopics}:
            raise NotFound(
                f"Subtopic {event.subtopic_id} not found in topic {event.topic_id}",
                topic_id=event.topic_id,
                subtopic_id=event.subtopic_id,
            )

    async def _prepare(self, event) -> tuple[AnswerEvent, str]:
        event = coerce_answer_event(event)
        await self._check_references(event)
        answered_at = event.timestamp or self.clock.now()
        return event, answered_at.isoformat()

    async def _after_write(self, event: AnswerEvent) -> None:
        logger.debug(
            "Recorded %s answer for user %s on %s/%s (competency %s)",
            "correct" if event.is_correct else "incorrect",
            event.user_id, event.topic_id, event.subtopic_id, event.competency_id,
        )
        for hook in self.post_write_hooks:
            await hook(event)

    async def record_answer(self, event) -> AnswerEvent:
        event, answered_at = await self._prepare(event)
        await self._storage(
            "increment_answer_counters",
            ls.increment_answer_counters(
                self.db,
                event.user_id,
                event.topic_id,
                event.subtopic_id,
                event.competency_id,
                event.is_correct,
                answered_at,
            ),
        )
        await self._after_write(event)
        return event

    async def record_session_answer(self, session_id: int, question_id: str, event) -> AnswerEvent:
        """Record an answer to one planned question of a practice session.

        The session advance and the counter increments commit together. A
        question answered twice, or an answer to a closed session, is
        rejected with InvalidInput and changes nothing.
        """
        event, answered_at = await self._prepare(event)
        try:
            await self._storage(
                "record_session_answer",
                ls.record_session_answer(
                    self.db,
                    session_id,
                    event.user_id,
                    question_id,
                    event.topic_id,
                    event.subtopic_id,
                    event.competency_id,
                    event.is_correct,
                    answered_at,
                ),
            )
        except ls.SessionAnswerRejected as exc:
            if exc.reason == "already_answered":
                raise InvalidInput(
                    f"Question {question_id} was already answered in practice session {session_id}",
                    session_id=session_id,
                    question_id=question_id,
                ) from None
            raise InvalidInput(
                f"Practice session {session_id} is already completed", session_id=session_id
            ) from None
        await self._after_write(event)
        return event

    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInput("user_id must be a non-empty string", field="user_id")
        decimals = self.config.accuracy_decimals

        competencies = await self._storage("list_competencies", self.catalog.list_competencies())
        topics = await self._storage("list_topics", self.catalog.list_topics())
        topic_rows = await self._storage(
            "get_topic_statistics", ls.get_topic_statistics(self.db, user_id)
        )
        competency_rows = await self._storage(
            "get_competency_statistics", ls.get_competency_statistics(self.db, user_id)
        )
        levels = await self.mastery_store.get_effective_levels(user_id, competencies)
        streak = await self.streak_tracker.get_current_streak(user_id)
        recent = await self.streak_tracker.list_entries(user_id)

        total_questions = sum(r["questions_answered"] for r in topic_rows)
        total_correct = sum(r["correct_answers"] for r in topic_rows)

        general = GeneralStatistics(
            total_questions=total_questions,
            total_correct=total_correct,
            overall_accuracy=percent(total_correct, total_questions, decimals),
            study_streak=streak,
            competencies=summarize_levels(list(levels.values()), self.config.mastery_threshold),
        )

        return UserStatistics(
            user_id=user_id,
            general=general,
            by_topic=self._build_topic_progress(topics, topic_rows, levels),
            by_competency=self._build_competency_progress(competencies, competency_rows, levels),
            recent_activity=[
                DailyActivity(
                    date=e.date,
                    questions_completed=e.questions_completed,
                    completed_daily_goal=e.completed_daily_goal,
                )
                for e in recent
            ],
        )

    def _build_topic_progress(self, topics, topic_rows, levels) -> list[TopicProgress]:
        decimals = self.config.accuracy_decimals
        threshold = self.config.mastery_threshold

        counts: dict[tuple[str, str], dict] = {
            (r["topic_id"], r["subtopic_id"]): r for r in topic_rows
        }
        result = []
        seen_topics = set()

        for topic in topics:
            seen_topics.add(topic.id)
            subtopics = []
            for subtopic in topic.subtopics:
                row = counts.get((topic.id, subtopic.id), {})
                answered = row.get("questions_answered", 0)
                correct = row.get("correct_answers", 0)
                # Mastered only when every competency of the subtopic reaches the threshold
                mastered = bool(subtopic.competency_ids) and all(
                    levels.get(cid, BASELINE_LEVEL) >= threshold for cid in subtopic.competency_ids
                )
                subtopics.append(SubtopicProgress(
                    id=subtopic.id,
                    name=subtopic.name,
                    questions_answered=answered,
                    correct_answers=correct,
                    accuracy=percent(correct, answered, decimals),
                    mastered=mastered,
                ))

            # Topic totals include counters for subtopics no longer in the catalog
            topic_answered = sum(r["questions_answered"] for r in topic_rows if r["topic_id"] == topic.id)
            topic_correct = sum(r["correct_answers"] for r in topic_rows if r["topic_id"] == topic.id)
            mastered_count = sum(1 for s in subtopics if s.mastered)
            result.append(TopicProgress(
                id=topic.id,
                name=topic.name,
                questions_answered=topic_answered,
                correct_answers=topic_correct,
                accuracy=percent(topic_correct, topic_answered, decimals),
                topic_progress=percent(mastered_count, len(subtopics), decimals),
                subtopics=subtopics,
            ))

        orphans: dict[str, list[dict]] = {}
        for row in topic_rows:
            if row["topic_id"] not in seen_topics:
                orphans.setdefault(row["topic_id"], []).append(row)
        for topic_id, rows in orphans.items():
            logger.warning("Statistics reference topic %s missing from the catalog", topic_id)
            answered = sum(r["questions_answered"] for r in rows)
            correct = sum(r["correct_answers"] for r in rows)
            result.append(TopicProgress(
                id=topic_id,
                name=topic_id,
                questions_answered=answered,
                correct_answers=correct,
                accuracy=percent(correct, answered, decimals),
                subtopics=[
                    SubtopicProgress(
                        id=r["subtopic_id"],
                        name=r["subtopic_id"],
                        questions_answered=r["questions_answered"],
                        correct_answers=r["correct_answers"],
                        accuracy=percent(r["correct_answers"], r["questions_answered"], decimals),
                    )
                    for r in rows
                ],
            ))
        return result

    def _build_competency_progress(self, competencies, competency_rows, levels) -> list[CompetencyProgress]:
        decimals = self.config.accuracy_decimals
        counts = {r["competency_id"]: r for r in competency_rows}
        result = []
        for competency in competencies:
            row = counts.get(competency.id, {})
            answered = row.get("questions_answered", 0)
            correct = row.get("correct_answers", 0)
            result.append(CompetencyProgress(
                id=competency.id,
                code=competency.code,
                name=competency.name,
                questions_answered=answered,
                correct_answers=correct,
                accuracy=percent(correct, answered, decimals),
                mastery_level=levels.get(competency.id, BASELINE_LEVEL),
            ))
        return result
