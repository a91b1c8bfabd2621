"""
session_composer.py - Adaptive practice sessions stratified by mastery level

Provides:
- compose_session(user_id, max_questions, catalog) - Build or resume the user's session
- get_active_session(user_id) / get_session(user_id, session_id)
- build_result(session) - Per-competency summary once every planned question is answered

Lifecycle: NotStarted -> InProgress -> Completed. A partial unique index
allows one in-progress session per user, so two concurrent creators cannot
both succeed; the loser resumes the winner's session or gets
SessionAlreadyActive.
"""

import logging
from typing import Optional, Dict, Any

from mastery_engine.clock import SystemClock
from mastery_engine.db import learning_state as ls
from mastery_engine.db.database import classify_storage_error, run_storage
from mastery_engine.errors import (
    InsufficientContent,
    InvalidInput,
    NotFound,
    SessionAlreadyActive,
    StorageConflict,
)
from mastery_engine.models import (
    CompetencyResult,
    EngineConfig,
    PracticeSession,
    QuestionSelector,
    SessionResult,
)
from mastery_engine.services.allocation import AllocationPolicy, spread
from mastery_engine.services.catalog import CatalogReader
from mastery_engine.services.mastery_store import MasteryStore
from mastery_engine.services.statistics import percent

logger = logging.getLogger(__name__)


def _session_from_row(
    row: Dict[str, Any], answered: Optional[list] = None, resumed: bool = False
) -> PracticeSession:
    plan = row.get("plan_json") or {}
    return PracticeSession(
        id=row["id"],
        user_id=row["user_id"],
        status=row["status"],
        max_questions=row["max_questions"],
        total_questions=row["total_questions"],
        answered_count=row["answered_count"],
        questions=plan.get("questions", []),
        questions_per_level=plan.get("questions_per_level", {}),
        created_at=row["created_at"],
        completed_at=row.get("completed_at"),
        answered_question_ids=[a["question_id"] for a in answered or []],
        resumed=resumed,
    )


class SessionComposer:
    def __init__(
        self,
        db,
        config: EngineConfig,
        mastery_store: MasteryStore,
        clock=None,
        policy: AllocationPolicy | None = None,
    ):
        self.db = db
        self.config = config
        self.mastery_store = mastery_store
        self.clock = clock or SystemClock()
        self.policy = policy or AllocationPolicy(config.level_weights)

    async def _storage(self, operation: str, awaitable):
        return await run_storage(self.db, operation, awaitable, self.config.storage_timeout_seconds)

    def _validate_request(self, user_id, max_questions) -> int:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInput("user_id must be a non-empty string", field="user_id")
        if max_questions is None:
            return self.config.default_session_questions
        if isinstance(max_questions, bool) or not isinstance(max_questions, int):
            raise InvalidInput(f"max_questions must be an integer, got {max_questions!r}")
        if max_questions < 1 or max_questions > self.config.max_session_questions:
            raise InvalidInput(
                f"max_questions must be between 1 and {self.config.max_session_questions}",
                max_questions=max_questions,
            )
        return max_questions

    async def compose_session(
        self,
        user_id: str,
        max_questions: Optional[int],
        catalog: CatalogReader,
        resume: bool = True,
    ) -> PracticeSession:
        max_questions = self._validate_request(user_id, max_questions)

        active = await self.get_active_session(user_id)
        if active is not None:
            return self._resume_or_fail(active, resume)

        # Every competency gets a defined level before grouping
        await self.mastery_store.ensure_initialized(user_id, catalog)
        competencies = await self._storage("list_competencies", catalog.list_competencies())
        levels = await self.mastery_store.get_effective_levels(user_id, competencies)

        buckets: dict[int, list[str]] = {}
        for competency in competencies:
            buckets.setdefault(levels[competency.id], []).append(competency.id)

        quotas = self.policy.bucket_quotas(buckets, max_questions)
        if sum(quotas.values()) < max_questions:
            raise InsufficientContent(
                f"No competencies available to build a {max_questions}-question session",
                required=max_questions,
                available=0,
            )

        questions: list[QuestionSelector] = []
        for level in sorted(quotas):
            quota = quotas[level]
            if quota == 0:
                continue
            pools = {}
            for competency_id in buckets[level]:
                pools[competency_id] = await self._storage(
                    "list_question_ids", catalog.list_question_ids(competency_id, quota, user_id)
                )
            allocation = spread(quota, buckets[level], {cid: len(ids) for cid, ids in pools.items()})
            selected = sum(allocation.values())
            if selected < quota:
                raise InsufficientContent(
                    f"Level {level} needs {quota} questions but only {selected} are available",
                    level=level,
                    required=quota,
                    available=selected,
                )
            for competency_id in buckets[level]:
                for question_id in pools[competency_id][:allocation[competency_id]]:
                    questions.append(QuestionSelector(
                        question_id=question_id, competency_id=competency_id, level=level
                    ))

        plan = {
            "questions": [q.model_dump() for q in questions],
            "questions_per_level": {str(level): quota for level, quota in quotas.items()},
        }
        session_id = await self._storage(
            "create_practice_session", self._insert_session(user_id, max_questions, plan)
        )
        if session_id is None:
            # Lost the race against a concurrent creator
            winner = await self.get_active_session(user_id)
            if winner is None:
                raise StorageConflict(
                    "Practice session insert conflicted but no active session exists",
                    user_id=user_id,
                )
            return self._resume_or_fail(winner, resume)

        logger.info(
            "Created practice session %s for user %s: %d questions %s",
            session_id, user_id, len(questions), plan["questions_per_level"],
        )
        return await self.get_session(user_id, session_id)

    async def _insert_session(self, user_id: str, max_questions: int, plan: dict) -> Optional[int]:
        try:
            return await ls.create_practice_session(
                self.db, user_id, max_questions, plan, self.clock.now().isoformat()
            )
        except Exception as exc:
            if isinstance(classify_storage_error(exc, "create_practice_session"), StorageConflict):
                await self.db.rollback()
                return None
            raise

    def _resume_or_fail(self, session: PracticeSession, resume: bool) -> PracticeSession:
        if not resume:
            raise SessionAlreadyActive(
                f"User {session.user_id} already has session {session.id} in progress",
                session_id=session.id,
            )
        logger.info("Resuming practice session %s for user %s", session.id, session.user_id)
        session.resumed = True
        return session

    async def get_active_session(self, user_id: str) -> Optional[PracticeSession]:
        row = await self._storage(
            "get_active_practice_session", ls.get_active_practice_session(self.db, user_id)
        )
        if row is None:
            return None
        return _session_from_row(row, await self.get_session_answers(row["id"]))

    async def get_session(self, user_id: str, session_id: int) -> PracticeSession:
        row = await self._storage(
            "get_practice_session", ls.get_practice_session(self.db, session_id)
        )
        if row is None or row["user_id"] != user_id:
            raise NotFound(f"Practice session {session_id} not found", session_id=session_id)
        return _session_from_row(row, await self.get_session_answers(session_id))

    async def get_session_answers(self, session_id: int) -> list[Dict[str, Any]]:
        return await self._storage(
            "get_session_answers", ls.get_session_answers(self.db, session_id)
        )

    async def build_result(self, session: PracticeSession, evaluated: bool = False) -> SessionResult:
        """Per-competency answer summary of a completed session."""
        if not session.is_completed:
            raise InvalidInput(
                f"Practice session {session.id} is not completed yet", session_id=session.id
            )
        decimals = self.config.accuracy_decimals
        answers = await self.get_session_answers(session.id)

        # Plan order, one entry per planned competency
        counts: dict[str, list[int]] = {}
        for question in session.questions:
            counts.setdefault(question.competency_id, [0, 0])
        for row in answers:
            tally = counts.setdefault(row["competency_id"], [0, 0])
            tally[0] += 1
            tally[1] += 1 if row["is_correct"] else 0

        results = []
        for competency_id, (answered, correct) in counts.items():
            results.append(CompetencyResult(
                competency_id=competency_id,
                questions_answered=answered,
                correct_answers=correct,
                accuracy=percent(correct, answered, decimals),
                level=await self.mastery_store.get_effective_level(session.user_id, competency_id),
            ))

        correct_total = sum(r.correct_answers for r in results)
        return SessionResult(
            session_id=session.id,
            user_id=session.user_id,
            total_questions=session.total_questions,
            correct_answers=correct_total,
            accuracy=percent(correct_total, session.total_questions, decimals),
            competency_results=results,
            completed_at=session.completed_at,
            evaluated=evaluated,
        )
