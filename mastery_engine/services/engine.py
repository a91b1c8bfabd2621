"""Engine facade: wires the components for one storage connection.

Control flow for an answer inside a practice session:
  check the question against the session plan
  -> record it (session advance and counters in one transaction, then hooks)
  -> when the session completes, register its questions as the day's study
     and build the per-competency result (stepping levels when enabled)
"""

import logging
from typing import Optional

from mastery_engine.clock import SystemClock
from mastery_engine.errors import InvalidInput
from mastery_engine.models import (
    DailyStudyResult,
    EngineConfig,
    MasteryRecord,
    PracticeSession,
    SessionAnswerOutcome,
    SessionResult,
    UserStatistics,
)
from mastery_engine.services.allocation import AllocationPolicy
from mastery_engine.services.catalog import CatalogReader
from mastery_engine.services.evaluation import mastery_evaluation_hook
from mastery_engine.services.mastery_store import MasteryStore
from mastery_engine.services.session_composer import SessionComposer
from mastery_engine.services.statistics import StatisticsAggregator, coerce_answer_event
from mastery_engine.services.streaks import StudyStreakTracker

logger = logging.getLogger(__name__)


class MasteryEngine:
    def __init__(
        self,
        db,
        catalog: CatalogReader,
        config: EngineConfig,
        clock=None,
        evaluate_on_answer: bool = False,
        evaluate_on_completion: bool = False,
        policy: AllocationPolicy | None = None,
    ):
        self.catalog = catalog
        self.config = config
        self.clock = clock or SystemClock()
        self.mastery = MasteryStore(db, config, self.clock, catalog=catalog)
        self.streaks = StudyStreakTracker(db, config, self.clock)
        self.statistics = StatisticsAggregator(
            db, config, catalog, self.mastery, self.streaks, self.clock
        )
        self.sessions = SessionComposer(db, config, self.mastery, self.clock, policy=policy)
        self.evaluate_on_completion = evaluate_on_completion
        if evaluate_on_answer:
            self.statistics.add_post_write_hook(mastery_evaluation_hook(self.mastery))

    # ── Mastery ───────────────────────────────────────────────────────

    async def ensure_initialized(self, user_id: str) -> int:
        return await self.mastery.ensure_initialized(user_id, self.catalog)

    async def get_effective_level(self, user_id: str, competency_id: str) -> int:
        return await self.mastery.get_effective_level(user_id, competency_id)

    async def set_level(self, user_id: str, competency_id: str, new_level: int) -> MasteryRecord:
        return await self.mastery.set_level(user_id, competency_id, new_level)

    # ── Statistics ────────────────────────────────────────────────────

    async def record_answer(self, event):
        return await self.statistics.record_answer(event)

    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        return await self.statistics.get_user_statistics(user_id)

    # ── Study streak ──────────────────────────────────────────────────

    async def register_daily_study(self, user_id: str, questions_count: int, study_date=None) -> DailyStudyResult:
        return await self.streaks.register_daily_study(user_id, questions_count, study_date)

    async def get_current_streak(self, user_id: str) -> int:
        return await self.streaks.get_current_streak(user_id)

    # ── Sessions ──────────────────────────────────────────────────────

    async def compose_session(self, user_id: str, max_questions: Optional[int] = None, resume: bool = True) -> PracticeSession:
        return await self.sessions.compose_session(user_id, max_questions, self.catalog, resume=resume)

    async def submit_session_answer(self, user_id: str, session_id: int, question_id: str, event) -> SessionAnswerOutcome:
        """Record the answer to one planned question of a session.

        The answer must name a question of the session plan that has not been
        answered yet, with the competency the plan assigned to it. The answer
        that completes the session also registers the batch as the day's
        study and returns the session result.
        """
        session = await self.sessions.get_session(user_id, session_id)
        if session.is_completed:
            raise InvalidInput(f"Practice session {session_id} is already completed", session_id=session_id)
        event = coerce_answer_event(event)
        if event.user_id != user_id:
            raise InvalidInput("Answer belongs to a different user", user_id=event.user_id)

        planned = next((q for q in session.questions if q.question_id == question_id), None)
        if planned is None:
            raise InvalidInput(
                f"Question {question_id} is not part of practice session {session_id}",
                session_id=session_id,
                question_id=question_id,
            )
        if question_id in session.answered_question_ids:
            raise InvalidInput(
                f"Question {question_id} was already answered in practice session {session_id}",
                session_id=session_id,
                question_id=question_id,
            )
        if event.competency_id != planned.competency_id:
            raise InvalidInput(
                f"Question {question_id} belongs to competency {planned.competency_id}",
                question_id=question_id,
                competency_id=event.competency_id,
            )

        await self.statistics.record_session_answer(session_id, question_id, event)
        session = await self.sessions.get_session(user_id, session_id)
        if not session.is_completed:
            return SessionAnswerOutcome(session=session)

        logger.info("Practice session %s completed for user %s", session_id, user_id)
        study = await self.streaks.register_daily_study(user_id, session.total_questions)
        result = await self._evaluate_session(session)
        logger.info(
            "Session %s finished for user %s at %s%% accuracy, streak now %d",
            session_id, user_id, result.accuracy, study.current_streak,
        )
        return SessionAnswerOutcome(session=session, study=study, result=result)

    async def _evaluate_session(self, session: PracticeSession) -> SessionResult:
        summary = await self.sessions.build_result(session)
        if not self.evaluate_on_completion:
            return summary
        # A competency answered without a miss moves up one level
        for entry in summary.competency_results:
            if entry.questions_answered and entry.correct_answers == entry.questions_answered:
                await self.mastery.step_level(session.user_id, entry.competency_id, True)
        return await self.sessions.build_result(session, evaluated=True)

    async def get_session_result(self, user_id: str, session_id: int) -> SessionResult:
        session = await self.sessions.get_session(user_id, session_id)
        return await self.sessions.build_result(session, evaluated=self.evaluate_on_completion)
