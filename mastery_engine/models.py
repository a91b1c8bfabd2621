from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class EngineConfig(BaseModel):
    daily_goal: int = Field(default=20, ge=1)
    mastery_threshold: int = Field(default=3, ge=0)
    max_level: int = Field(default=3, ge=1)
    level_weights: dict[int, int] = {0: 3, 1: 2, 2: 1, 3: 0}
    accuracy_decimals: int = Field(default=0, ge=0, le=4)
    recent_activity_days: int = Field(default=7, ge=1)
    storage_timeout_seconds: float = Field(default=5.0, gt=0)
    max_session_questions: int = Field(default=100, ge=1)
    default_session_questions: int = Field(default=20, ge=1)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.mastery_threshold > self.max_level:
            raise ValueError(
                f"mastery_threshold ({self.mastery_threshold}) exceeds max_level ({self.max_level})"
            )
        for level, weight in self.level_weights.items():
            if level < 0 or level > self.max_level:
                raise ValueError(f"level_weights has level {level} outside 0..{self.max_level}")
            if weight < 0:
                raise ValueError(f"level_weights[{level}] must not be negative")
        if self.default_session_questions > self.max_session_questions:
            raise ValueError("default_session_questions exceeds max_session_questions")
        return self


# ── Catalog ───────────────────────────────────────────────────────────

class Competency(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None


class Subtopic(BaseModel):
    id: str
    name: str
    competency_ids: list[str] = []


class Topic(BaseModel):
    id: str
    name: str
    subtopics: list[Subtopic] = []


# ── Mastery ───────────────────────────────────────────────────────────

class MasteryRecord(BaseModel):
    user_id: str
    competency_id: str
    level: int = 0
    last_evaluated_at: Optional[datetime] = None
    # False when the level is the implicit baseline with no stored row
    persisted: bool = True


class CompetencyLevel(BaseModel):
    competency: Competency
    level: int = 0
    last_evaluated_at: Optional[datetime] = None


class CompetencySummary(BaseModel):
    total_competencies: int = 0
    mastered_competencies: int = 0
    in_progress_competencies: int = 0
    beginner_competencies: int = 0
    average_level: float = 0.0


# ── Answers & statistics ──────────────────────────────────────────────

class AnswerEvent(BaseModel):
    user_id: str = Field(min_length=1)
    competency_id: str = Field(min_length=1)
    topic_id: str = Field(min_length=1)
    subtopic_id: str = Field(min_length=1)
    is_correct: bool
    timestamp: Optional[datetime] = None


class GeneralStatistics(BaseModel):
    total_questions: int = 0
    total_correct: int = 0
    overall_accuracy: float = 0
    study_streak: int = 0
    competencies: CompetencySummary = CompetencySummary()


class SubtopicProgress(BaseModel):
    id: str
    name: str
    questions_answered: int = 0
    correct_answers: int = 0
    accuracy: float = 0
    mastered: bool = False


class TopicProgress(BaseModel):
    id: str
    name: str
    questions_answered: int = 0
    correct_answers: int = 0
    accuracy: float = 0
    topic_progress: float = 0
    subtopics: list[SubtopicProgress] = []


class CompetencyProgress(BaseModel):
    id: str
    code: str
    name: str
    questions_answered: int = 0
    correct_answers: int = 0
    accuracy: float = 0
    mastery_level: int = 0


class DailyActivity(BaseModel):
    date: date
    questions_completed: int = 0
    completed_daily_goal: bool = False


class UserStatistics(BaseModel):
    user_id: str
    general: GeneralStatistics
    by_topic: list[TopicProgress] = []
    by_competency: list[CompetencyProgress] = []
    recent_activity: list[DailyActivity] = []


# ── Study streak ──────────────────────────────────────────────────────

class StudyStreakEntry(BaseModel):
    user_id: str
    date: date
    questions_completed: int = 0
    completed_daily_goal: bool = False


class DailyStudyResult(BaseModel):
    current_streak: int
    questions_completed: int
    completed_daily_goal: bool
    date: date


# ── Practice sessions ─────────────────────────────────────────────────

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"


class QuestionSelector(BaseModel):
    question_id: str
    competency_id: str
    level: int


class PracticeSession(BaseModel):
    id: int
    user_id: str
    status: str = SESSION_IN_PROGRESS
    max_questions: int
    total_questions: int
    answered_count: int = 0
    questions: list[QuestionSelector] = []
    questions_per_level: dict[int, int] = {}
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    answered_question_ids: list[str] = []
    resumed: bool = False

    @property
    def is_completed(self) -> bool:
        return self.status == SESSION_COMPLETED


class CompetencyResult(BaseModel):
    competency_id: str
    questions_answered: int = 0
    correct_answers: int = 0
    accuracy: float = 0
    # Effective level after the session was evaluated
    level: int = 0


class SessionResult(BaseModel):
    session_id: int
    user_id: str
    total_questions: int
    correct_answers: int = 0
    accuracy: float = 0
    competency_results: list[CompetencyResult] = []
    completed_at: Optional[datetime] = None
    # True when the results were fed back into competency levels
    evaluated: bool = False


class SessionAnswerOutcome(BaseModel):
    session: PracticeSession
    # Set only by the answer that completed the session
    study: Optional[DailyStudyResult] = None
    result: Optional[SessionResult] = None
