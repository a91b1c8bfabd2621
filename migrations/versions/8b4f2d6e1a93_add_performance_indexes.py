"""add_performance_indexes

Indexes on the per-user lookups behind statistics, streak and session
queries.

Revision ID: 8b4f2d6e1a93
Revises: 3a1c9e7d5b20
Create Date: 2026-10-05

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "8b4f2d6e1a93"
down_revision: Union[str, Sequence[str], None] = "3a1c9e7d5b20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_study_streaks_user_date "
        "ON study_streaks(user_id, study_date)"
    ))
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_topic_statistics_user "
        "ON topic_statistics(user_id)"
    ))
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_practice_sessions_user_status "
        "ON practice_sessions(user_id, status)"
    ))
    # catalog lookups used when composing sessions
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_questions_competency "
        "ON questions(competency_id)"
    ))
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_subtopics_topic "
        "ON subtopics(topic_id, position)"
    ))


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS idx_subtopics_topic"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_questions_competency"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_practice_sessions_user_status"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_topic_statistics_user"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_study_streaks_user_date"))
