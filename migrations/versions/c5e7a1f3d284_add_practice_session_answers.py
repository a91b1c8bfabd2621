"""add_practice_session_answers

Per-question answers inside a practice session. The unique key stops a
question from counting twice; the user index backs unseen-first question
selection.

Revision ID: c5e7a1f3d284
Revises: 8b4f2d6e1a93
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "c5e7a1f3d284"
down_revision: Union[str, Sequence[str], None] = "8b4f2d6e1a93"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> str:
    if op.get_bind().dialect.name == "postgresql":
        return "id SERIAL PRIMARY KEY"
    return "id INTEGER PRIMARY KEY AUTOINCREMENT"


def upgrade() -> None:
    op.execute(sa.text(
        "CREATE TABLE IF NOT EXISTS practice_session_answers ("
        f"{_id_column()}, "
        "session_id INTEGER NOT NULL REFERENCES practice_sessions(id), "
        "user_id TEXT NOT NULL, "
        "question_id TEXT NOT NULL, "
        "competency_id TEXT NOT NULL, "
        "is_correct INTEGER NOT NULL, "
        "answered_at TEXT NOT NULL, "
        "UNIQUE (session_id, question_id))"
    ))
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_practice_session_answers_user "
        "ON practice_session_answers(user_id, question_id)"
    ))


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS idx_practice_session_answers_user"))
    op.execute(sa.text("DROP TABLE IF EXISTS practice_session_answers"))
