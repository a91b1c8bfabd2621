"""initial_schema_baseline

Catalog tables plus per-user learning state (competency levels, answer
counters, study streaks and practice sessions).

Revision ID: 3a1c9e7d5b20
Revises:
Create Date: 2026-10-05 09:12:40.118204

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "3a1c9e7d5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _adapt_sql(sql: str, dialect_name: str) -> str:
    """Adapt DDL for the target database dialect."""
    if dialect_name == "postgresql":
        # AUTOINCREMENT → SERIAL for PostgreSQL
        sql = sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    return sql


def upgrade() -> None:
    """Create the full initial schema.

    This executes schema.sql which uses CREATE TABLE IF NOT EXISTS,
    so it is safe to run against an existing database.
    """
    dialect_name = op.get_bind().dialect.name

    schema_path = Path(__file__).resolve().parents[2] / "mastery_engine" / "db" / "schema.sql"
    schema_sql = schema_path.read_text()
    # Execute each statement individually (op.execute doesn't support executescript)
    for statement in schema_sql.split(";"):
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        cleaned = "\n".join(lines).strip()
        if cleaned:
            op.execute(sa.text(_adapt_sql(cleaned, dialect_name)))


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.execute(sa.text("DROP INDEX IF EXISTS uq_practice_sessions_active"))
    tables = [
        "practice_sessions",
        "study_streaks",
        "competency_statistics",
        "topic_statistics",
        "user_competencies",
        "questions",
        "subtopic_competencies",
        "subtopics",
        "topics",
        "competencies",
    ]
    for table in tables:
        op.drop_table(table)
