"""Shared fixtures: a seeded catalog on an in-memory or file-backed SQLite database."""

import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mastery_engine.clock import FixedClock
from mastery_engine.db.database import SCHEMA_PATH
from mastery_engine.models import EngineConfig

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

# Five competencies ordered by code: comp-a .. comp-e, three questions each.
# Algebra: linear (comp-a, comp-b), quadratic (comp-c)
# Geometry: triangles (comp-d, comp-e), an empty subtopic with no competencies
SEED_SQL = """
INSERT INTO competencies (id, code, name) VALUES
    ('comp-a', 'A1', 'Linear equations'),
    ('comp-b', 'A2', 'Inequalities'),
    ('comp-c', 'B1', 'Quadratics'),
    ('comp-d', 'C1', 'Triangle angles'),
    ('comp-e', 'C2', 'Pythagoras');

INSERT INTO topics (id, name, position) VALUES
    ('t-alg', 'Algebra', 0),
    ('t-geo', 'Geometry', 1);

INSERT INTO subtopics (id, topic_id, name, position) VALUES
    ('s-lin', 't-alg', 'Linear', 0),
    ('s-quad', 't-alg', 'Quadratic', 1),
    ('s-tri', 't-geo', 'Triangles', 0),
    ('s-empty', 't-geo', 'Coming soon', 1);

INSERT INTO subtopic_competencies (subtopic_id, competency_id) VALUES
    ('s-lin', 'comp-a'),
    ('s-lin', 'comp-b'),
    ('s-quad', 'comp-c'),
    ('s-tri', 'comp-d'),
    ('s-tri', 'comp-e');

INSERT INTO questions (id, competency_id) VALUES
    ('q-a-1', 'comp-a'), ('q-a-2', 'comp-a'), ('q-a-3', 'comp-a'),
    ('q-b-1', 'comp-b'), ('q-b-2', 'comp-b'), ('q-b-3', 'comp-b'),
    ('q-c-1', 'comp-c'), ('q-c-2', 'comp-c'), ('q-c-3', 'comp-c'),
    ('q-d-1', 'comp-d'), ('q-d-2', 'comp-d'), ('q-d-3', 'comp-d'),
    ('q-e-1', 'comp-e'), ('q-e-2', 'comp-e'), ('q-e-3', 'comp-e');
"""

# competency -> (topic, subtopic) for building answer events
PLACEMENT = {
    "comp-a": ("t-alg", "s-lin"),
    "comp-b": ("t-alg", "s-lin"),
    "comp-c": ("t-alg", "s-quad"),
    "comp-d": ("t-geo", "s-tri"),
    "comp-e": ("t-geo", "s-tri"),
}


def answer(user_id, competency_id, is_correct=True, **extra):
    topic_id, subtopic_id = PLACEMENT[competency_id]
    return {
        "user_id": user_id,
        "competency_id": competency_id,
        "topic_id": topic_id,
        "subtopic_id": subtopic_id,
        "is_correct": is_correct,
        **extra,
    }


async def open_memory_db(seed=True):
    """In-memory aiosqlite database with the schema (and catalog) loaded."""
    import aiosqlite

    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_PATH.read_text())
    if seed:
        await db.executescript(SEED_SQL)
    await db.commit()
    return db


async def open_file_db(path):
    """Extra connection to a file database created by the seeded_db_file fixture."""
    import aiosqlite

    db = await aiosqlite.connect(str(path), timeout=10)
    db.row_factory = aiosqlite.Row
    return db


@pytest.fixture
def seeded_db_file(tmp_path):
    path = tmp_path / "mastery_test.db"
    conn = sqlite3.connect(path)
    conn.executescript(SCHEMA_PATH.read_text())
    conn.executescript(SEED_SQL)
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def config():
    return EngineConfig()
