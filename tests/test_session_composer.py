"""Tests for composing, resuming and completing practice sessions."""

import asyncio

import pytest

from conftest import answer, open_file_db, open_memory_db
from mastery_engine.errors import (
    InsufficientContent,
    InvalidInput,
    NotFound,
    SessionAlreadyActive,
)
from mastery_engine.models import SESSION_COMPLETED, SESSION_IN_PROGRESS, EngineConfig
from mastery_engine.services.catalog import SqlCatalogReader
from mastery_engine.services.engine import MasteryEngine


def _engine(db, config, clock, **kwargs):
    return MasteryEngine(db, SqlCatalogReader(db), config, clock, **kwargs)


class TestComposeSession:
    def test_all_level_zero(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                session = await engine.compose_session("u1", 5)
                assert session.status == SESSION_IN_PROGRESS
                assert session.total_questions == 5
                assert session.questions_per_level == {0: 5}
                assert all(q.level == 0 for q in session.questions)
                # one question per competency, drawn round-robin
                assert sorted(q.competency_id for q in session.questions) == [
                    "comp-a", "comp-b", "comp-c", "comp-d", "comp-e"
                ]
                assert all(q.question_id.startswith("q-") for q in session.questions)
                assert session.resumed is False
            finally:
                await db.close()

        asyncio.run(run())

    def test_initializes_levels_first(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                await _engine(db, config, clock).compose_session("u1", 5)
                cursor = await db.execute(
                    "SELECT COUNT(*) AS n FROM user_competencies WHERE user_id = ?", ("u1",)
                )
                assert (await cursor.fetchone())["n"] == 5
            finally:
                await db.close()

        asyncio.run(run())

    def test_biased_toward_low_levels(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                await engine.set_level("u1", "comp-a", 3)
                await engine.set_level("u1", "comp-b", 2)
                session = await engine.compose_session("u1", 10)
                assert session.total_questions == 10
                assert session.questions_per_level == {0: 9, 2: 1, 3: 0}
                by_level = {}
                for q in session.questions:
                    by_level.setdefault(q.level, []).append(q.competency_id)
                assert sorted(by_level[0]) == ["comp-c"] * 3 + ["comp-d"] * 3 + ["comp-e"] * 3
                assert by_level[2] == ["comp-b"]
                assert 3 not in by_level
            finally:
                await db.close()

        asyncio.run(run())

    def test_insufficient_content(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                with pytest.raises(InsufficientContent) as exc_info:
                    await engine.compose_session("u1", 20)
                assert exc_info.value.context["required"] == 20
                assert exc_info.value.context["available"] == 15
                assert await engine.sessions.get_active_session("u1") is None
            finally:
                await db.close()

        asyncio.run(run())

    def test_empty_catalog(self, config, clock):
        async def run():
            db = await open_memory_db(seed=False)
            try:
                with pytest.raises(InsufficientContent):
                    await _engine(db, config, clock).compose_session("u1", 5)
            finally:
                await db.close()

        asyncio.run(run())

    def test_default_and_invalid_sizes(self, clock):
        async def run():
            db = await open_memory_db()
            try:
                config = EngineConfig(default_session_questions=4, max_session_questions=10)
                engine = _engine(db, config, clock)
                for bad in (0, 11, -3, 2.0, "5", True):
                    with pytest.raises(InvalidInput):
                        await engine.compose_session("u1", bad)
                session = await engine.compose_session("u1")
                assert session.max_questions == 4
                assert session.total_questions == 4
            finally:
                await db.close()

        asyncio.run(run())


class TestSessionLifecycle:
    def test_resume_or_fail(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                first = await engine.compose_session("u1", 5)
                resumed = await engine.compose_session("u1", 3)
                assert resumed.id == first.id
                assert resumed.resumed is True
                assert resumed.total_questions == 5
                with pytest.raises(SessionAlreadyActive):
                    await engine.compose_session("u1", 5, resume=False)
                # other users are unaffected
                other = await engine.compose_session("u2", 5)
                assert other.id != first.id
            finally:
                await db.close()

        asyncio.run(run())

    def test_answers_until_completed(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                session = await engine.compose_session("u1", 3)
                planned = session.questions
                for expected, selector in enumerate(planned[:2], start=1):
                    outcome = await engine.submit_session_answer(
                        "u1", session.id, selector.question_id,
                        answer("u1", selector.competency_id),
                    )
                    assert outcome.session.answered_count == expected
                    assert outcome.session.status == SESSION_IN_PROGRESS
                last = planned[2]
                outcome = await engine.submit_session_answer(
                    "u1", session.id, last.question_id, answer("u1", last.competency_id)
                )
                session = outcome.session
                assert session.status == SESSION_COMPLETED
                assert session.is_completed
                assert session.completed_at == clock.now()
                assert session.answered_question_ids == [q.question_id for q in planned]

                assert await engine.sessions.get_active_session("u1") is None

                fresh = await engine.compose_session("u1", 3)
                assert fresh.id != session.id
                assert fresh.resumed is False
            finally:
                await db.close()

        asyncio.run(run())

    def test_other_users_session_not_found(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                session = await engine.compose_session("u1", 3)
                with pytest.raises(NotFound):
                    await engine.sessions.get_session("u2", session.id)
                with pytest.raises(NotFound):
                    await engine.sessions.get_session("u1", session.id + 100)
            finally:
                await db.close()

        asyncio.run(run())

    def test_concurrent_creation_yields_one_session(self, config, clock, seeded_db_file):
        async def run():
            conns = [await open_file_db(seeded_db_file) for _ in range(3)]
            try:
                sessions = await asyncio.gather(*[
                    _engine(db, config, clock).compose_session("u1", 5) for db in conns
                ])
                assert len({s.id for s in sessions}) == 1
                cursor = await conns[0].execute(
                    "SELECT COUNT(*) AS n FROM practice_sessions WHERE user_id = ?", ("u1",)
                )
                assert (await cursor.fetchone())["n"] == 1
            finally:
                for db in conns:
                    await db.close()

        asyncio.run(run())


class TestQuestionRotation:
    def test_next_session_prefers_unanswered_questions(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                engine = _engine(db, config, clock)
                first = await engine.compose_session("u1", 5)
                assert sorted(q.question_id for q in first.questions) == [
                    "q-a-1", "q-b-1", "q-c-1", "q-d-1", "q-e-1"
                ]
                for selector in first.questions:
                    await engine.submit_session_answer(
                        "u1", first.id, selector.question_id, answer("u1", selector.competency_id)
                    )

                second = await engine.compose_session("u1", 5)
                assert sorted(q.question_id for q in second.questions) == [
                    "q-a-2", "q-b-2", "q-c-2", "q-d-2", "q-e-2"
                ]

                # another user still starts from the first questions
                other = await engine.compose_session("u2", 5)
                assert sorted(q.question_id for q in other.questions) == [
                    "q-a-1", "q-b-1", "q-c-1", "q-d-1", "q-e-1"
                ]
            finally:
                await db.close()

        asyncio.run(run())

    def test_answered_questions_fill_in_when_pool_runs_out(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                catalog = SqlCatalogReader(db)
                engine = MasteryEngine(db, catalog, config, clock)
                session = await engine.compose_session("u1", 5)
                selector = next(q for q in session.questions if q.competency_id == "comp-a")
                await engine.submit_session_answer(
                    "u1", session.id, selector.question_id, answer("u1", "comp-a")
                )
                assert await catalog.list_question_ids("comp-a", 3, "u1") == ["q-a-2", "q-a-3", "q-a-1"]
                assert await catalog.list_question_ids("comp-a", 3) == ["q-a-1", "q-a-2", "q-a-3"]
                assert await catalog.list_question_ids("comp-a", 0, "u1") == []
            finally:
                await db.close()

        asyncio.run(run())
