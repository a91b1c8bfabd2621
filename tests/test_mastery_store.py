"""Tests for per-user competency levels (MasteryStore)."""

import asyncio

import pytest

from conftest import open_file_db, open_memory_db
from mastery_engine.errors import InvalidInput, InvalidLevel, NotFound
from mastery_engine.services.catalog import SqlCatalogReader
from mastery_engine.services.mastery_store import MasteryStore, summarize_levels


async def _count_rows(db, user_id):
    cursor = await db.execute(
        "SELECT COUNT(*) AS n FROM user_competencies WHERE user_id = ?", (user_id,)
    )
    row = await cursor.fetchone()
    return row["n"]


class TestEffectiveLevel:
    def test_unset_competency_is_level_zero(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock)
                assert await store.get_effective_level("u1", "comp-a") == 0
                record = await store.get_record("u1", "comp-a")
                assert record.level == 0
                assert record.persisted is False
                assert record.last_evaluated_at is None
                assert await _count_rows(db, "u1") == 0
            finally:
                await db.close()

        asyncio.run(run())

    def test_effective_levels_cover_whole_catalog(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                catalog = SqlCatalogReader(db)
                store = MasteryStore(db, config, clock, catalog=catalog)
                await store.set_level("u1", "comp-c", 2)
                levels = await store.get_effective_levels("u1", await catalog.list_competencies())
                assert levels == {"comp-a": 0, "comp-b": 0, "comp-c": 2, "comp-d": 0, "comp-e": 0}
            finally:
                await db.close()

        asyncio.run(run())

    def test_blank_user_id_rejected(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock)
                with pytest.raises(InvalidInput):
                    await store.get_effective_level("  ", "comp-a")
            finally:
                await db.close()

        asyncio.run(run())


class TestEnsureInitialized:
    def test_second_call_creates_nothing(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                catalog = SqlCatalogReader(db)
                store = MasteryStore(db, config, clock)
                assert await store.ensure_initialized("u1", catalog) == 5
                assert await store.ensure_initialized("u1", catalog) == 0
                assert await _count_rows(db, "u1") == 5
            finally:
                await db.close()

        asyncio.run(run())

    def test_keeps_existing_levels(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                catalog = SqlCatalogReader(db)
                store = MasteryStore(db, config, clock, catalog=catalog)
                await store.set_level("u1", "comp-b", 3)
                assert await store.ensure_initialized("u1", catalog) == 4
                assert await store.get_effective_level("u1", "comp-b") == 3
                assert await _count_rows(db, "u1") == 5
            finally:
                await db.close()

        asyncio.run(run())

    def test_concurrent_callers_do_not_duplicate(self, config, clock, seeded_db_file):
        async def run():
            conns = [await open_file_db(seeded_db_file) for _ in range(4)]
            try:
                results = await asyncio.gather(*[
                    MasteryStore(db, config, clock).ensure_initialized("u1", SqlCatalogReader(db))
                    for db in conns
                ])
                assert sum(results) == 5
                assert await _count_rows(conns[0], "u1") == 5
            finally:
                for db in conns:
                    await db.close()

        asyncio.run(run())


class TestSetLevel:
    def test_set_and_read_back(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock, catalog=SqlCatalogReader(db))
                record = await store.set_level("u1", "comp-a", 2)
                assert record.level == 2
                assert record.last_evaluated_at == clock.now()
                await store.set_level("u1", "comp-a", 1)
                assert await store.get_effective_level("u1", "comp-a") == 1
                assert await _count_rows(db, "u1") == 1
            finally:
                await db.close()

        asyncio.run(run())

    @pytest.mark.parametrize("bad_level", [-1, 4, 1.5, "2", True, None])
    def test_invalid_level_writes_nothing(self, config, clock, bad_level):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock, catalog=SqlCatalogReader(db))
                with pytest.raises(InvalidLevel):
                    await store.set_level("u1", "comp-a", bad_level)
                assert await _count_rows(db, "u1") == 0
            finally:
                await db.close()

        asyncio.run(run())

    def test_unknown_competency(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock, catalog=SqlCatalogReader(db))
                with pytest.raises(NotFound):
                    await store.set_level("u1", "comp-zzz", 1)
            finally:
                await db.close()

        asyncio.run(run())


class TestStepLevel:
    def test_correct_answers_climb_and_clamp(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock)
                levels = [await store.step_level("u1", "comp-a", True) for _ in range(5)]
                assert levels == [1, 2, 3, 3, 3]
            finally:
                await db.close()

        asyncio.run(run())

    def test_wrong_answer_never_goes_below_zero(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                store = MasteryStore(db, config, clock)
                assert await store.step_level("u1", "comp-a", False) == 0
                await store.step_level("u1", "comp-a", True)
                await store.step_level("u1", "comp-a", True)
                assert await store.step_level("u1", "comp-a", False) == 1
            finally:
                await db.close()

        asyncio.run(run())


class TestSummary:
    def test_summarize_levels(self):
        summary = summarize_levels([3, 2, 0, 0, 1], mastery_threshold=3)
        assert summary.total_competencies == 5
        assert summary.mastered_competencies == 1
        assert summary.in_progress_competencies == 2
        assert summary.beginner_competencies == 2
        assert summary.average_level == 1.2

    def test_empty_summary(self):
        summary = summarize_levels([], mastery_threshold=3)
        assert summary.total_competencies == 0
        assert summary.average_level == 0.0

    def test_list_levels_in_code_order(self, config, clock):
        async def run():
            db = await open_memory_db()
            try:
                catalog = SqlCatalogReader(db)
                store = MasteryStore(db, config, clock, catalog=catalog)
                await store.set_level("u1", "comp-d", 3)
                entries = await store.list_levels("u1", catalog)
                assert [e.competency.code for e in entries] == ["A1", "A2", "B1", "C1", "C2"]
                assert [e.level for e in entries] == [0, 0, 0, 3, 0]
                summary = await store.summarize("u1", catalog)
                assert summary.mastered_competencies == 1
                assert summary.beginner_competencies == 4
            finally:
                await db.close()

        asyncio.run(run())
