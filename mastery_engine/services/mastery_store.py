"""Mastery Store - per-(user, competency) mastery levels.

A competency without a stored row has the implicit baseline level 0. That
rule lives in one place (_effective_level) and every read path goes through
it. Missing rows are materialised by ensure_initialized with conflict-ignoring
inserts, so lazy and eager initialisation can race without duplicates or
errors.
"""

import logging
from typing import Optional

from mastery_engine.clock import SystemClock
from mastery_engine.db import learning_state as ls
from mastery_engine.db.database import run_storage
from mastery_engine.errors import InvalidInput, InvalidLevel, NotFound
from mastery_engine.models import (
    Competency,
    CompetencyLevel,
    CompetencySummary,
    EngineConfig,
    MasteryRecord,
)
from mastery_engine.services.catalog import CatalogReader

logger = logging.getLogger(__name__)

BASELINE_LEVEL = 0


def _effective_level(row: Optional[dict]) -> int:
    """Stored level, or the implicit baseline when there is no row."""
    if row is None or row.get("level") is None:
        return BASELINE_LEVEL
    return int(row["level"])


def _require_id(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field} must be a non-empty string", field=field)
    return value


class MasteryStore:
    def __init__(self, db, config: EngineConfig, clock=None, catalog: CatalogReader | None = None):
        self.db = db
        self.config = config
        self.clock = clock or SystemClock()
        self.catalog = catalog

    async def _storage(self, operation: str, awaitable):
        return await run_storage(self.db, operation, awaitable, self.config.storage_timeout_seconds)

    def validate_level(self, level) -> int:
        if isinstance(level, bool) or not isinstance(level, int):
            raise InvalidLevel(f"level must be an integer, got {level!r}", level=level)
        if level < BASELINE_LEVEL or level > self.config.max_level:
            raise InvalidLevel(
                f"level {level} outside 0..{self.config.max_level}",
                level=level,
                max_level=self.config.max_level,
            )
        return level

    async def get_record(self, user_id: str, competency_id: str) -> MasteryRecord:
        _require_id(user_id, "user_id")
        _require_id(competency_id, "competency_id")
        row = await self._storage(
            "get_user_competency", ls.get_user_competency(self.db, user_id, competency_id)
        )
        if row is None:
            return MasteryRecord(
                user_id=user_id,
                competency_id=competency_id,
                level=BASELINE_LEVEL,
                persisted=False,
            )
        return MasteryRecord(
            user_id=user_id,
            competency_id=competency_id,
            level=_effective_level(row),
            last_evaluated_at=row["last_evaluated_at"],
        )

    async def get_effective_level(self, user_id: str, competency_id: str) -> int:
        record = await self.get_record(user_id, competency_id)
        return record.level

    async def get_effective_levels(
        self, user_id: str, competencies: list[Competency]
    ) -> dict[str, int]:
        """Effective level for every given competency, in one read."""
        _require_id(user_id, "user_id")
        rows = await self._storage(
            "get_user_competencies", ls.get_user_competencies(self.db, user_id)
        )
        stored = {r["competency_id"]: r for r in rows}
        return {c.id: _effective_level(stored.get(c.id)) for c in competencies}

    async def ensure_initialized(self, user_id: str, catalog: CatalogReader) -> int:
        """Create level-0 records for catalog competencies the user lacks.

        Returns the number of records this call created; a repeated call
        returns 0.
        """
        _require_id(user_id, "user_id")
        competencies = await self._storage("list_competencies", catalog.list_competencies())
        rows = await self._storage(
            "get_user_competencies", ls.get_user_competencies(self.db, user_id)
        )
        existing = {r["competency_id"] for r in rows}
        missing = [c.id for c in competencies if c.id not in existing]
        if not missing:
            logger.debug("User %s already has all %d competencies", user_id, len(competencies))
            return 0

        created = await self._storage(
            "insert_missing_user_competencies",
            ls.insert_missing_user_competencies(
                self.db, user_id, missing, self.clock.now().isoformat()
            ),
        )
        logger.info(
            "Initialized %d of %d missing competencies for user %s",
            created, len(missing), user_id,
        )
        return created

    async def set_level(self, user_id: str, competency_id: str, new_level: int) -> MasteryRecord:
        _require_id(user_id, "user_id")
        _require_id(competency_id, "competency_id")
        self.validate_level(new_level)

        if self.catalog is not None:
            competencies = await self._storage("list_competencies", self.catalog.list_competencies())
            if competency_id not in {c.id for c in competencies}:
                raise NotFound(f"Competency {competency_id} not found", competency_id=competency_id)

        now = self.clock.now()
        await self._storage(
            "upsert_user_competency_level",
            ls.upsert_user_competency_level(
                self.db, user_id, competency_id, new_level, now.isoformat()
            ),
        )
        logger.info("User %s competency %s set to level %d", user_id, competency_id, new_level)
        return MasteryRecord(
            user_id=user_id,
            competency_id=competency_id,
            level=new_level,
            last_evaluated_at=now,
        )

    async def step_level(self, user_id: str, competency_id: str, is_correct: bool) -> int:
        """Raise (correct) or lower (incorrect) a level by one, clamped in the database.

        Returns the level after the step.
        """
        delta = 1 if is_correct else -1
        await self._storage(
            "step_user_competency_level",
            ls.step_user_competency_level(
                self.db, user_id, competency_id, delta,
                self.config.max_level, self.clock.now().isoformat(),
            ),
        )
        level = await self.get_effective_level(user_id, competency_id)
        logger.debug("User %s competency %s stepped %+d to level %d", user_id, competency_id, delta, level)
        return level

    async def list_levels(self, user_id: str, catalog: CatalogReader) -> list[CompetencyLevel]:
        """Every catalog competency with the user's effective level."""
        _require_id(user_id, "user_id")
        competencies = await self._storage("list_competencies", catalog.list_competencies())
        rows = await self._storage(
            "get_user_competencies", ls.get_user_competencies(self.db, user_id)
        )
        stored = {r["competency_id"]: r for r in rows}
        result = []
        for competency in competencies:
            row = stored.get(competency.id)
            result.append(CompetencyLevel(
                competency=competency,
                level=_effective_level(row),
                last_evaluated_at=row["last_evaluated_at"] if row else None,
            ))
        return result

    async def summarize(self, user_id: str, catalog: CatalogReader) -> CompetencySummary:
        levels = [entry.level for entry in await self.list_levels(user_id, catalog)]
        return summarize_levels(levels, self.config.mastery_threshold)


def summarize_levels(levels: list[int], mastery_threshold: int) -> CompetencySummary:
    total = len(levels)
    mastered = sum(1 for level in levels if level >= mastery_threshold)
    beginner = sum(1 for level in levels if level == BASELINE_LEVEL and level < mastery_threshold)
    average = sum(levels) / total if total > 0 else 0.0
    return CompetencySummary(
        total_competencies=total,
        mastered_competencies=mastered,
        in_progress_competencies=total - mastered - beginner,
        beginner_competencies=beginner,
        average_level=round(average, 2),
    )
