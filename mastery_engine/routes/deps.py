from fastapi import Depends

from mastery_engine.clock import SystemClock
from mastery_engine.config import settings
from mastery_engine.db.database import get_db
from mastery_engine.services.catalog import SqlCatalogReader
from mastery_engine.services.engine import MasteryEngine


def get_clock():
    return SystemClock()


async def get_engine(db=Depends(get_db), clock=Depends(get_clock)) -> MasteryEngine:
    """Per-request engine bound to the request's database connection."""
    return MasteryEngine(
        db,
        SqlCatalogReader(db),
        settings.engine_config(),
        clock,
        evaluate_on_answer=settings.evaluate_on_answer,
        evaluate_on_completion=settings.evaluate_on_completion,
    )
