from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mastery_engine.models import DailyStudyResult
from mastery_engine.routes.deps import get_engine

router = APIRouter(prefix="/api/users/{user_id}/study-streak", tags=["study-streak"])


class DailyStudyRequest(BaseModel):
    # Questions answered since the last registration (incremental, not a running total)
    questions_count: int
    date: Optional[str] = None


@router.post("", response_model=DailyStudyResult)
async def register_daily_study(user_id: str, body: DailyStudyRequest, engine=Depends(get_engine)):
    return await engine.register_daily_study(user_id, body.questions_count, body.date)


@router.get("")
async def get_study_streak(user_id: str, engine=Depends(get_engine)):
    streak = await engine.get_current_streak(user_id)
    entries = await engine.streaks.list_entries(user_id)
    return {
        "user_id": user_id,
        "current_streak": streak,
        "daily_goal": engine.config.daily_goal,
        "recent": [
            {
                "date": e.date.isoformat(),
                "questions_completed": e.questions_completed,
                "completed_daily_goal": e.completed_daily_goal,
            }
            for e in entries
        ],
    }
