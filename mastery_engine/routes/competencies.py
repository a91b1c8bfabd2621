from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mastery_engine.models import MasteryRecord
from mastery_engine.routes.deps import get_engine

router = APIRouter(prefix="/api/users/{user_id}/competencies", tags=["competencies"])


class LevelUpdate(BaseModel):
    level: int


@router.post("/initialize")
async def initialize_competencies(user_id: str, engine=Depends(get_engine)):
    created = await engine.ensure_initialized(user_id)
    return {"user_id": user_id, "created": created}


@router.get("")
async def list_competencies(user_id: str, engine=Depends(get_engine)):
    levels = await engine.mastery.list_levels(user_id, engine.catalog)
    summary = await engine.mastery.summarize(user_id, engine.catalog)
    return {
        "user_id": user_id,
        "competencies": [entry.model_dump() for entry in levels],
        "summary": summary.model_dump(),
    }


@router.get("/{competency_id}", response_model=MasteryRecord)
async def get_competency(user_id: str, competency_id: str, engine=Depends(get_engine)):
    return await engine.mastery.get_record(user_id, competency_id)


@router.put("/{competency_id}", response_model=MasteryRecord)
async def set_competency_level(
    user_id: str, competency_id: str, update: LevelUpdate, engine=Depends(get_engine)
):
    return await engine.set_level(user_id, competency_id, update.level)
