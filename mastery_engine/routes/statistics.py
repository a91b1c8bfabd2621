from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mastery_engine.models import UserStatistics
from mastery_engine.routes.deps import get_engine

router = APIRouter(prefix="/api/users/{user_id}", tags=["statistics"])


class AnswerRequest(BaseModel):
    competency_id: str
    topic_id: str
    subtopic_id: str
    is_correct: bool
    timestamp: Optional[datetime] = None

    def to_event(self, user_id: str) -> dict:
        return {"user_id": user_id, **self.model_dump()}


@router.post("/answers", status_code=201)
async def record_answer(user_id: str, answer: AnswerRequest, engine=Depends(get_engine)):
    event = await engine.record_answer(answer.to_event(user_id))
    return {"recorded": True, "answer": event.model_dump()}


@router.get("/statistics", response_model=UserStatistics)
async def get_statistics(user_id: str, engine=Depends(get_engine)):
    return await engine.get_user_statistics(user_id)
