from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mastery_engine.errors import NotFound
from mastery_engine.models import PracticeSession, SessionAnswerOutcome, SessionResult
from mastery_engine.routes.deps import get_engine
from mastery_engine.routes.statistics import AnswerRequest

router = APIRouter(prefix="/api/users/{user_id}/sessions", tags=["sessions"])


class SessionRequest(BaseModel):
    max_questions: Optional[int] = None
    # False: fail with 409 instead of resuming an in-progress session
    resume: bool = True


class SessionAnswerRequest(AnswerRequest):
    question_id: str

    def to_event(self, user_id: str) -> dict:
        return {"user_id": user_id, **self.model_dump(exclude={"question_id"})}


@router.post("", response_model=PracticeSession)
async def create_session(user_id: str, body: SessionRequest, engine=Depends(get_engine)):
    return await engine.compose_session(user_id, body.max_questions, resume=body.resume)


@router.get("/active", response_model=PracticeSession)
async def get_active_session(user_id: str, engine=Depends(get_engine)):
    session = await engine.sessions.get_active_session(user_id)
    if session is None:
        raise NotFound(f"User {user_id} has no session in progress", user_id=user_id)
    return session


@router.post("/{session_id}/answers", response_model=SessionAnswerOutcome)
async def submit_session_answer(
    user_id: str, session_id: int, answer: SessionAnswerRequest, engine=Depends(get_engine)
):
    return await engine.submit_session_answer(
        user_id, session_id, answer.question_id, answer.to_event(user_id)
    )


@router.get("/{session_id}/result", response_model=SessionResult)
async def get_session_result(user_id: str, session_id: int, engine=Depends(get_engine)):
    return await engine.get_session_result(user_id, session_id)
