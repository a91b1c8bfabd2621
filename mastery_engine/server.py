import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mastery_engine.db.database import close_db, init_db
from mastery_engine.errors import EngineError, StorageUnavailable

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS env var (comma-separated) or sensible defaults.
_cors_env = os.environ.get("CORS_ORIGINS", "")
if _cors_env:
    _allowed_origins = [o.strip() for o in _cors_env.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Mastery Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    headers = None
    if isinstance(exc, StorageUnavailable):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Import and register routes
from mastery_engine.routes.competencies import router as competencies_router
from mastery_engine.routes.statistics import router as statistics_router
from mastery_engine.routes.streaks import router as streaks_router
from mastery_engine.routes.sessions import router as sessions_router

app.include_router(competencies_router)
app.include_router(statistics_router)
app.include_router(streaks_router)
app.include_router(sessions_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
