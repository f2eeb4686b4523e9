import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from app.config import settings
from app.db.database import init_db, close_db
from app.middleware.auth import AuthMiddleware
from app.services import reinforcement_sessions
from app.services.errors import ReinforcementError

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS setting (comma-separated) or sensible defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
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
    reinforcement_sessions.install()

    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(
            reinforcement_sessions.sweep_forever(settings.sweep_interval_seconds)
        )
    try:
        yield
    finally:
        if sweep_task is not None:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        reinforcement_sessions.uninstall()
        await close_db()


app = FastAPI(title="Mastery Reinforcement", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(AuthMiddleware)


@app.exception_handler(ReinforcementError)
async def reinforcement_error_handler(request: Request, exc: ReinforcementError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code, "retryable": exc.retryable},
    )


# Import and register routes
from app.routes.auth import router as auth_router
from app.routes.questions import router as questions_router
from app.routes.difficulties import router as difficulties_router
from app.routes.sessions import router as sessions_router

app.include_router(auth_router)
app.include_router(questions_router)
app.include_router(difficulties_router)
app.include_router(sessions_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
