import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from setter_api.config import settings
from setter_api.database import Base, SessionLocal, engine
from setter_api.logging_config import get_logger, setup_logging
from setter_api.routers import admin, webhook
from setter_api.services.conversation_lock import build_conversation_locks
from setter_api.services.conversation_store import SqlConversationStore
from setter_api.services.conversation_worker import ConversationWorker
from setter_api.services.generation_client import build_generation_client
from setter_api.services.job_runner import JobRunner
from setter_api.services.reply_dispatcher import ReplyDispatcher

setup_logging(settings.log_level)

app = FastAPI(
    title="Setter API",
    description="Chat lead-qualification pipeline for Messenger and Instagram",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

runner_logger = get_logger("job_runner")
_job_runner: JobRunner | None = None


def _is_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.worker_enabled


def build_job_runner() -> JobRunner:
    store = SqlConversationStore(SessionLocal, default_min_score=settings.default_min_score)
    worker = ConversationWorker(
        store=store,
        generation=build_generation_client(settings),
        dispatcher=ReplyDispatcher(store, settings.graph_api_url, settings.dispatch_timeout_seconds),
        locks=build_conversation_locks(settings),
        session_factory=SessionLocal,
        config=settings,
    )
    return JobRunner(worker, SessionLocal, settings)


@app.on_event("startup")
async def start_job_runner() -> None:
    global _job_runner
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
    if not _is_worker_enabled():
        return
    if _job_runner is None or not _job_runner.running:
        _job_runner = build_job_runner()
        _job_runner.start()


@app.on_event("shutdown")
async def stop_job_runner() -> None:
    global _job_runner
    if _job_runner is None:
        return
    try:
        await _job_runner.stop()
    except asyncio.CancelledError:
        pass
    _job_runner = None
    runner_logger.info("Job runner shut down")


@app.get("/health")
async def health():
    return {"status": "ok", "worker_running": bool(_job_runner and _job_runner.running)}
