import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from cadence.config import settings
from cadence.database import SessionLocal, get_db
from cadence.logging_config import get_logger, setup_logging
from cadence.routers import abandoned_carts, follow_ups, lumibot_webhook, whatsapp_webhook
from cadence.services.message_processor import handle_message_job
from cadence.services.queue_service import (
    MESSAGE_PROCESSING_QUEUE,
    SEQUENCE_STEPS_QUEUE,
    JobHandler,
    JobQueue,
    QueuePolicy,
)
from cadence.services.sequence_service import make_sequence_handler, mark_sequence_failed

setup_logging()

app = FastAPI(
    title="Cadence API",
    description="Conversational messaging backend: inbound webhooks, AI replies and follow-up sequences",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whatsapp_webhook.router)
app.include_router(lumibot_webhook.router)
app.include_router(follow_ups.router)
app.include_router(abandoned_carts.router)


def build_queues() -> tuple[JobQueue, JobQueue]:
    message_queue = JobQueue(
        MESSAGE_PROCESSING_QUEUE,
        QueuePolicy(
            concurrency=settings.message_queue_concurrency,
            max_attempts=settings.message_queue_max_attempts,
            backoff_seconds=settings.message_queue_backoff_seconds,
            stall_seconds=settings.queue_stall_seconds,
        ),
        SessionLocal,
    )
    sequence_queue = JobQueue(
        SEQUENCE_STEPS_QUEUE,
        QueuePolicy(
            concurrency=settings.sequence_queue_concurrency,
            max_attempts=settings.sequence_queue_max_attempts,
            backoff_seconds=settings.sequence_queue_backoff_seconds,
            stall_seconds=settings.queue_stall_seconds,
        ),
        SessionLocal,
        on_exhausted=mark_sequence_failed,
    )
    return message_queue, sequence_queue


app.state.message_queue, app.state.sequence_queue = build_queues()

worker_logger = get_logger("queue_worker")
_worker_tasks: list[asyncio.Task] = []


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("QUEUE_WORKERS_ENABLED"), default=True)


async def _queue_worker_loop(queue: JobQueue, handler: JobHandler) -> None:
    interval_seconds = max(settings.queue_poll_interval_seconds, 0.1)
    while True:
        try:
            results = await queue.run_once(handler)
            if results["claimed"]:
                worker_logger.info(
                    "Queue worker processed",
                    extra={"context": {"queue": queue.name, **results}},
                )
                continue
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Queue worker loop failed",
                extra={"context": {"queue": queue.name, "error": str(exc)}},
            )
            await asyncio.sleep(interval_seconds)


@app.on_event("startup")
async def start_queue_workers() -> None:
    if not _is_queue_worker_enabled():
        return
    if any(not task.done() for task in _worker_tasks):
        return
    _worker_tasks.clear()
    message_queue: JobQueue = app.state.message_queue
    sequence_queue: JobQueue = app.state.sequence_queue
    _worker_tasks.append(asyncio.create_task(_queue_worker_loop(message_queue, handle_message_job)))
    _worker_tasks.append(asyncio.create_task(_queue_worker_loop(sequence_queue, make_sequence_handler(sequence_queue))))
    worker_logger.info("Queue workers started", extra={"context": {"queues": [message_queue.name, sequence_queue.name]}})


@app.on_event("shutdown")
async def stop_queue_workers() -> None:
    for task in _worker_tasks:
        task.cancel()
    for task in _worker_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _worker_tasks.clear()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    pending = db.execute(
        text("SELECT queue, COUNT(*) AS n FROM queue_jobs WHERE status = 'PENDING' GROUP BY queue")
    ).all()
    return {"status": "ok", "pending_jobs": {row.queue: row.n for row in pending}}
