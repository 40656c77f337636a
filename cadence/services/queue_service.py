from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from cadence.logging_config import JobLoggerAdapter, get_logger
from cadence.models import QueueJob
from cadence.services.result import Result

logger = get_logger("queue")

MESSAGE_PROCESSING_QUEUE = "message-processing"
SEQUENCE_STEPS_QUEUE = "sequence-steps"

JobHandler = Callable[[Session, dict[str, Any]], Awaitable[Any]]
ExhaustedHook = Callable[[Session, dict[str, Any], str], None]


@dataclass(frozen=True)
class QueuePolicy:
    concurrency: int = 5
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    stall_seconds: int = 300


def compute_backoff_seconds(policy: QueuePolicy, attempts: int) -> float:
    return policy.backoff_seconds * (2 ** max(attempts - 1, 0))


class JobQueue:
    """Durable delayed-job queue stored in the queue_jobs table.

    Job ids are unique per queue while the row exists, so enqueueing a
    deterministic id twice is a no-op while the job is live. Completed jobs
    are deleted; failed jobs are kept with their last error until the same
    id is enqueued again.
    """

    def __init__(
        self,
        name: str,
        policy: QueuePolicy,
        session_factory: Callable[[], Session],
        on_exhausted: ExhaustedHook | None = None,
    ):
        self.name = name
        self.policy = policy
        self.session_factory = session_factory
        self.on_exhausted = on_exhausted

    def enqueue(
        self,
        db: Session,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        delay_seconds: float = 0,
        replace_pending: bool = False,
    ) -> bool:
        """Insert a job; returns False when a live job with the same id is already held.

        A FAILED row with the same id is replaced. With ``replace_pending`` a
        PENDING row is rescheduled too; a PROCESSING row is never touched.
        """
        now = datetime.now(timezone.utc)
        stmt = insert(QueueJob).values(
            id=uuid.uuid4(),
            queue=self.name,
            job_id=job_id or uuid.uuid4().hex,
            payload_json=payload,
            status="PENDING",
            attempts=0,
            run_at=now + timedelta(seconds=max(delay_seconds, 0)),
            created_at=now,
            updated_at=now,
        )
        replaceable = ["FAILED", "PENDING"] if replace_pending else ["FAILED"]
        stmt = stmt.on_conflict_do_update(
            index_elements=["queue", "job_id"],
            set_={
                "payload_json": stmt.excluded["payload_json"],
                "status": "PENDING",
                "attempts": 0,
                "run_at": stmt.excluded["run_at"],
                "last_error": None,
                "updated_at": stmt.excluded["updated_at"],
            },
            where=QueueJob.status.in_(replaceable),
        )
        result = db.execute(stmt)
        created = result.rowcount > 0
        logger.info(
            "Job enqueued" if created else "Job already queued",
            extra={"context": {"queue": self.name, "job_id": job_id, "delay_seconds": delay_seconds}},
        )
        return created

    def claim(self, db: Session, *, limit: int | None = None) -> list[dict[str, Any]]:
        rows = (
            db.execute(
                text(
                    """
                    WITH cte AS (
                        SELECT id
                        FROM queue_jobs
                        WHERE queue = :queue
                          AND (
                            (status = 'PENDING' AND run_at <= NOW())
                            OR (status = 'PROCESSING'
                                AND updated_at < NOW() - make_interval(secs => :stall_seconds))
                          )
                        ORDER BY run_at
                        LIMIT :limit
                        FOR UPDATE SKIP LOCKED
                    )
                    UPDATE queue_jobs
                    SET status = 'PROCESSING',
                        attempts = attempts + 1,
                        updated_at = NOW()
                    FROM cte
                    WHERE queue_jobs.id = cte.id
                    RETURNING queue_jobs.id,
                              queue_jobs.job_id,
                              queue_jobs.payload_json,
                              queue_jobs.attempts
                    """
                ),
                {
                    "queue": self.name,
                    "limit": limit or self.policy.concurrency,
                    "stall_seconds": self.policy.stall_seconds,
                },
            )
            .mappings()
            .all()
        )
        db.commit()
        return [dict(row) for row in rows]

    def complete(self, db: Session, row_id) -> None:
        db.execute(text("DELETE FROM queue_jobs WHERE id = :id"), {"id": row_id})
        db.commit()

    def retry_or_fail(self, db: Session, row: dict[str, Any], error: str) -> str:
        """Reschedule with exponential backoff, or mark FAILED once attempts are exhausted."""
        attempts = int(row.get("attempts") or 0)
        if attempts >= self.policy.max_attempts:
            db.execute(
                text(
                    """
                    UPDATE queue_jobs
                    SET status = 'FAILED', last_error = :last_error, updated_at = NOW()
                    WHERE id = :id
                    """
                ),
                {"id": row["id"], "last_error": error[:500]},
            )
            db.commit()
            logger.error(
                "Job abandoned after max attempts",
                extra={"context": {"queue": self.name, "job_id": row.get("job_id"), "attempts": attempts, "error": error[:500]}},
            )
            if self.on_exhausted is not None:
                try:
                    self.on_exhausted(db, row.get("payload_json") or {}, error)
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    logger.error(
                        "Exhausted-job hook failed",
                        extra={"context": {"queue": self.name, "job_id": row.get("job_id"), "error": str(exc)}},
                    )
            return "failed"

        run_at = datetime.now(timezone.utc) + timedelta(seconds=compute_backoff_seconds(self.policy, attempts))
        db.execute(
            text(
                """
                UPDATE queue_jobs
                SET status = 'PENDING', last_error = :last_error, run_at = :run_at, updated_at = NOW()
                WHERE id = :id
                """
            ),
            {"id": row["id"], "last_error": error[:500], "run_at": run_at},
        )
        db.commit()
        return "retry_scheduled"

    async def _run_job(self, row: dict[str, Any], handler: JobHandler) -> str:
        job_log = JobLoggerAdapter(logger, {"queue": self.name, "job_id": row.get("job_id"), "attempt": row.get("attempts")})
        db = self.session_factory()
        try:
            try:
                outcome = await handler(db, row.get("payload_json") or {})
                db.commit()
            except Exception as exc:
                db.rollback()
                job_log.error("Job failed", context={"error": str(exc)})
                return self.retry_or_fail(db, row, str(exc))
            if isinstance(outcome, Result):
                job_log.info("Job completed", context=outcome.as_dict())
            else:
                job_log.info("Job completed")
            self.complete(db, row["id"])
            return "completed"
        finally:
            db.close()

    async def run_once(self, handler: JobHandler) -> dict[str, int]:
        results = {"claimed": 0, "completed": 0, "retry_scheduled": 0, "failed": 0}
        db = self.session_factory()
        try:
            rows = self.claim(db)
        finally:
            db.close()
        results["claimed"] = len(rows)
        if not rows:
            return results

        outcomes = await asyncio.gather(*(self._run_job(row, handler) for row in rows))
        for outcome in outcomes:
            results[outcome] += 1
        return results
