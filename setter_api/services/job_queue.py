"""Durable job queue backed by the `jobs` table.

At-least-once: a claimed job is PROCESSING until the runner records an
outcome; jobs left PROCESSING by a crashed process are released on startup.
Jobs sharing a serialization key are handed out one at a time, oldest first.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import exists, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, aliased

from setter_api.logging_config import get_logger
from setter_api.models import Job
from setter_api.schemas.jobs import ClaimedJob, JobResult, JobStatus

logger = get_logger("job_queue")

MAX_ERROR_CHARS = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_backoff_seconds(attempts: int, base_seconds: float) -> float:
    return base_seconds * (2 ** max(attempts - 1, 0))


def enqueue_job(
    db: Session,
    *,
    name: str,
    payload: dict[str, Any],
    serialization_key: str,
    dedup_key: str | None = None,
    agent_config_id=None,
    max_attempts: int = 5,
    delay_seconds: float = 0,
) -> uuid.UUID | None:
    """Insert a PENDING job. Returns its id, or None when (name, dedup_key) already exists."""
    now = _utcnow()
    job_id = uuid.uuid4()
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = (
        insert(Job)
        .values(
            id=job_id,
            name=name,
            payload_json=payload,
            serialization_key=serialization_key,
            dedup_key=dedup_key,
            agent_config_id=agent_config_id,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            next_attempt_at=now + timedelta(seconds=delay_seconds) if delay_seconds else None,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["name", "dedup_key"])
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount > 0:
        return job_id
    logger.info(
        "Duplicate job ignored",
        extra={"context": {"name": name, "dedup_key": dedup_key}},
    )
    return None


def claim_next_job(
    db: Session,
    *,
    exclude_keys: Iterable[str] = (),
    now: datetime | None = None,
) -> ClaimedJob | None:
    """Claim the oldest due PENDING job whose key has no older unfinished job."""
    now = now or _utcnow()
    older = aliased(Job)
    key_blocked = exists().where(
        older.serialization_key == Job.serialization_key,
        older.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
        older.created_at < Job.created_at,
    )

    query = db.query(Job).filter(
        Job.status == JobStatus.PENDING.value,
        or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= now),
        ~key_blocked,
    )
    exclude_keys = list(exclude_keys)
    if exclude_keys:
        query = query.filter(Job.serialization_key.notin_(exclude_keys))

    job = query.order_by(Job.created_at).with_for_update(skip_locked=True).first()
    if job is None:
        db.rollback()
        return None

    job.status = JobStatus.PROCESSING.value
    job.attempts = (job.attempts or 0) + 1
    job.updated_at = now
    claimed = ClaimedJob(
        id=job.id,
        name=job.name,
        payload=dict(job.payload_json or {}),
        serialization_key=job.serialization_key,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
    )
    db.commit()
    return claimed


def complete_job(db: Session, job_id, result: JobResult) -> None:
    job = db.query(Job).filter(Job.id == job_id).first()
    if job is None:
        return
    job.status = result.status.value
    job.result_json = result.model_dump(mode="json")
    job.updated_at = _utcnow()
    db.commit()


def fail_job(
    db: Session,
    job_id,
    error: str,
    *,
    retryable: bool,
    backoff_seconds: float = 2.0,
    now: datetime | None = None,
) -> JobStatus | None:
    """Reschedule a retryable failure or dead-letter the job. Returns the new status.

    Alerting on DEAD is left to the caller.
    """
    job = db.query(Job).filter(Job.id == job_id).first()
    if job is None:
        return None
    now = now or _utcnow()
    job.last_error = (error or "")[:MAX_ERROR_CHARS]
    job.updated_at = now

    if retryable and job.attempts < job.max_attempts:
        delay = compute_backoff_seconds(job.attempts, backoff_seconds)
        job.status = JobStatus.PENDING.value
        job.next_attempt_at = now + timedelta(seconds=delay)
        db.commit()
        logger.warning(
            "Job failed, retry scheduled",
            extra={
                "context": {
                    "job_id": str(job_id),
                    "name": job.name,
                    "attempts": job.attempts,
                    "delay_seconds": delay,
                    "error": job.last_error,
                }
            },
        )
        return JobStatus.PENDING

    job.status = JobStatus.DEAD.value
    job.next_attempt_at = None
    context = {
        "job_id": str(job_id),
        "name": job.name,
        "serialization_key": job.serialization_key,
        "attempts": job.attempts,
        "error": job.last_error,
    }
    db.commit()
    logger.error("Job dead-lettered", extra={"context": context})
    return JobStatus.DEAD


def requeue_job(db: Session, job_id, *, delay_seconds: float = 1.0) -> None:
    """Put a claimed job back without consuming an attempt."""
    job = db.query(Job).filter(Job.id == job_id).first()
    if job is None:
        return
    now = _utcnow()
    job.status = JobStatus.PENDING.value
    job.attempts = max((job.attempts or 0) - 1, 0)
    job.next_attempt_at = now + timedelta(seconds=delay_seconds)
    job.updated_at = now
    db.commit()


def release_stale_jobs(db: Session, *, older_than_seconds: float, now: datetime | None = None) -> int:
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=older_than_seconds)
    released = (
        db.query(Job)
        .filter(Job.status == JobStatus.PROCESSING.value, Job.updated_at <= cutoff)
        .update(
            {Job.status: JobStatus.PENDING.value, Job.next_attempt_at: None, Job.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if released:
        logger.warning("Released stale jobs", extra={"context": {"count": released}})
    return released


def cancel_pending_jobs(db: Session, agent_config_id) -> int:
    """Cancel queued-but-not-started jobs of an agent config. In-flight jobs are untouched."""
    cancelled = (
        db.query(Job)
        .filter(Job.agent_config_id == agent_config_id, Job.status == JobStatus.PENDING.value)
        .update(
            {Job.status: JobStatus.CANCELLED.value, Job.updated_at: _utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(
        "Cancelled pending jobs",
        extra={"context": {"agent_config_id": str(agent_config_id), "count": cancelled}},
    )
    return cancelled


def list_dead_jobs(db: Session, *, limit: int = 100) -> list[Job]:
    return (
        db.query(Job)
        .filter(Job.status == JobStatus.DEAD.value)
        .order_by(Job.updated_at.desc())
        .limit(limit)
        .all()
    )


def retry_dead_job(db: Session, job_id) -> bool:
    job = db.query(Job).filter(Job.id == job_id, Job.status == JobStatus.DEAD.value).first()
    if job is None:
        return False
    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.next_attempt_at = None
    job.updated_at = _utcnow()
    db.commit()
    logger.info("Dead job requeued", extra={"context": {"job_id": str(job_id), "name": job.name}})
    return True
