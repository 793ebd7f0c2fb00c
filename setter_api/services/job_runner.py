import asyncio
import time
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from setter_api.config import Settings
from setter_api.errors import ConversationBusy, PipelineError
from setter_api.logging_config import get_logger
from setter_api.schemas.jobs import ClaimedJob, JobResult, JobStatus
from setter_api.services.alert_service import alert_error
from setter_api.services.conversation_worker import ConversationWorker
from setter_api.services.job_queue import (
    claim_next_job,
    complete_job,
    fail_job,
    release_stale_jobs,
    requeue_job,
)

logger = get_logger("job_runner")


class JobRunner:
    """Fixed pool of asyncio consumers: claim a job, run it, record the outcome.

    A job whose outcome cannot be written stays PROCESSING and blocks its
    serialization key until the periodic stale release puts it back.
    """

    def __init__(
        self,
        worker: ConversationWorker,
        session_factory,
        config: Settings,
        sleep_func=asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.worker = worker
        self.session_factory = session_factory
        self.config = config
        self.sleep_func = sleep_func
        self.clock = clock
        self._tasks: list[asyncio.Task] = []
        self._active_keys: set[str] = set()
        self._last_stale_check: Optional[float] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _claim(self) -> Optional[ClaimedJob]:
        with self.session_factory() as db:
            return claim_next_job(db, exclude_keys=self._active_keys)

    async def run_once(self) -> Optional[JobStatus]:
        """Claim and execute one job. Returns its new status, or None when the queue is idle."""
        job = self._claim()
        if job is None:
            return None
        self._active_keys.add(job.serialization_key)
        try:
            return await self._execute(job)
        finally:
            self._active_keys.discard(job.serialization_key)

    async def _execute(self, job: ClaimedJob) -> Optional[JobStatus]:
        context = {"job_id": str(job.id), "name": job.name, "attempt": job.attempts}
        try:
            result = await self.worker.handle(job.name, job.payload)
        except ConversationBusy:
            logger.info("Conversation busy, job requeued", extra={"context": context})
            return await self._record_outcome(job, self._requeue_writer(job))
        except PipelineError as e:
            logger.warning(
                f"Job failed: {e.code}",
                extra={"context": {**context, "error": e.message, "retryable": e.retryable}},
            )
            return await self._fail(job, f"{e.code}: {e.message}", retryable=e.retryable)
        except Exception as e:
            logger.error("Job crashed", extra={"context": {**context, "error": str(e)}}, exc_info=True)
            return await self._fail(job, f"{e.__class__.__name__}: {e}", retryable=True)

        status = await self._record_outcome(job, self._complete_writer(job, result))
        if status is not None:
            logger.info(
                f"Job {result.status.value.lower()}",
                extra={"context": {**context, "reason": result.reason, **result.detail}},
            )
        return status

    def _complete_writer(self, job: ClaimedJob, result: JobResult) -> Callable[[Session], JobStatus]:
        def write(db: Session) -> JobStatus:
            complete_job(db, job.id, result)
            return result.status

        return write

    def _requeue_writer(self, job: ClaimedJob) -> Callable[[Session], JobStatus]:
        def write(db: Session) -> JobStatus:
            requeue_job(db, job.id, delay_seconds=self.config.job_busy_requeue_seconds)
            return JobStatus.PENDING

        return write

    async def _fail(self, job: ClaimedJob, error: str, *, retryable: bool) -> Optional[JobStatus]:
        def write(db: Session) -> Optional[JobStatus]:
            return fail_job(
                db,
                job.id,
                error,
                retryable=retryable,
                backoff_seconds=self.config.job_retry_backoff_seconds,
            )

        status = await self._record_outcome(job, write)
        if status == JobStatus.DEAD:
            await asyncio.to_thread(
                alert_error,
                "Job dead-lettered",
                {
                    "job_id": str(job.id),
                    "name": job.name,
                    "serialization_key": job.serialization_key,
                    "attempts": job.attempts,
                    "error": error,
                },
            )
        return status

    async def _record_outcome(
        self, job: ClaimedJob, write: Callable[[Session], Optional[JobStatus]]
    ) -> Optional[JobStatus]:
        """Write a job outcome, retrying transient database errors."""
        attempts = max(1, self.config.job_outcome_write_attempts)
        error: Optional[SQLAlchemyError] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self.sleep_func(self.config.worker_poll_interval_seconds)
            try:
                with self.session_factory() as db:
                    return write(db)
            except SQLAlchemyError as e:
                error = e
                logger.warning(
                    "Job outcome write failed",
                    extra={"context": {"job_id": str(job.id), "attempt": attempt, "error": str(e)}},
                )

        context = {
            "job_id": str(job.id),
            "name": job.name,
            "serialization_key": job.serialization_key,
            "error": str(error),
            "released_after_seconds": self.config.job_stale_after_seconds,
        }
        logger.error("Job outcome not recorded, left for stale release", extra={"context": context})
        await asyncio.to_thread(alert_error, "Job outcome not recorded", context)
        return None

    def release_stale(self, now: Optional[datetime] = None) -> int:
        """Return PROCESSING jobs older than JOB_STALE_AFTER_SECONDS to PENDING."""
        self._last_stale_check = self.clock()
        with self.session_factory() as db:
            return release_stale_jobs(db, older_than_seconds=self.config.job_stale_after_seconds, now=now)

    def _stale_check_due(self) -> bool:
        if self._last_stale_check is None:
            return True
        return self.clock() - self._last_stale_check >= self.config.job_stale_check_interval_seconds

    async def _consume(self, index: int) -> None:
        while True:
            try:
                if index == 0 and self._stale_check_due():
                    self.release_stale()
                status = await self.run_once()
                if status is None:
                    await self.sleep_func(self.config.worker_poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Job consumer loop failed",
                    extra={"context": {"consumer": index, "error": str(exc)}},
                )
                await self.sleep_func(self.config.worker_poll_interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        busiest_job = (
            self.config.conversation_lock_wait_seconds
            + self.config.llm_timeout_seconds
            + self.config.dispatch_timeout_seconds
        )
        if self.config.job_stale_after_seconds <= busiest_job:
            logger.warning(
                "JOB_STALE_AFTER_SECONDS is shorter than a job can legitimately run",
                extra={
                    "context": {
                        "job_stale_after_seconds": self.config.job_stale_after_seconds,
                        "max_job_seconds": busiest_job,
                    }
                },
            )
        concurrency = max(1, self.config.worker_concurrency)
        self._tasks = [asyncio.create_task(self._consume(i)) for i in range(concurrency)]
        logger.info("Job runner started", extra={"context": {"concurrency": concurrency}})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job runner stopped")
