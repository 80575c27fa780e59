from __future__ import annotations

import logging
import random
import secrets
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from opscord.core.config import get_settings
from opscord.jobs.handlers import JobHandler, JobResult, build_job_handlers
from opscord.services.ingest import get_ingestion_gateway
from opscord.services.repository import JOB_STATUSES, RepositoryConflictError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BATCH_CEILING = 100
_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_job_id() -> str:
    random_part = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"job_{_to_base36(int(time.time() * 1000))}_{random_part}"


@dataclass(slots=True)
class ProcessOutcome:
    processed: bool
    job: dict[str, Any] | None = None
    result: JobResult | None = None


@dataclass(slots=True)
class BatchOutcome:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ProcessOutcome] = field(default_factory=list)


class JobProcessor:
    def __init__(
        self,
        repository: Any,
        handlers: Mapping[str, JobHandler],
        *,
        default_max_attempts: int = 3,
        batch_ceiling: int = BATCH_CEILING,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        retry_jitter_seconds: float = 1.0,
        processing_timeout_seconds: int = 600,
        retry_failed_ceiling: int = 6,
    ) -> None:
        self.repository = repository
        self.handlers = dict(handlers)
        self.default_max_attempts = default_max_attempts
        self.batch_ceiling = min(batch_ceiling, BATCH_CEILING)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.retry_jitter_seconds = retry_jitter_seconds
        self.processing_timeout_seconds = processing_timeout_seconds
        self.retry_failed_ceiling = retry_failed_ceiling

    async def create_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> dict[str, Any]:
        job = await self.repository.create_job(
            job_id=generate_job_id(),
            job_type=job_type,
            payload=payload or {},
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            scheduled_at=scheduled_at,
        )
        logger.info("job created job_id=%s job_type=%s priority=%s", job["job_id"], job_type, priority)
        return job

    async def process_next(self, allowed_types: list[str] | None = None) -> ProcessOutcome:
        job = await self.repository.claim_next_job(job_types=allowed_types or None)
        if job is None:
            return ProcessOutcome(processed=False)

        with tracer.start_as_current_span("jobs.process") as span:
            span.set_attribute("job.id", job["id"])
            span.set_attribute("job.type", job["job_type"])
            result = await self._run_handler(job)
            final = await self._record_outcome(job, result)
            span.set_attribute("job.status", final["status"])
        return ProcessOutcome(processed=True, job=final, result=result)

    async def process_batch(self, max_jobs: int = 10, job_types: list[str] | None = None) -> BatchOutcome:
        limit = max(1, min(max_jobs, self.batch_ceiling))
        outcome = BatchOutcome()
        for _ in range(limit):
            single = await self.process_next(job_types)
            if not single.processed:
                break
            outcome.processed += 1
            if single.result is not None and single.result.success:
                outcome.succeeded += 1
            else:
                outcome.failed += 1
            outcome.results.append(single)
        if outcome.processed:
            logger.info(
                "job batch finished processed=%s succeeded=%s failed=%s",
                outcome.processed,
                outcome.succeeded,
                outcome.failed,
            )
        return outcome

    async def stats(self) -> dict[str, Any]:
        counts: dict[str, Any] = {status: 0 for status in JOB_STATUSES}
        by_type: dict[str, int] = {}
        for row in await self.repository.count_jobs_by_status_and_type():
            count = int(row["count"])
            counts[row["status"]] = counts.get(row["status"], 0) + count
            by_type[row["job_type"]] = by_type.get(row["job_type"], 0) + count
        counts["by_type"] = by_type
        return counts

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        return await self.repository.get_job(job_id)

    async def get_job_by_job_id(self, job_id: str) -> dict[str, Any] | None:
        return await self.repository.get_job_by_job_id(job_id)

    async def recent_jobs(self, limit: int = 20) -> list[dict[str, Any]]:
        return await self.repository.list_recent_jobs(limit=limit)

    async def recent_failures(self, limit: int = 10) -> list[dict[str, Any]]:
        return await self.repository.list_recent_jobs(limit=limit, status="failed")

    async def reclaim_stale(self, limit: int = 100) -> int:
        stale_before = datetime.now(timezone.utc) - timedelta(seconds=self.processing_timeout_seconds)
        reclaimed = await self.repository.reclaim_stale_jobs(stale_before=stale_before, limit=limit)
        if reclaimed:
            logger.warning("reclaimed stale jobs count=%s", reclaimed)
        return reclaimed

    async def retry_failed(self, max_retries: int | None = None, limit: int = 100) -> int:
        """Requeue failed jobs that have run fewer than `max_retries` times.

        Each requeued job is granted one more attempt beyond what it has used.
        """
        ceiling = max_retries or self.retry_failed_ceiling
        requeued = await self.repository.requeue_failed_jobs(attempts_ceiling=ceiling, limit=limit)
        if requeued:
            logger.info("requeued failed jobs count=%s", requeued)
        return requeued

    async def cleanup(self, older_than_days: int = 30) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        return await self.repository.delete_terminal_jobs(completed_before=cutoff)

    async def _run_handler(self, job: dict[str, Any]) -> JobResult:
        handler = self.handlers.get(job["job_type"])
        if handler is None:
            return JobResult(success=False, error=f"No handler found for job type: {job['job_type']}")
        try:
            return await handler(job)
        except Exception as exc:
            logger.exception("job handler raised job_id=%s job_type=%s", job["job_id"], job["job_type"])
            return JobResult(success=False, error=str(exc) or exc.__class__.__name__)

    async def _record_outcome(self, job: dict[str, Any], result: JobResult) -> dict[str, Any]:
        try:
            if result.success:
                final = await self.repository.complete_job(job["id"], result=result.data)
                logger.info("job completed job_id=%s job_type=%s", job["job_id"], job["job_type"])
                return final

            error_message = result.error or "Unknown error occurred"
            if job["attempts"] < job["max_attempts"]:
                delay = self._compute_retry_delay_seconds(attempt=job["attempts"])
                final = await self.repository.schedule_job_retry(
                    job["id"],
                    error_message=error_message,
                    scheduled_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                )
                logger.warning(
                    "job scheduled for retry job_id=%s attempts=%s delay_s=%.2f error=%s",
                    job["job_id"],
                    job["attempts"],
                    delay,
                    error_message,
                )
                return final

            final = await self.repository.fail_job(job["id"], error_message=error_message)
            logger.error(
                "job failed permanently job_id=%s attempts=%s error=%s", job["job_id"], job["attempts"], error_message
            )
            return final
        except RepositoryConflictError:
            # Reclaimed by the sweeper while the handler was running.
            logger.warning("job no longer processing job_id=%s", job["job_id"])
            return await self.repository.get_job(job["id"]) or job

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        if self.retry_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = min(self.retry_base_seconds * (2**multiplier), self.retry_max_seconds)
        return delay + random.uniform(0.0, self.retry_jitter_seconds)


@lru_cache
def get_job_processor() -> JobProcessor:
    settings = get_settings()
    repository = get_repository()
    return JobProcessor(
        repository,
        build_job_handlers(
            repository=repository,
            gateway=get_ingestion_gateway(),
            notification_timeout_seconds=settings.notification_timeout_seconds,
        ),
        default_max_attempts=settings.job_max_attempts,
        batch_ceiling=settings.job_batch_ceiling,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        processing_timeout_seconds=settings.job_processing_timeout_seconds,
        retry_failed_ceiling=settings.job_retry_failed_ceiling,
    )
