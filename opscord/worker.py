from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from opscord.core.config import Settings, get_settings
from opscord.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from opscord.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_cycle(client: JobClient, settings: Settings, *, reap: bool) -> int:
    """One trigger pass; returns how many units of work the API reported."""
    with tracer.start_as_current_span("worker.poll_cycle") as span:
        if reap:
            reclaimed_items = await client.reclaim_stale_queue_items()
            reclaimed_jobs = await client.reclaim_stale_jobs()
            if reclaimed_items or reclaimed_jobs:
                logger.info("reclaimed stale work queue_items=%s jobs=%s", reclaimed_items, reclaimed_jobs)

        drained = await client.drain_queue(batch_size=settings.worker_queue_batch_size)
        processed = await client.process_jobs(max_jobs=settings.worker_job_batch_size)
        work = int(drained.get("claimed", 0)) + int(processed.get("processed", 0))
        span.set_attribute("worker.work", work)
        if work:
            logger.info(
                "worker cycle queue_claimed=%s queue_failed=%s jobs_processed=%s jobs_failed=%s",
                drained.get("claimed", 0),
                drained.get("failed", 0),
                processed.get("processed", 0),
                processed.get("failed", 0),
            )
        return work


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    tracer_provider = setup_telemetry(settings, service_name=f"{settings.otel_service_name}-worker")
    if not settings.job_queue_secret:
        raise RuntimeError("OPSCORD_JOB_QUEUE_SECRET is required for the worker")
    client = JobClient(base_url=settings.api_base_url, job_secret=settings.job_queue_secret)

    backoff = settings.worker_poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                now = time.monotonic()
                reap = now - last_reap_at >= settings.worker_reaper_interval_seconds
                work = await run_cycle(client, settings, reap=reap)
                if reap:
                    last_reap_at = now
                backoff = settings.worker_poll_interval_seconds
                if not work:
                    await asyncio.sleep(settings.worker_poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - network robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(tracer_provider)


if __name__ == "__main__":
    asyncio.run(run_worker())
