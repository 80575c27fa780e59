from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from opscord.core.config import get_settings
from opscord.services.ingest import IngestionGateway, get_ingestion_gateway
from opscord.services.repository import RepositoryConflictError, get_repository
from opscord.services.webhooks import normalize_event

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class DrainSummary:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


class RetryQueue:
    """Durable ingestion queue drained by periodic worker passes.

    Items move ``pending -> processing -> completed``; a failed pass bumps
    ``attempts`` and parks the item in ``retry_pending`` until the ceiling is
    reached, after which it is ``failed`` for good.
    """

    def __init__(
        self,
        repository: Any,
        gateway: IngestionGateway,
        *,
        max_attempts: int = 3,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 600,
        processing_timeout_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.processing_timeout_seconds = processing_timeout_seconds

    async def enqueue(
        self,
        organization_id: str | None,
        source: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        item = await self.repository.enqueue_ingestion_item(
            organization_id=organization_id,
            source=source,
            event_type=event_type,
            payload=payload,
        )
        logger.info("queue item enqueued id=%s source=%s event_type=%s", item["id"], source, event_type)
        return item

    async def drain(self, batch_size: int = 10) -> DrainSummary:
        summary = DrainSummary()
        with tracer.start_as_current_span("queue.drain") as span:
            items = await self.repository.list_claimable_ingestion_items(
                limit=max(1, batch_size),
                max_attempts=self.max_attempts,
            )
            for item in items:
                claimed = await self.repository.claim_ingestion_item(item["id"], max_attempts=self.max_attempts)
                if claimed is None:
                    summary.skipped += 1
                    continue
                summary.claimed += 1
                await self._process(claimed, summary)

            span.set_attribute("queue.claimed", summary.claimed)
            span.set_attribute("queue.failed", summary.failed)
        if summary.claimed or summary.skipped:
            logger.info(
                "queue drain finished claimed=%s completed=%s retried=%s failed=%s skipped=%s",
                summary.claimed,
                summary.completed,
                summary.retried,
                summary.failed,
                summary.skipped,
            )
        return summary

    async def reclaim_stale(self, limit: int = 100) -> int:
        stale_before = datetime.now(timezone.utc) - timedelta(seconds=self.processing_timeout_seconds)
        reclaimed = await self.repository.reclaim_stale_ingestion_items(
            stale_before=stale_before,
            max_attempts=self.max_attempts,
            limit=limit,
        )
        if reclaimed:
            logger.warning("reclaimed stale queue items count=%s", reclaimed)
        return reclaimed

    async def stats(self) -> dict[str, int]:
        return await self.repository.count_ingestion_items_by_status()

    async def recent_failures(self, limit: int = 10) -> list[dict[str, Any]]:
        return await self.repository.list_recent_ingestion_failures(limit=limit)

    async def _process(self, item: dict[str, Any], summary: DrainSummary) -> None:
        try:
            event = normalize_event(
                item["source"],
                item["event_type"],
                item["payload"],
                organization_id=item.get("organization_id"),
                fallback_external_id=f"queue-{item['id']}",
            )
            if event is None:
                logger.info("queue item has nothing to ingest id=%s source=%s", item["id"], item["source"])
            else:
                await self.gateway.ingest(event)
        except Exception as exc:
            await self._record_failure(item, exc, summary)
            return

        try:
            await self.repository.complete_ingestion_item(item["id"])
        except RepositoryConflictError:
            # Reclaimed by the sweeper while ingest was running.
            logger.warning("queue item no longer processing id=%s", item["id"])
            return
        summary.completed += 1

    async def _record_failure(self, item: dict[str, Any], exc: Exception, summary: DrainSummary) -> None:
        attempts = int(item.get("attempts") or 0) + 1
        error_message = str(exc) or exc.__class__.__name__
        if attempts >= self.max_attempts:
            status = "failed"
            next_attempt_at = None
        else:
            status = "retry_pending"
            delay = self._compute_retry_delay_seconds(attempt=attempts)
            next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay) if delay else None

        try:
            await self.repository.fail_ingestion_item(
                item["id"],
                status=status,
                error_message=error_message,
                next_attempt_at=next_attempt_at,
            )
        except RepositoryConflictError:
            logger.warning("queue item no longer processing id=%s", item["id"])
            return

        if status == "failed":
            summary.failed += 1
            logger.error(
                "queue item failed permanently id=%s attempts=%s error=%s", item["id"], attempts, error_message
            )
        else:
            summary.retried += 1
            logger.warning(
                "queue item scheduled for retry id=%s attempts=%s error=%s", item["id"], attempts, error_message
            )

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        return min(delay, self.retry_max_seconds)


@lru_cache
def get_retry_queue() -> RetryQueue:
    settings = get_settings()
    return RetryQueue(
        get_repository(),
        get_ingestion_gateway(),
        max_attempts=settings.queue_max_attempts,
        retry_base_seconds=settings.queue_retry_base_seconds,
        retry_max_seconds=settings.queue_retry_max_seconds,
        processing_timeout_seconds=settings.queue_processing_timeout_seconds,
    )
