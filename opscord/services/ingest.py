from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from opscord.core.config import get_settings
from opscord.schemas.activities import IngestEventInput
from opscord.services.attention import score_event
from opscord.services.correlation import CorrelationEngine, get_correlation_engine
from opscord.services.embeddings import (
    EmbeddingProvider,
    EmbeddingUnavailableError,
    get_embedding_provider,
    prepare_embedding_text,
)
from opscord.services.repository import NewActivity, get_repository
from opscord.services.tasks import BackgroundTaskRunner, get_task_runner

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True, frozen=True)
class IngestResult:
    activity_id: str
    skipped: bool


def embedding_context(event: IngestEventInput) -> str:
    return f"{event.source} {event.activity_type}: {event.title}. {event.description or ''}"


class IngestionGateway:
    """Single entry point that turns a normalized event into a stored activity.

    Order matters: the raw audit write and the duplicate check come before any
    call with external cost, and correlation only starts once the activity row
    exists. Enrichment failures (audit, embedding, correlation) are logged and
    never change the result; a failed activity insert propagates.
    """

    def __init__(
        self,
        repository: Any,
        *,
        embedding_provider: EmbeddingProvider,
        correlation: CorrelationEngine | None,
        task_runner: BackgroundTaskRunner,
        embedding_timeout_seconds: float = 10.0,
        embedding_max_chars: int = 8000,
        audit_timeout_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.embedding_provider = embedding_provider
        self.correlation = correlation
        self.task_runner = task_runner
        self.embedding_timeout_seconds = embedding_timeout_seconds
        self.embedding_max_chars = embedding_max_chars
        self.audit_timeout_seconds = audit_timeout_seconds

    async def ingest(self, event: IngestEventInput) -> IngestResult:
        with tracer.start_as_current_span("ingest.event") as span:
            span.set_attribute("opscord.source", event.source)
            span.set_attribute("opscord.activity_type", event.activity_type)
            logger.info(
                "ingest received source=%s activity_type=%s external_id=%s",
                event.source,
                event.activity_type,
                event.external_id,
            )

            await self._record_raw_event(event)

            existing_id = await self.repository.find_activity_id(source=event.source, external_id=event.external_id)
            if existing_id:
                logger.info(
                    "ingest skipped duplicate source=%s external_id=%s activity_id=%s",
                    event.source,
                    event.external_id,
                    existing_id,
                )
                span.set_attribute("opscord.skipped", True)
                return IngestResult(activity_id=existing_id, skipped=True)

            embedding = await self._embed(event)
            attention_score = score_event(event.source, event.title, event.description, event.metadata)

            activity_id, inserted = await self.repository.insert_activity(
                NewActivity(
                    organization_id=event.organization_id,
                    source=event.source,
                    event_type=event.event_type,
                    external_id=event.external_id,
                    activity_type=event.activity_type,
                    title=event.title,
                    description=event.description,
                    repo_name=event.repo_name,
                    pr_number=event.pr_number,
                    issue_number=event.issue_number,
                    user_id=event.user_id,
                    metadata=event.metadata,
                    embedding=embedding,
                    attention_score=attention_score,
                )
            )
            span.set_attribute("opscord.activity_id", activity_id)
            if not inserted:
                logger.info(
                    "ingest lost insert race source=%s external_id=%s activity_id=%s",
                    event.source,
                    event.external_id,
                    activity_id,
                )
                span.set_attribute("opscord.skipped", True)
                return IngestResult(activity_id=activity_id, skipped=True)

            logger.info(
                "ingest stored activity_id=%s source=%s attention_score=%s embedded=%s",
                activity_id,
                event.source,
                attention_score,
                embedding is not None,
            )

            if event.organization_id and self.correlation is not None:
                self.task_runner.dispatch(
                    self.correlation.correlate(
                        activity_id,
                        text=f"{event.title} {event.description or ''}",
                        embedding=embedding,
                        organization_id=event.organization_id,
                        repo_name=event.repo_name,
                    ),
                    name=f"correlate:{activity_id}",
                )

            return IngestResult(activity_id=activity_id, skipped=False)

    async def _record_raw_event(self, event: IngestEventInput) -> None:
        try:
            await asyncio.wait_for(
                self.repository.record_raw_event(
                    source=event.source,
                    event_type=event.event_type,
                    payload=event.metadata,
                ),
                timeout=self.audit_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "raw event audit write failed source=%s event_type=%s error=%s",
                event.source,
                event.event_type,
                exc,
            )

    async def _embed(self, event: IngestEventInput) -> list[float] | None:
        text = prepare_embedding_text(embedding_context(event), self.embedding_max_chars)
        try:
            embedding = await asyncio.wait_for(self.embedding_provider.embed(text), timeout=self.embedding_timeout_seconds)
        except (EmbeddingUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning(
                "embedding unavailable, continuing without vector source=%s external_id=%s error=%s",
                event.source,
                event.external_id,
                str(exc) or "timeout",
            )
            return None
        except Exception:
            logger.exception(
                "embedding provider raised, continuing without vector source=%s external_id=%s",
                event.source,
                event.external_id,
            )
            return None
        return embedding or None


@lru_cache
def get_ingestion_gateway() -> IngestionGateway:
    settings = get_settings()
    return IngestionGateway(
        get_repository(),
        embedding_provider=get_embedding_provider(),
        correlation=get_correlation_engine(),
        task_runner=get_task_runner(),
        embedding_timeout_seconds=settings.embedding_timeout_seconds,
        embedding_max_chars=settings.embedding_max_chars,
        audit_timeout_seconds=settings.audit_timeout_seconds,
    )
