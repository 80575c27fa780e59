from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

from opentelemetry import trace

from opscord.core.config import get_settings
from opscord.core.urls import parse_provider_reference
from opscord.services.embeddings import (
    EmbeddingProvider,
    EmbeddingUnavailableError,
    SimilaritySearch,
    get_embedding_provider,
    get_similarity_search,
    prepare_embedding_text,
)
from opscord.services.repository import SimilarActivity, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TICKET_KEY_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]+-\d+)\b")
ISSUE_NUMBER_PATTERN = re.compile(r"(?<![\w/&])#(\d+)\b")
URL_PATTERN = re.compile(r"https?://[^\s<>\"'`]+")

DEFAULT_SEMANTIC_THRESHOLD = 0.7
DEFAULT_SEMANTIC_LIMIT = 5
DEFAULT_RELATED_THRESHOLD = 0.6


@dataclass(slots=True, frozen=True)
class EventLink:
    source_event_id: str
    target_event_id: str
    link_type: str
    link_subtype: str | None = None
    similarity: float | None = None


@dataclass(slots=True)
class LinkedActivity:
    id: str
    title: str
    source: str
    type: str
    url: str | None
    relationship: str
    link_type: str
    link_subtype: str | None = None
    similarity: float | None = None


class CorrelationEngine:
    def __init__(
        self,
        repository: Any,
        *,
        similarity_search: SimilaritySearch,
        embedding_provider: EmbeddingProvider | None = None,
        semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
        semantic_limit: int = DEFAULT_SEMANTIC_LIMIT,
        related_threshold: float = DEFAULT_RELATED_THRESHOLD,
        embedding_max_chars: int = 8000,
    ) -> None:
        self.repository = repository
        self.similarity_search = similarity_search
        self.embedding_provider = embedding_provider
        self.semantic_threshold = semantic_threshold
        self.semantic_limit = semantic_limit
        self.related_threshold = related_threshold
        self.embedding_max_chars = embedding_max_chars

    async def correlate(
        self,
        activity_id: str,
        *,
        text: str,
        embedding: list[float] | None,
        organization_id: str,
        repo_name: str | None = None,
    ) -> list[EventLink]:
        """Run both detectors; one failing never stops the other."""
        lexical, semantic = await asyncio.gather(
            self.detect_lexical_links(activity_id, text, organization_id, repo_name=repo_name),
            self.detect_semantic_links(activity_id, embedding, organization_id),
            return_exceptions=True,
        )
        links: list[EventLink] = []
        for detector, outcome in (("lexical", lexical), ("semantic", semantic)):
            if isinstance(outcome, BaseException):
                logger.error(
                    "correlation detector failed detector=%s activity_id=%s error=%s",
                    detector,
                    activity_id,
                    outcome,
                    exc_info=outcome,
                )
                continue
            links.extend(outcome)
        return links

    async def detect_lexical_links(
        self,
        activity_id: str,
        text: str,
        organization_id: str,
        *,
        repo_name: str | None = None,
    ) -> list[EventLink]:
        if not text:
            return []

        with tracer.start_as_current_span("correlation.lexical") as span:
            span.set_attribute("opscord.activity_id", activity_id)
            targets: dict[str, str] = {}
            for target_id, subtype in await self._resolve_references(text, organization_id, repo_name):
                if target_id != activity_id:
                    targets.setdefault(target_id, subtype)

            links: list[EventLink] = []
            for target_id, subtype in targets.items():
                inserted = await self.repository.insert_event_link(
                    source_event_id=activity_id,
                    target_event_id=target_id,
                    link_type="lexical",
                    link_subtype=subtype,
                )
                if inserted:
                    links.append(
                        EventLink(
                            source_event_id=activity_id,
                            target_event_id=target_id,
                            link_type="lexical",
                            link_subtype=subtype,
                        )
                    )
                    logger.info(
                        "lexical link stored source=%s target=%s subtype=%s", activity_id, target_id, subtype
                    )
            span.set_attribute("opscord.links_created", len(links))
            return links

    async def detect_semantic_links(
        self,
        activity_id: str,
        embedding: list[float] | None,
        organization_id: str,
    ) -> list[EventLink]:
        if not embedding:
            return []

        with tracer.start_as_current_span("correlation.semantic") as span:
            span.set_attribute("opscord.activity_id", activity_id)
            matches = await self.similarity_search.find_similar(
                embedding=embedding,
                organization_id=organization_id,
                threshold=self.semantic_threshold,
                limit=self.semantic_limit,
                exclude_id=activity_id,
            )
            links: list[EventLink] = []
            for match in sorted(matches, key=lambda item: item.similarity, reverse=True):
                if match.id == activity_id:
                    continue
                similarity = max(0.0, min(1.0, float(match.similarity)))
                inserted = await self.repository.insert_event_link(
                    source_event_id=activity_id,
                    target_event_id=match.id,
                    link_type="semantic",
                    similarity=similarity,
                )
                if inserted:
                    links.append(
                        EventLink(
                            source_event_id=activity_id,
                            target_event_id=match.id,
                            link_type="semantic",
                            similarity=similarity,
                        )
                    )
            span.set_attribute("opscord.links_created", len(links))
            logger.info("semantic links stored activity_id=%s count=%s", activity_id, len(links))
            return links

    async def get_links(self, activity_id: str) -> list[LinkedActivity]:
        rows = await self.repository.list_event_links(activity_id)
        return [
            LinkedActivity(
                id=row["id"],
                title=row["title"],
                source=row["source"],
                type=row["activity_type"],
                url=activity_url(row["source"], row.get("metadata") or {}),
                relationship=row["relationship"],
                link_type=row["link_type"],
                link_subtype=row.get("link_subtype"),
                similarity=row.get("similarity"),
            )
            for row in rows
        ]

    async def find_related(
        self,
        text: str,
        *,
        threshold: float | None = None,
        limit: int = 5,
        organization_id: str | None = None,
    ) -> list[SimilarActivity]:
        # Searches are scoped to one tenant; without one there is nothing to search.
        if self.embedding_provider is None or not organization_id or not text.strip():
            return []
        try:
            embedding = await self.embedding_provider.embed(prepare_embedding_text(text, self.embedding_max_chars))
        except EmbeddingUnavailableError as exc:
            logger.warning("related context search skipped reason=embedding_unavailable error=%s", exc)
            return []
        if not embedding:
            return []
        return await self.similarity_search.find_similar(
            embedding=embedding,
            organization_id=organization_id,
            threshold=self.related_threshold if threshold is None else threshold,
            limit=limit,
        )

    async def _resolve_references(
        self,
        text: str,
        organization_id: str,
        repo_name: str | None,
    ) -> list[tuple[str, str]]:
        resolved: list[tuple[str, str]] = []

        for key in dict.fromkeys(TICKET_KEY_PATTERN.findall(text)):
            for target_id in await self.repository.find_activity_ids_by_ticket_key(
                organization_id=organization_id, key=key
            ):
                resolved.append((target_id, "ticket_reference"))

        for raw_number in dict.fromkeys(ISSUE_NUMBER_PATTERN.findall(text)):
            number = int(raw_number)
            target_ids: list[str] = []
            if repo_name:
                target_ids = await self.repository.find_activity_ids_by_number(
                    organization_id=organization_id, number=number, repo_name=repo_name
                )
            if not target_ids:
                target_ids = await self.repository.find_activity_ids_by_number(
                    organization_id=organization_id, number=number
                )
            resolved.extend((target_id, "issue_reference") for target_id in target_ids)

        for raw_url in dict.fromkeys(URL_PATTERN.findall(text)):
            reference = parse_provider_reference(raw_url)
            if reference is None:
                continue
            if reference.key:
                target_ids = await self.repository.find_activity_ids_by_ticket_key(
                    organization_id=organization_id, key=reference.key
                )
            elif reference.number is not None:
                target_ids = await self.repository.find_activity_ids_by_number(
                    organization_id=organization_id,
                    number=reference.number,
                    repo_name=reference.repo_name,
                    source=reference.source,
                )
            else:
                target_ids = []
            resolved.extend((target_id, "url_reference") for target_id in target_ids)

        return resolved


def activity_url(source: str, metadata: dict[str, Any]) -> str | None:
    """Best-effort link back to the provider for a stored activity."""
    if isinstance(metadata.get("url"), str):
        return metadata["url"]

    if source == "github":
        for key in ("pull_request", "issue"):
            entity = metadata.get(key)
            if isinstance(entity, dict) and isinstance(entity.get("html_url"), str):
                return entity["html_url"]
        if isinstance(metadata.get("html_url"), str):
            return metadata["html_url"]
        head_commit = metadata.get("head_commit")
        if isinstance(head_commit, dict) and isinstance(head_commit.get("url"), str):
            return head_commit["url"]
        return None

    if source == "gitlab":
        attributes = metadata.get("object_attributes")
        if isinstance(attributes, dict) and isinstance(attributes.get("url"), str):
            return attributes["url"]
        return None

    if source == "jira":
        issue = metadata.get("issue")
        if not isinstance(issue, dict):
            return None
        self_url = issue.get("self")
        key = issue.get("key")
        if isinstance(self_url, str) and isinstance(key, str):
            parsed = urlparse(self_url)
            if parsed.scheme and parsed.netloc:
                return f"{parsed.scheme}://{parsed.netloc}/browse/{key}"
        return None

    return None


@lru_cache
def get_correlation_engine() -> CorrelationEngine:
    settings = get_settings()
    return CorrelationEngine(
        get_repository(),
        similarity_search=get_similarity_search(),
        embedding_provider=get_embedding_provider(),
        semantic_threshold=settings.semantic_link_threshold,
        semantic_limit=settings.semantic_link_limit,
        related_threshold=settings.related_context_threshold,
        embedding_max_chars=settings.embedding_max_chars,
    )
