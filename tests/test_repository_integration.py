from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from opscord.services.repository import NewActivity, PostgresRepository, RepositoryConflictError

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
EMBEDDING_DIMENSIONS = 768

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("OPSCORD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require OPSCORD_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_schema(database_url))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute(
            """
            truncate table
              event_links,
              activities,
              webhooks,
              ingestion_queue,
              job_queue
            restart identity cascade
            """
        )
    finally:
        await conn.close()


def _with_repository(database_url: str, body: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    async def run() -> T:
        repository = PostgresRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            return await body(repository)
        finally:
            await repository.close()

    return _run(run())


def _vector(*head: float) -> list[float]:
    return list(head) + [0.0] * (EMBEDDING_DIMENSIONS - len(head))


def _activity(external_id: str, **fields: Any) -> NewActivity:
    defaults: dict[str, Any] = {
        "organization_id": "org-1",
        "source": "github",
        "event_type": "pull_request",
        "external_id": external_id,
        "activity_type": "pr_opened",
        "title": f"Activity {external_id}",
        "attention_score": 30,
    }
    defaults.update(fields)
    return NewActivity(**defaults)


def test_insert_activity_is_idempotent(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        first = await repository.insert_activity(_activity("123456"))
        second = await repository.insert_activity(_activity("123456", title="changed"))
        found = await repository.find_activity_id(source="github", external_id="123456")
        return first, second, found

    (first_id, first_inserted), (second_id, second_inserted), found = _with_repository(database_url, body)

    assert first_inserted is True
    assert second_inserted is False
    assert first_id == second_id == found


def test_links_are_bidirectional_and_deduplicated(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        earlier, _ = await repository.insert_activity(_activity("a", embedding=_vector(1.0, 0.0)))
        later, _ = await repository.insert_activity(_activity("b", embedding=_vector(0.85, 0.5267826876)))
        similar = await repository.find_similar_activities(
            embedding=_vector(0.85, 0.5267826876),
            organization_id="org-1",
            threshold=0.7,
            limit=5,
            exclude_id=later,
        )
        inserted = await repository.insert_event_link(
            source_event_id=later,
            target_event_id=earlier,
            link_type="semantic",
            similarity=similar[0].similarity,
        )
        duplicate = await repository.insert_event_link(
            source_event_id=later,
            target_event_id=earlier,
            link_type="semantic",
            similarity=similar[0].similarity,
        )
        return (
            earlier,
            later,
            similar,
            inserted,
            duplicate,
            await repository.list_event_links(later),
            await repository.list_event_links(earlier),
            await repository.list_event_links("not-a-uuid"),
        )

    earlier, later, similar, inserted, duplicate, outgoing, incoming, malformed = _with_repository(database_url, body)

    assert [match.id for match in similar] == [earlier]
    assert abs(similar[0].similarity - 0.85) < 1e-4
    assert inserted is True
    assert duplicate is False
    assert [(row["id"], row["relationship"]) for row in outgoing] == [(earlier, "outgoing")]
    assert [(row["id"], row["relationship"]) for row in incoming] == [(later, "incoming")]
    assert malformed == []


def test_queue_claim_is_exclusive_and_ceiling_applies(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        item = await repository.enqueue_ingestion_item(
            organization_id=None, source="github", event_type="push", payload={"after": "abc"}
        )
        first, second = await asyncio.gather(
            repository.claim_ingestion_item(item["id"], max_attempts=3),
            repository.claim_ingestion_item(item["id"], max_attempts=3),
        )
        statuses = []
        for attempt in range(3):
            if attempt:
                await repository.claim_ingestion_item(item["id"], max_attempts=3)
            failed = await repository.fail_ingestion_item(
                item["id"],
                status="failed" if attempt == 2 else "retry_pending",
                error_message="boom",
                next_attempt_at=None,
            )
            statuses.append((failed["status"], failed["attempts"]))
        claimable = await repository.list_claimable_ingestion_items(limit=10, max_attempts=3)
        return first, second, statuses, claimable

    first, second, statuses, claimable = _with_repository(database_url, body)

    assert [claim is not None for claim in (first, second)].count(True) == 1
    assert statuses == [("retry_pending", 1), ("retry_pending", 2), ("failed", 3)]
    assert claimable == []


def test_completing_unclaimed_item_conflicts(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        item = await repository.enqueue_ingestion_item(
            organization_id=None, source="github", event_type="push", payload={}
        )
        await repository.complete_ingestion_item(item["id"])

    with pytest.raises(RepositoryConflictError):
        _with_repository(database_url, body)


def test_job_claim_respects_priority_and_schedule(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        common = {"job_type": "digest", "payload": {}, "max_attempts": 3}
        await repository.create_job(job_id="job_low", priority=0, scheduled_at=None, **common)
        await repository.create_job(job_id="job_high", priority=5, scheduled_at=None, **common)
        await repository.create_job(
            job_id="job_later",
            priority=10,
            scheduled_at=datetime.now(timezone.utc) + timedelta(hours=1),
            **common,
        )
        claimed = [await repository.claim_next_job() for _ in range(3)]
        return claimed

    claimed = _with_repository(database_url, body)

    assert [job["job_id"] if job else None for job in claimed] == ["job_high", "job_low", None]
    assert claimed[0]["attempts"] == 1
    assert claimed[0]["status"] == "processing"


def test_requeue_failed_job_grants_one_more_attempt(database_url: str) -> None:
    async def body(repository: PostgresRepository):
        job = await repository.create_job(
            job_id="job_exhausted", job_type="digest", payload={}, priority=0, max_attempts=1, scheduled_at=None
        )
        claimed = await repository.claim_next_job()
        await repository.fail_job(claimed["id"], error_message="boom")
        capped = await repository.requeue_failed_jobs(attempts_ceiling=1, limit=10)
        requeued = await repository.requeue_failed_jobs(attempts_ceiling=6, limit=10)
        return capped, requeued, await repository.get_job(job["id"])

    capped, requeued, stored = _with_repository(database_url, body)

    assert capped == 0
    assert requeued == 1
    assert stored["status"] == "retrying"
    assert stored["max_attempts"] == 2
    assert stored["error_message"] is None
    assert stored["completed_at"] is None
