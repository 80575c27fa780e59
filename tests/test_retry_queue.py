from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from opscord.schemas.activities import IngestEventInput
from opscord.services.embeddings import NullEmbeddingProvider
from opscord.services.ingest import IngestionGateway, IngestResult
from opscord.services.retry_queue import RetryQueue
from opscord.services.store import InMemoryRepository
from opscord.services.tasks import BackgroundTaskRunner

CANONICAL_PAYLOAD = {
    "source": "github",
    "eventType": "pull_request",
    "externalId": "pr-55",
    "activityType": "pr_opened",
    "title": "Fix flaky deploy",
}


class FlakyGateway:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.events: list[IngestEventInput] = []

    async def ingest(self, event: IngestEventInput) -> IngestResult:
        self.events.append(event)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("database connection reset")
        return IngestResult(activity_id=f"act-{len(self.events)}", skipped=False)


class StaleListingRepository(InMemoryRepository):
    """Lists items even after another worker claimed them."""

    async def list_claimable_ingestion_items(self, *, limit: int, max_attempts: int) -> list[dict[str, Any]]:
        return [dict(item) for item in self.queue_items.values()][:limit]


def _queue(repository: InMemoryRepository, gateway: Any, **kwargs: Any) -> RetryQueue:
    kwargs.setdefault("retry_base_seconds", 0)
    return RetryQueue(repository, gateway, **kwargs)


def test_successful_item_is_completed() -> None:
    repository = InMemoryRepository()
    gateway = FlakyGateway()
    queue = _queue(repository, gateway)

    async def run():
        item = await queue.enqueue("org-1", "github", "pull_request", CANONICAL_PAYLOAD)
        summary = await queue.drain(batch_size=10)
        return item, summary

    item, summary = asyncio.run(run())

    stored = repository.queue_items[item["id"]]
    assert stored["status"] == "completed"
    assert stored["attempts"] == 0
    assert stored["processed_at"] is not None
    assert summary.claimed == 1
    assert summary.completed == 1
    assert gateway.events[0].organization_id == "org-1"
    assert gateway.events[0].external_id == "pr-55"


def test_failing_item_stops_after_three_attempts() -> None:
    repository = InMemoryRepository()
    gateway = FlakyGateway(failures=10)
    queue = _queue(repository, gateway)

    async def run():
        item = await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        states = []
        for _ in range(4):
            await queue.drain()
            stored = repository.queue_items[item["id"]]
            states.append((stored["status"], stored["attempts"]))
        return states

    states = asyncio.run(run())

    assert states == [
        ("retry_pending", 1),
        ("retry_pending", 2),
        ("failed", 3),
        ("failed", 3),
    ]
    assert len(gateway.events) == 3


def test_failure_records_error_message() -> None:
    repository = InMemoryRepository()
    queue = _queue(repository, FlakyGateway(failures=1))

    async def run():
        item = await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        summary = await queue.drain()
        return item, summary

    item, summary = asyncio.run(run())

    assert summary.retried == 1
    assert repository.queue_items[item["id"]]["error_message"] == "database connection reset"


def test_item_recovers_on_later_attempt() -> None:
    repository = InMemoryRepository()
    queue = _queue(repository, FlakyGateway(failures=2))

    async def run():
        item = await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        for _ in range(3):
            await queue.drain()
        return repository.queue_items[item["id"]]

    stored = asyncio.run(run())

    assert stored["status"] == "completed"
    assert stored["attempts"] == 2


def test_backoff_defers_next_attempt() -> None:
    repository = InMemoryRepository()
    gateway = FlakyGateway(failures=5)
    queue = _queue(repository, gateway, retry_base_seconds=30)

    async def run():
        item = await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        await queue.drain()
        second = await queue.drain()
        return item, second

    item, second = asyncio.run(run())

    stored = repository.queue_items[item["id"]]
    assert stored["status"] == "retry_pending"
    assert stored["next_attempt_at"] > datetime.now(timezone.utc) + timedelta(seconds=20)
    assert second.claimed == 0
    assert len(gateway.events) == 1


def test_retry_delay_doubles_up_to_cap() -> None:
    queue = RetryQueue(InMemoryRepository(), FlakyGateway(), retry_base_seconds=30, retry_max_seconds=600)

    delays = [queue._compute_retry_delay_seconds(attempt=attempt) for attempt in range(1, 7)]

    assert delays == [30, 60, 120, 240, 480, 600]


def test_concurrent_claims_only_one_wins() -> None:
    repository = InMemoryRepository()

    async def run():
        item = await repository.enqueue_ingestion_item(
            organization_id=None, source="github", event_type="push", payload={}
        )
        return await asyncio.gather(
            repository.claim_ingestion_item(item["id"], max_attempts=3),
            repository.claim_ingestion_item(item["id"], max_attempts=3),
        )

    first, second = asyncio.run(run())

    assert [claim is not None for claim in (first, second)].count(True) == 1


def test_lost_claim_is_counted_as_skipped() -> None:
    repository = StaleListingRepository()
    gateway = FlakyGateway()
    queue = _queue(repository, gateway)

    async def run():
        item = await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        await repository.claim_ingestion_item(item["id"], max_attempts=3)
        return await queue.drain()

    summary = asyncio.run(run())

    assert summary.claimed == 0
    assert summary.skipped == 1
    assert gateway.events == []


def test_drain_on_empty_queue_is_a_noop() -> None:
    summary = asyncio.run(_queue(InMemoryRepository(), FlakyGateway()).drain())

    assert (summary.claimed, summary.completed, summary.failed, summary.skipped) == (0, 0, 0, 0)


def test_drain_respects_batch_size_in_fifo_order() -> None:
    repository = InMemoryRepository()
    gateway = FlakyGateway()
    queue = _queue(repository, gateway)

    async def run():
        for index in range(5):
            await queue.enqueue(None, "github", "pull_request", {**CANONICAL_PAYLOAD, "externalId": f"pr-{index}"})
        return await queue.drain(batch_size=2)

    summary = asyncio.run(run())

    assert summary.claimed == 2
    assert [event.external_id for event in gateway.events] == ["pr-0", "pr-1"]


def test_reclaim_stale_processing_items() -> None:
    repository = InMemoryRepository()
    queue = _queue(repository, FlakyGateway(), processing_timeout_seconds=300)

    async def run():
        stale = await queue.enqueue(None, "github", "push", {})
        fresh = await queue.enqueue(None, "github", "push", {})
        await repository.claim_ingestion_item(stale["id"], max_attempts=3)
        await repository.claim_ingestion_item(fresh["id"], max_attempts=3)
        repository.queue_items[stale["id"]]["claimed_at"] = datetime.now(timezone.utc) - timedelta(minutes=10)
        reclaimed = await queue.reclaim_stale()
        return stale, fresh, reclaimed

    stale, fresh, reclaimed = asyncio.run(run())

    assert reclaimed == 1
    assert repository.queue_items[stale["id"]]["status"] == "retry_pending"
    assert repository.queue_items[stale["id"]]["attempts"] == 1
    assert repository.queue_items[stale["id"]]["error_message"] == "processing timeout"
    assert repository.queue_items[fresh["id"]]["status"] == "processing"


def test_raw_provider_payload_uses_queue_fallback_identifier() -> None:
    repository = InMemoryRepository()
    gateway = IngestionGateway(
        repository,
        embedding_provider=NullEmbeddingProvider(),
        correlation=None,
        task_runner=BackgroundTaskRunner(),
    )
    queue = _queue(repository, gateway)

    async def run():
        item = await queue.enqueue(None, "github", "ping", {"zen": "Keep it logically awesome."})
        await queue.drain()
        return item

    item = asyncio.run(run())

    assert repository.queue_items[item["id"]]["status"] == "completed"
    (activity,) = repository.activities.values()
    assert activity["external_id"] == f"queue-{item['id']}"
    assert activity["activity_type"] == "github_ping"


def test_slack_payload_without_message_completes_without_ingest() -> None:
    repository = InMemoryRepository()
    gateway = FlakyGateway()
    queue = _queue(repository, gateway)

    async def run():
        item = await queue.enqueue(None, "slack", "event_callback", {"event": {"type": "reaction_added"}})
        await queue.drain()
        return item

    item = asyncio.run(run())

    assert repository.queue_items[item["id"]]["status"] == "completed"
    assert gateway.events == []


def test_invalid_payload_counts_as_failed_attempt() -> None:
    repository = InMemoryRepository()
    queue = _queue(repository, FlakyGateway())

    async def run():
        item = await queue.enqueue(None, "jira", "jira:issue_created", {"issue": {}})
        await queue.drain()
        return item

    item = asyncio.run(run())

    stored = repository.queue_items[item["id"]]
    assert stored["status"] == "retry_pending"
    assert stored["error_message"] == "Invalid Jira payload"


def test_stats_and_recent_failures() -> None:
    repository = InMemoryRepository()
    queue = _queue(repository, FlakyGateway(failures=3), max_attempts=1)

    async def run():
        await queue.enqueue(None, "github", "pull_request", CANONICAL_PAYLOAD)
        await queue.enqueue(None, "github", "pull_request", {**CANONICAL_PAYLOAD, "externalId": "pr-56"})
        await queue.drain(batch_size=1)
        return await queue.stats(), await queue.recent_failures(limit=5)

    stats, failures = asyncio.run(run())

    assert stats["failed"] == 1
    assert stats["pending"] == 1
    assert stats["completed"] == 0
    assert len(failures) == 1
    assert failures[0]["attempts"] == 1
