from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from opscord.jobs.handlers import (
    build_job_handlers,
    execute_analytics_rollup,
    execute_digest,
    execute_notification,
    execute_sync_backfill,
)
from opscord.services.embeddings import NullEmbeddingProvider
from opscord.services.ingest import IngestionGateway
from opscord.services.repository import NewActivity
from opscord.services.store import InMemoryRepository
from opscord.services.tasks import BackgroundTaskRunner


def _job(job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"id": "1", "job_id": "job_test_000000000", "job_type": job_type, "payload": payload}


def _seed(repository: InMemoryRepository, external_id: str, *, score: int, **fields: Any) -> str:
    activity = NewActivity(
        organization_id=fields.get("organization_id", "org-1"),
        source=fields.get("source", "github"),
        event_type="pull_request",
        external_id=external_id,
        activity_type=fields.get("activity_type", "pr_opened"),
        title=f"Activity {external_id}",
        description=None,
        repo_name=fields.get("repo_name", "acme/web"),
        pr_number=None,
        issue_number=None,
        user_id=None,
        metadata={},
        embedding=None,
        attention_score=score,
    )
    activity_id, _ = asyncio.run(repository.insert_activity(activity))
    return activity_id


def _gateway(repository: InMemoryRepository) -> IngestionGateway:
    return IngestionGateway(
        repository,
        embedding_provider=NullEmbeddingProvider(),
        correlation=None,
        task_runner=BackgroundTaskRunner(),
    )


def test_digest_ranks_by_attention_score() -> None:
    repository = InMemoryRepository()
    _seed(repository, "low", score=10)
    high = _seed(repository, "high", score=90)
    _seed(repository, "other-tenant", score=100, organization_id="org-2")

    result = asyncio.run(execute_digest(_job("digest", {"organization_id": "org-1", "limit": 1}), repository=repository))

    assert result.success is True
    assert result.data["count"] == 1
    assert result.data["items"][0]["id"] == high
    assert result.data["window_hours"] == 24


def test_digest_requires_organization() -> None:
    result = asyncio.run(execute_digest(_job("digest", {}), repository=InMemoryRepository()))

    assert result.success is False
    assert result.error == "organization_id is required for digest jobs"


def test_analytics_rollup_groups_counts() -> None:
    repository = InMemoryRepository()
    _seed(repository, "a", score=20)
    _seed(repository, "b", score=40)
    _seed(repository, "c", score=60, source="jira", activity_type="issue_created")

    result = asyncio.run(
        execute_analytics_rollup(
            _job("analytics_rollup", {"organization_id": "org-1", "period_type": "hourly"}),
            repository=repository,
        )
    )

    assert result.success is True
    assert result.data["total"] == 3
    assert result.data["by_source"] == {"github": 2, "jira": 1}
    assert result.data["by_activity_type"] == {"pr_opened": 2, "issue_created": 1}
    assert result.data["avg_attention_score"] == 40.0


def test_analytics_rollup_rejects_bad_period() -> None:
    repository = InMemoryRepository()
    unsupported = asyncio.run(
        execute_analytics_rollup(_job("analytics_rollup", {"period_type": "yearly"}), repository=repository)
    )
    now = datetime.now(timezone.utc)
    inverted = asyncio.run(
        execute_analytics_rollup(
            _job(
                "analytics_rollup",
                {"period_start": now.isoformat(), "period_end": (now - timedelta(hours=1)).isoformat()},
            ),
            repository=repository,
        )
    )

    assert unsupported.error == "unsupported period_type: yearly"
    assert inverted.error == "period_start must be before period_end"


def test_analytics_rollup_on_empty_window() -> None:
    result = asyncio.run(execute_analytics_rollup(_job("analytics_rollup", {}), repository=InMemoryRepository()))

    assert result.success is True
    assert result.data["total"] == 0
    assert result.data["avg_attention_score"] is None


def test_notification_posts_message() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await execute_notification(
                _job("notification", {"webhook_url": "https://hooks.example.com/x", "message": "Deploy failed"}),
                client=client,
            )

    result = asyncio.run(run())

    assert result.success is True
    assert result.data["notification_sent"] is True
    assert json.loads(requests[0].content) == {"content": "Deploy failed"}


def test_notification_without_target_is_a_successful_noop() -> None:
    result = asyncio.run(execute_notification(_job("notification", {"message": "hi"})))

    assert result.success is True
    assert result.data["notification_sent"] is False


def test_notification_error_status_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await execute_notification(
                _job("notification", {"webhook_url": "https://hooks.example.com/x", "message": "hi"}),
                client=client,
            )

    result = asyncio.run(run())

    assert result.success is False
    assert result.error == "Failed to send notification: 500 Internal Server Error"


def test_notification_transport_error_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await execute_notification(
                _job("notification", {"webhook_url": "https://hooks.example.com/x", "message": "hi"}),
                client=client,
            )

    result = asyncio.run(run())

    assert result.success is False
    assert result.error.startswith("Notification error:")


def test_sync_backfill_reports_ingested_skipped_and_invalid() -> None:
    repository = InMemoryRepository()
    event = {
        "source": "jira",
        "eventType": "jira:issue_created",
        "externalId": "OPS-1",
        "activityType": "issue_created",
        "title": "Checkout down",
    }
    payload = {"organization_id": "org-1", "events": [event, event, {"source": "teams"}, "nope"]}

    result = asyncio.run(execute_sync_backfill(_job("sync_backfill", payload), gateway=_gateway(repository)))

    assert result.success is True
    assert result.data["ingested"] == 1
    assert result.data["skipped"] == 1
    assert [entry["index"] for entry in result.data["invalid"]] == [2, 3]
    (activity,) = repository.activities.values()
    assert activity["organization_id"] == "org-1"


def test_sync_backfill_requires_event_list() -> None:
    result = asyncio.run(execute_sync_backfill(_job("sync_backfill", {}), gateway=None))

    assert result.success is False
    assert result.error == "events must be a list"


def test_build_job_handlers_covers_every_job_type() -> None:
    repository = InMemoryRepository()
    handlers = build_job_handlers(repository=repository, gateway=_gateway(repository))

    assert set(handlers) == {"digest", "analytics_rollup", "notification", "sync_backfill"}
    result = asyncio.run(handlers["digest"](_job("digest", {"organization_id": "org-1"})))
    assert result.success is True
    assert result.data["count"] == 0
