from __future__ import annotations

import asyncio
import json

import httpx

from opscord.core.config import Settings
from opscord.services.job_client import JobClient
from opscord.worker import run_cycle


def _client(responses: dict[str, dict], seen: list[httpx.Request]) -> JobClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=responses[request.url.path])

    return JobClient("http://api.test/", "s3cret", transport=httpx.MockTransport(handler))


def test_run_cycle_drains_queue_and_processes_jobs() -> None:
    seen: list[httpx.Request] = []
    client = _client(
        {
            "/queue/drain": {"claimed": 2, "completed": 2, "retried": 0, "failed": 0, "skipped": 0},
            "/jobs/process": {"processed": 3, "succeeded": 3, "failed": 0, "jobs": []},
        },
        seen,
    )
    settings = Settings(worker_queue_batch_size=7, worker_job_batch_size=9, otel_enabled=False)

    work = asyncio.run(run_cycle(client, settings, reap=False))

    assert work == 5
    assert [request.url.path for request in seen] == ["/queue/drain", "/jobs/process"]
    assert all(request.headers["X-Job-Secret"] == "s3cret" for request in seen)
    assert seen[0].url.params["batch_size"] == "7"
    assert json.loads(seen[1].content) == {"mode": "batch", "max_jobs": 9}


def test_run_cycle_reaps_when_due() -> None:
    seen: list[httpx.Request] = []
    client = _client(
        {
            "/queue/reclaim-stale": {"reclaimed": 1},
            "/jobs/reclaim-stale": {"affected": 2},
            "/queue/drain": {"claimed": 0, "completed": 0, "retried": 0, "failed": 0, "skipped": 0},
            "/jobs/process": {"processed": 0, "succeeded": 0, "failed": 0, "jobs": []},
        },
        seen,
    )

    work = asyncio.run(run_cycle(client, Settings(otel_enabled=False), reap=True))

    assert work == 0
    assert [request.url.path for request in seen] == [
        "/queue/reclaim-stale",
        "/jobs/reclaim-stale",
        "/queue/drain",
        "/jobs/process",
    ]


def test_job_client_raises_on_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "invalid job secret"})

    client = JobClient("http://api.test", "wrong", transport=httpx.MockTransport(handler))

    try:
        asyncio.run(client.drain_queue())
    except httpx.HTTPStatusError as exc:
        assert exc.response.status_code == 401
    else:
        raise AssertionError("expected HTTPStatusError")
