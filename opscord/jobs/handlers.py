from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from opscord.schemas.activities import IngestEventInput

logger = logging.getLogger(__name__)

PERIOD_LENGTHS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


@dataclass(slots=True)
class JobResult:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


JobHandler = Callable[[dict[str, Any]], Awaitable[JobResult]]


def _payload(job: dict[str, Any]) -> dict[str, Any]:
    raw = job.get("payload")
    return raw if isinstance(raw, dict) else {}


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _bounded_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def execute_digest(job: dict[str, Any], *, repository: Any) -> JobResult:
    payload = _payload(job)
    organization_id = _as_text(payload.get("organization_id"))
    if not organization_id:
        return JobResult(success=False, error="organization_id is required for digest jobs")

    window_hours = _bounded_int(payload.get("window_hours"), default=24, minimum=1, maximum=24 * 31)
    limit = _bounded_int(payload.get("limit"), default=10, minimum=1, maximum=100)
    min_score = _bounded_int(payload.get("min_score"), default=0, minimum=0, maximum=100)
    since = datetime.now(timezone.utc) - timedelta(hours=window_hours)

    rows = await repository.list_top_activities(
        organization_id=organization_id,
        since=since,
        limit=limit,
        min_score=min_score,
    )
    items = [
        {
            "id": row["id"],
            "title": row["title"],
            "source": row["source"],
            "activity_type": row["activity_type"],
            "repo_name": row.get("repo_name"),
            "attention_score": row["attention_score"],
        }
        for row in rows
    ]
    logger.info("digest generated organization_id=%s items=%s", organization_id, len(items))
    return JobResult(
        success=True,
        data={
            "organization_id": organization_id,
            "window_hours": window_hours,
            "count": len(items),
            "items": items,
            "generated_at": _now_iso(),
        },
    )


async def execute_analytics_rollup(job: dict[str, Any], *, repository: Any) -> JobResult:
    payload = _payload(job)
    period_type = _as_text(payload.get("period_type")) or "daily"
    if period_type not in PERIOD_LENGTHS:
        return JobResult(success=False, error=f"unsupported period_type: {period_type}")

    period_end = _parse_datetime(payload.get("period_end")) or datetime.now(timezone.utc)
    period_start = _parse_datetime(payload.get("period_start")) or period_end - PERIOD_LENGTHS[period_type]
    if period_start >= period_end:
        return JobResult(success=False, error="period_start must be before period_end")

    repo_name = _as_text(payload.get("repo_name"))
    rows = await repository.count_activities(
        organization_id=_as_text(payload.get("organization_id")),
        since=period_start,
        until=period_end,
        repo_name=repo_name,
    )

    by_source: dict[str, int] = {}
    by_activity_type: dict[str, int] = {}
    weighted_score = 0.0
    total = 0
    for row in rows:
        count = int(row["count"])
        by_source[row["source"]] = by_source.get(row["source"], 0) + count
        by_activity_type[row["activity_type"]] = by_activity_type.get(row["activity_type"], 0) + count
        weighted_score += float(row["avg_score"] or 0) * count
        total += count

    return JobResult(
        success=True,
        data={
            "rollup_completed": True,
            "repo_name": repo_name,
            "period_type": period_type,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "total": total,
            "by_source": by_source,
            "by_activity_type": by_activity_type,
            "avg_attention_score": round(weighted_score / total, 2) if total else None,
            "processed_at": _now_iso(),
        },
    )


async def execute_notification(
    job: dict[str, Any],
    *,
    timeout_seconds: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> JobResult:
    payload = _payload(job)
    webhook_url = _as_text(payload.get("webhook_url"))
    message = _as_text(payload.get("message"))
    logger.info(
        "processing notification type=%s channel_id=%s",
        payload.get("type"),
        payload.get("channel_id"),
    )

    if not webhook_url or not message:
        return JobResult(success=True, data={"notification_sent": False, "reason": "missing_webhook_or_message"})

    try:
        if client is not None:
            response = await client.post(webhook_url, json={"content": message})
        else:
            async with httpx.AsyncClient(timeout=timeout_seconds) as temp_client:
                response = await temp_client.post(webhook_url, json={"content": message})
    except httpx.HTTPError as exc:
        return JobResult(success=False, error=f"Notification error: {exc}")

    if response.is_error:
        return JobResult(success=False, error=f"Failed to send notification: {response.status_code} {response.reason_phrase}")

    return JobResult(success=True, data={"notification_sent": True, "sent_at": _now_iso()})


async def execute_sync_backfill(job: dict[str, Any], *, gateway: Any) -> JobResult:
    """Replay already-normalized events through the gateway.

    Duplicates are reported as skipped, so a retried job is safe. Persistence
    errors propagate and fail the attempt.
    """
    payload = _payload(job)
    events = payload.get("events")
    if not isinstance(events, list):
        return JobResult(success=False, error="events must be a list")

    organization_id = _as_text(payload.get("organization_id"))
    ingested = 0
    skipped = 0
    invalid: list[dict[str, Any]] = []
    for index, raw_event in enumerate(events):
        if not isinstance(raw_event, dict):
            invalid.append({"index": index, "error": "event must be an object"})
            continue
        data = dict(raw_event)
        if organization_id and not (data.get("organizationId") or data.get("organization_id")):
            data["organization_id"] = organization_id
        try:
            event = IngestEventInput.model_validate(data)
        except ValidationError as exc:
            invalid.append({"index": index, "error": f"{exc.error_count()} validation errors"})
            continue
        result = await gateway.ingest(event)
        if result.skipped:
            skipped += 1
        else:
            ingested += 1

    logger.info("sync backfill finished ingested=%s skipped=%s invalid=%s", ingested, skipped, len(invalid))
    return JobResult(
        success=True,
        data={
            "ingested": ingested,
            "skipped": skipped,
            "invalid": invalid,
            "processed_at": _now_iso(),
        },
    )


def build_job_handlers(
    *,
    repository: Any,
    gateway: Any,
    notification_timeout_seconds: float = 10.0,
    http_client: httpx.AsyncClient | None = None,
) -> Mapping[str, JobHandler]:
    async def digest(job: dict[str, Any]) -> JobResult:
        return await execute_digest(job, repository=repository)

    async def analytics_rollup(job: dict[str, Any]) -> JobResult:
        return await execute_analytics_rollup(job, repository=repository)

    async def notification(job: dict[str, Any]) -> JobResult:
        return await execute_notification(job, timeout_seconds=notification_timeout_seconds, client=http_client)

    async def sync_backfill(job: dict[str, Any]) -> JobResult:
        return await execute_sync_backfill(job, gateway=gateway)

    return {
        "digest": digest,
        "analytics_rollup": analytics_rollup,
        "notification": notification,
        "sync_backfill": sync_backfill,
    }
