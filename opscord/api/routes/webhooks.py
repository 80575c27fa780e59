import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from opscord.core.config import Settings, get_settings
from opscord.core.security import verify_github_signature
from opscord.schemas.activities import IngestEventInput, WebhookAccepted
from opscord.services.ingest import get_ingestion_gateway
from opscord.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from opscord.services.retry_queue import get_retry_queue
from opscord.services.webhooks import (
    WebhookPayloadError,
    normalize_github,
    normalize_gitlab,
    normalize_jira,
    normalize_slack,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_body(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON body must be an object")
    return payload


async def _accept(event: IngestEventInput, *, durable: bool, gateway, retry_queue) -> WebhookAccepted:
    try:
        if durable:
            item = await retry_queue.enqueue(
                event.organization_id,
                event.source,
                event.event_type,
                event.model_dump(mode="json", by_alias=True),
            )
            return WebhookAccepted(queue_item_id=item["id"])
        result = await gateway.ingest(event)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return WebhookAccepted(activity_id=result.activity_id, skipped=result.skipped)


@router.post("/github", response_model=WebhookAccepted)
async def github_webhook(
    request: Request,
    organization_id: str | None = Query(default=None),
    durable: bool = Query(default=False),
    settings: Settings = Depends(get_settings),
    gateway=Depends(get_ingestion_gateway),
    retry_queue=Depends(get_retry_queue),
) -> WebhookAccepted:
    body = await request.body()
    if settings.github_webhook_secret and not verify_github_signature(
        secret=settings.github_webhook_secret,
        body=body,
        signature_header=request.headers.get("x-hub-signature-256"),
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid webhook signature")

    payload = _parse_body(body)
    event_type = request.headers.get("x-github-event") or "unknown"
    logger.info("github webhook received event=%s", event_type)
    try:
        event = normalize_github(
            event_type,
            payload,
            organization_id=organization_id,
            delivery_id=request.headers.get("x-github-delivery"),
        )
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return await _accept(event, durable=durable, gateway=gateway, retry_queue=retry_queue)


@router.post("/gitlab", response_model=WebhookAccepted)
async def gitlab_webhook(
    request: Request,
    organization_id: str | None = Query(default=None),
    durable: bool = Query(default=False),
    gateway=Depends(get_ingestion_gateway),
    retry_queue=Depends(get_retry_queue),
) -> WebhookAccepted:
    payload = _parse_body(await request.body())
    gitlab_event = request.headers.get("x-gitlab-event") or "Unknown"
    logger.info("gitlab webhook received event=%s", gitlab_event)
    try:
        event = normalize_gitlab(gitlab_event, payload, organization_id=organization_id)
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return await _accept(event, durable=durable, gateway=gateway, retry_queue=retry_queue)


@router.post("/jira", response_model=WebhookAccepted)
async def jira_webhook(
    request: Request,
    organization_id: str | None = Query(default=None),
    durable: bool = Query(default=False),
    gateway=Depends(get_ingestion_gateway),
    retry_queue=Depends(get_retry_queue),
) -> WebhookAccepted:
    payload = _parse_body(await request.body())
    try:
        event = normalize_jira(payload, organization_id=organization_id)
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    logger.info("jira webhook received event=%s key=%s", event.event_type, event.external_id)
    return await _accept(event, durable=durable, gateway=gateway, retry_queue=retry_queue)


@router.post("/slack")
async def slack_webhook(
    request: Request,
    organization_id: str | None = Query(default=None),
    durable: bool = Query(default=False),
    gateway=Depends(get_ingestion_gateway),
    retry_queue=Depends(get_retry_queue),
) -> dict[str, Any]:
    try:
        payload = _parse_body(await request.body())
    except HTTPException as exc:
        logger.warning("slack webhook body rejected detail=%s", exc.detail)
        return {"ok": True}
    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    # Slack retries anything slow or non-2xx, so failures are only logged.
    try:
        event = normalize_slack(payload, organization_id=organization_id)
        if event is not None:
            await _accept(event, durable=durable, gateway=gateway, retry_queue=retry_queue)
    except Exception:
        logger.exception("slack webhook ingestion failed team_id=%s", payload.get("team_id"))
    return {"ok": True}
