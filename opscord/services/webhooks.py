"""Provider payload normalizers producing ``IngestEventInput``.

Each normalizer derives ``external_id`` from a provider identifier that stays
the same across redeliveries. When no such identifier exists the caller may
pass ``fallback_external_id``; otherwise ``WebhookPayloadError`` is raised
rather than inventing one.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from opscord.schemas.activities import IngestEventInput


class WebhookPayloadError(ValueError):
    """Raised when a provider payload cannot be normalized."""


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _require_id(*candidates: Any, fallback: str | None, provider: str) -> str:
    for candidate in candidates:
        text = _as_text(candidate)
        if text:
            return text
    if fallback:
        return fallback
    raise WebhookPayloadError(f"{provider} payload has no stable identifier")


def normalize_github(
    event_type: str,
    payload: dict[str, Any],
    *,
    organization_id: str | None = None,
    delivery_id: str | None = None,
    fallback_external_id: str | None = None,
) -> IngestEventInput:
    repository = _as_dict(payload.get("repository"))
    repo_name = _as_text(repository.get("full_name")) or "unknown/repo"
    sender = _as_dict(payload.get("sender"))
    action = _as_text(payload.get("action"))
    fallback = delivery_id or fallback_external_id

    pr_number: int | None = None
    issue_number: int | None = None
    description: str | None = None

    if event_type == "push":
        head_commit = _as_dict(payload.get("head_commit"))
        ref = _as_text(payload.get("ref")) or ""
        activity_type = "push"
        title = f"Pushed to {ref.removeprefix('refs/heads/')}"
        description = _as_text(head_commit.get("message"))
        external_id = _require_id(head_commit.get("id"), payload.get("after"), fallback=fallback, provider="github")
    elif event_type == "pull_request":
        pull_request = _as_dict(payload.get("pull_request"))
        activity_type = f"pr_{action or 'unknown'}"
        title = _as_text(pull_request.get("title")) or "Untitled pull request"
        description = _as_text(pull_request.get("body"))
        pr_number = _as_int(pull_request.get("number"))
        external_id = _require_id(pull_request.get("id"), fallback=fallback, provider="github")
    elif event_type == "issues":
        issue = _as_dict(payload.get("issue"))
        activity_type = f"issue_{action or 'unknown'}"
        title = _as_text(issue.get("title")) or "Untitled issue"
        description = _as_text(issue.get("body"))
        issue_number = _as_int(issue.get("number"))
        external_id = _require_id(issue.get("id"), fallback=fallback, provider="github")
    else:
        activity_type = f"github_{event_type or 'unknown'}"
        title = f"GitHub Event: {event_type or 'unknown'}"
        external_id = _require_id(fallback=fallback, provider="github")

    return IngestEventInput(
        organization_id=organization_id,
        source="github",
        event_type=event_type or "unknown",
        external_id=external_id,
        activity_type=activity_type,
        title=title,
        description=description,
        repo_name=repo_name,
        pr_number=pr_number,
        issue_number=issue_number,
        user_id=_as_text(sender.get("login")),
        metadata=payload,
    )


def normalize_gitlab(
    event_type: str,
    payload: dict[str, Any],
    *,
    organization_id: str | None = None,
    fallback_external_id: str | None = None,
) -> IngestEventInput:
    attributes = _as_dict(payload.get("object_attributes"))
    project = _as_dict(payload.get("project"))
    user = _as_dict(payload.get("user"))
    gitlab_event = event_type or "Unknown"

    pr_number: int | None = None
    issue_number: int | None = None

    if gitlab_event == "Issue Hook":
        action = _as_text(attributes.get("action"))
        created = action == "open"
        activity_type = "issue_created" if created else "issue_updated"
        title = f"{'Created' if created else 'Updated'} GitLab issue: {attributes.get('title') or ''}".rstrip()
        description = _as_text(attributes.get("description"))
        issue_number = _as_int(attributes.get("iid"))
        external_id = _require_id(attributes.get("id"), fallback=fallback_external_id, provider="gitlab")
        if action and not created:
            external_id = f"{external_id}:{action}:{attributes.get('updated_at') or ''}".rstrip(":")
    elif gitlab_event == "Merge Request Hook":
        action = _as_text(attributes.get("action"))
        activity_type = f"mr_{action}" if action else "merge_request"
        title = f"Merge Request: {attributes.get('title') or ''}".rstrip()
        description = _as_text(attributes.get("description"))
        pr_number = _as_int(attributes.get("iid"))
        external_id = _require_id(attributes.get("id"), fallback=fallback_external_id, provider="gitlab")
        if action and action != "open":
            external_id = f"{external_id}:{action}"
    elif gitlab_event == "Push Hook":
        commits = payload.get("commits")
        activity_type = "push"
        title = f"Push to {payload.get('ref') or ''}".rstrip()
        description = f"{len(commits) if isinstance(commits, list) else 0} commits pushed"
        external_id = _require_id(payload.get("after"), fallback=fallback_external_id, provider="gitlab")
    else:
        activity_type = "gitlab_unknown"
        title = "GitLab Event"
        description = None
        external_id = _require_id(fallback=fallback_external_id, provider="gitlab")

    return IngestEventInput(
        organization_id=organization_id,
        source="gitlab",
        event_type=f"gitlab:{gitlab_event.lower().replace(' ', '_')}",
        external_id=external_id,
        activity_type=activity_type,
        title=title,
        description=description,
        repo_name=_as_text(project.get("path_with_namespace")),
        pr_number=pr_number,
        issue_number=issue_number,
        user_id=_as_text(user.get("username")),
        metadata=payload,
    )


def normalize_jira(
    payload: dict[str, Any],
    *,
    organization_id: str | None = None,
    fallback_external_id: str | None = None,
) -> IngestEventInput:
    issue = _as_dict(payload.get("issue"))
    fields = issue.get("fields")
    key = _as_text(issue.get("key"))
    if not key or not isinstance(fields, dict):
        raise WebhookPayloadError("Invalid Jira payload")

    event_type = _as_text(payload.get("webhookEvent")) or (
        "jira:issue_updated" if payload.get("changelog") else "jira:issue_created"
    )
    summary = _as_text(fields.get("summary")) or ""
    project = _as_dict(fields.get("project"))
    priority = _as_dict(fields.get("priority"))
    status = _as_dict(fields.get("status"))
    user = _as_dict(payload.get("user"))

    external_id = key
    description: str | None = _as_text(fields.get("description"))
    if event_type == "jira:issue_created":
        activity_type = "issue_created"
        title = f"Created Jira issue {key}: {summary}".rstrip(": ")
    elif event_type == "jira:issue_updated":
        activity_type = "issue_updated"
        title = f"Updated Jira issue {key}: {summary}".rstrip(": ")
        description = description or "Issue updated"
        # Updates share the issue key; the delivery timestamp keeps them distinct.
        timestamp = _as_text(payload.get("timestamp"))
        external_id = f"{key}:updated:{timestamp}" if timestamp else f"{key}:updated"
    else:
        activity_type = "jira_unknown"
        title = f"Jira Event {key}"
        timestamp = _as_text(payload.get("timestamp"))
        external_id = f"{key}:{event_type}:{timestamp}" if timestamp else (fallback_external_id or f"{key}:{event_type}")

    metadata = dict(payload)
    if _as_text(priority.get("name")):
        metadata["priority"] = priority["name"]
    if _as_text(status.get("name")) and str(status["name"]).lower() in {"closed", "done", "resolved"}:
        metadata["status"] = "closed"

    return IngestEventInput(
        organization_id=organization_id,
        source="jira",
        event_type=event_type,
        external_id=external_id,
        activity_type=activity_type,
        title=title,
        description=description,
        repo_name=_as_text(project.get("key")) or "JIRA",
        issue_number=_as_int(key.rsplit("-", 1)[-1]),
        user_id=_as_text(user.get("accountId")) or _as_text(user.get("name")),
        metadata=metadata,
    )


def normalize_slack(
    payload: dict[str, Any],
    *,
    organization_id: str | None = None,
    fallback_external_id: str | None = None,
) -> IngestEventInput | None:
    """Returns ``None`` for Slack events that are not plain user messages."""
    event = payload.get("event")
    if not isinstance(event, dict):
        return None
    if event.get("type") != "message" or event.get("subtype") or not _as_text(event.get("text")):
        return None

    team_id = _as_text(payload.get("team_id"))
    ts = _as_text(event.get("ts"))
    if team_id and ts:
        external_id = f"{team_id}:{ts}"
    elif fallback_external_id:
        external_id = fallback_external_id
    else:
        raise WebhookPayloadError("slack payload has no stable identifier")

    return IngestEventInput(
        organization_id=organization_id,
        source="slack",
        event_type="slack:message",
        external_id=external_id,
        activity_type="message",
        title="Slack message",
        description=_as_text(event.get("text")),
        repo_name=_as_text(event.get("channel")),
        user_id=_as_text(event.get("user")),
        metadata={
            "teamId": team_id,
            "channel": event.get("channel"),
            "user": event.get("user"),
            "ts": ts,
        },
    )


def _normalize_canonical(
    source: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    organization_id: str | None,
    fallback_external_id: str | None,
) -> IngestEventInput:
    data = dict(payload)
    data["source"] = source
    data.setdefault("eventType", data.pop("event_type", None) or event_type)
    if organization_id and not (data.get("organizationId") or data.get("organization_id")):
        data["organizationId"] = organization_id
    if not (_as_text(data.get("externalId")) or _as_text(data.get("external_id"))):
        if not fallback_external_id:
            raise WebhookPayloadError(f"{source} payload has no stable identifier")
        data["externalId"] = fallback_external_id
    try:
        return IngestEventInput.model_validate(data)
    except ValidationError as exc:
        raise WebhookPayloadError(f"invalid {source} payload: {exc.error_count()} validation errors") from exc


def _is_canonical(payload: dict[str, Any]) -> bool:
    return "title" in payload and ("activityType" in payload or "activity_type" in payload)


def normalize_event(
    source: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    organization_id: str | None = None,
    fallback_external_id: str | None = None,
) -> IngestEventInput | None:
    """Rebuild an ingest input from a stored provider payload.

    Already-normalized payloads are validated directly; anything else goes
    through the provider's normalizer.
    """
    if _is_canonical(payload):
        return _normalize_canonical(
            source,
            event_type,
            payload,
            organization_id=organization_id,
            fallback_external_id=fallback_external_id,
        )
    if source == "github":
        return normalize_github(
            event_type,
            payload,
            organization_id=organization_id,
            fallback_external_id=fallback_external_id,
        )
    if source == "gitlab":
        return normalize_gitlab(
            event_type,
            payload,
            organization_id=organization_id,
            fallback_external_id=fallback_external_id,
        )
    if source == "jira":
        return normalize_jira(payload, organization_id=organization_id, fallback_external_id=fallback_external_id)
    if source == "slack":
        return normalize_slack(payload, organization_id=organization_id, fallback_external_id=fallback_external_id)
    return _normalize_canonical(
        source,
        event_type,
        payload,
        organization_id=organization_id,
        fallback_external_id=fallback_external_id,
    )
