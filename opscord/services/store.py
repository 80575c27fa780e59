import copy
import math
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from opscord.services.repository import (
    CLAIMABLE_JOB_STATUSES,
    CLAIMABLE_QUEUE_STATUSES,
    LINK_TYPES,
    QUEUE_STATUSES,
    NewActivity,
    RepositoryConflictError,
    RepositoryValidationError,
    SimilarActivity,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


class InMemoryRepository:
    """Process-local store with the same async surface as ``PostgresRepository``.

    Used for local runs without a DSN and by the test suite. Every method body
    runs without awaiting, so each call is atomic with respect to other
    coroutines on the same event loop; that is what makes the conditional
    claims below equivalent to the single-statement updates in Postgres.
    """

    def __init__(self) -> None:
        self.raw_events: list[dict[str, Any]] = []
        self.activities: dict[str, dict[str, Any]] = {}
        self.activity_keys: dict[tuple[str, str], str] = {}
        self.event_links: list[dict[str, Any]] = []
        self.queue_items: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}

    async def close(self) -> None:
        return None

    # activities

    async def record_raw_event(self, *, source: str, event_type: str, payload: dict[str, Any]) -> None:
        self.raw_events.append(
            {
                "id": len(self.raw_events) + 1,
                "source": source,
                "event_type": event_type,
                "payload": copy.deepcopy(payload),
                "created_at": _utcnow(),
            }
        )

    async def find_activity_id(self, *, source: str, external_id: str) -> str | None:
        return self.activity_keys.get((source, external_id))

    async def insert_activity(self, activity: NewActivity) -> tuple[str, bool]:
        if not activity.external_id:
            raise RepositoryValidationError("external_id must be non-empty")
        if not 0 <= activity.attention_score <= 100:
            raise RepositoryValidationError("attention_score must be between 0 and 100")

        key = (activity.source, activity.external_id)
        existing = self.activity_keys.get(key)
        if existing:
            return existing, False

        activity_id = str(uuid4())
        self.activities[activity_id] = {
            "id": activity_id,
            "organization_id": activity.organization_id,
            "source": activity.source,
            "event_type": activity.event_type,
            "external_id": activity.external_id,
            "activity_type": activity.activity_type,
            "title": activity.title,
            "description": activity.description,
            "repo_name": activity.repo_name,
            "pr_number": activity.pr_number,
            "issue_number": activity.issue_number,
            "user_id": activity.user_id,
            "metadata": copy.deepcopy(activity.metadata),
            "embedding": list(activity.embedding) if activity.embedding else None,
            "attention_score": activity.attention_score,
            "created_at": _utcnow(),
        }
        self.activity_keys[key] = activity_id
        return activity_id, True

    async def get_activity(self, activity_id: str) -> dict[str, Any] | None:
        activity = self.activities.get(activity_id)
        if activity is None:
            return None
        return {k: v for k, v in activity.items() if k != "embedding"}

    async def find_activity_ids_by_ticket_key(self, *, organization_id: str, key: str) -> list[str]:
        matches = []
        for activity in self._ordered_activities():
            if activity["organization_id"] != organization_id or activity["source"] != "jira":
                continue
            metadata = activity["metadata"]
            issue = metadata.get("issue") if isinstance(metadata.get("issue"), dict) else {}
            if (
                activity["external_id"].upper() == key.upper()
                or issue.get("key") == key
                or metadata.get("key") == key
            ):
                matches.append(activity["id"])
        return matches[:5]

    async def find_activity_ids_by_number(
        self,
        *,
        organization_id: str,
        number: int,
        repo_name: str | None = None,
        source: str | None = None,
    ) -> list[str]:
        matches = []
        for activity in self._ordered_activities():
            if activity["organization_id"] != organization_id:
                continue
            if number not in (activity["pr_number"], activity["issue_number"]):
                continue
            if repo_name is not None and activity["repo_name"] != repo_name:
                continue
            if source is not None and activity["source"] != source:
                continue
            matches.append(activity["id"])
        return matches[:5]

    async def insert_event_link(
        self,
        *,
        source_event_id: str,
        target_event_id: str,
        link_type: str,
        link_subtype: str | None = None,
        similarity: float | None = None,
    ) -> bool:
        if source_event_id == target_event_id:
            raise RepositoryValidationError("an activity cannot link to itself")
        if link_type not in LINK_TYPES:
            raise RepositoryValidationError("link_type must be one of: lexical, semantic")
        if source_event_id not in self.activities or target_event_id not in self.activities:
            raise RepositoryConflictError("linked activity does not exist")

        for link in self.event_links:
            if (
                link["source_event_id"] == source_event_id
                and link["target_event_id"] == target_event_id
                and link["link_type"] == link_type
            ):
                return False

        self.event_links.append(
            {
                "id": str(uuid4()),
                "source_event_id": source_event_id,
                "target_event_id": target_event_id,
                "link_type": link_type,
                "link_subtype": link_subtype,
                "similarity": similarity,
                "created_at": _utcnow(),
            }
        )
        return True

    async def list_event_links(self, activity_id: str) -> list[dict[str, Any]]:
        links = []
        for link in self.event_links:
            if link["source_event_id"] == activity_id:
                relationship, other_id = "outgoing", link["target_event_id"]
            elif link["target_event_id"] == activity_id:
                relationship, other_id = "incoming", link["source_event_id"]
            else:
                continue
            other = self.activities[other_id]
            links.append(
                {
                    "relationship": relationship,
                    "link_type": link["link_type"],
                    "link_subtype": link["link_subtype"],
                    "similarity": link["similarity"],
                    "created_at": link["created_at"],
                    "id": other["id"],
                    "title": other["title"],
                    "source": other["source"],
                    "activity_type": other["activity_type"],
                    "repo_name": other["repo_name"],
                    "metadata": copy.deepcopy(other["metadata"]),
                }
            )
        links.sort(key=lambda item: item["created_at"])
        return links

    async def find_similar_activities(
        self,
        *,
        embedding: list[float],
        organization_id: str | None,
        threshold: float,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[SimilarActivity]:
        scored = []
        for activity in self.activities.values():
            if not activity["embedding"] or activity["id"] == exclude_id:
                continue
            if organization_id is not None and activity["organization_id"] != organization_id:
                continue
            similarity = cosine_similarity(embedding, activity["embedding"])
            if similarity > threshold:
                scored.append(
                    SimilarActivity(
                        id=activity["id"],
                        title=activity["title"],
                        description=activity["description"],
                        source=activity["source"],
                        activity_type=activity["activity_type"],
                        similarity=similarity,
                    )
                )
        scored.sort(key=lambda item: item.similarity, reverse=True)
        return scored[:limit]

    async def list_top_activities(
        self,
        *,
        organization_id: str,
        since: datetime,
        limit: int,
        min_score: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            {
                "id": activity["id"],
                "source": activity["source"],
                "activity_type": activity["activity_type"],
                "title": activity["title"],
                "repo_name": activity["repo_name"],
                "attention_score": activity["attention_score"],
                "created_at": activity["created_at"],
            }
            for activity in self.activities.values()
            if activity["organization_id"] == organization_id
            and activity["created_at"] >= since
            and activity["attention_score"] >= min_score
        ]
        rows.sort(key=lambda row: (row["attention_score"], row["created_at"]), reverse=True)
        return rows[:limit]

    async def count_activities(
        self,
        *,
        organization_id: str | None,
        since: datetime,
        until: datetime,
        repo_name: str | None = None,
    ) -> list[dict[str, Any]]:
        groups: dict[tuple[str, str], list[int]] = {}
        for activity in self.activities.values():
            if organization_id is not None and activity["organization_id"] != organization_id:
                continue
            if not since <= activity["created_at"] < until:
                continue
            if repo_name is not None and activity["repo_name"] != repo_name:
                continue
            groups.setdefault((activity["source"], activity["activity_type"]), []).append(
                activity["attention_score"]
            )
        return [
            {
                "source": source,
                "activity_type": activity_type,
                "count": len(scores),
                "avg_score": sum(scores) / len(scores),
            }
            for (source, activity_type), scores in sorted(groups.items())
        ]

    # ingestion retry queue

    async def enqueue_ingestion_item(
        self,
        *,
        organization_id: str | None,
        source: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        item_id = str(uuid4())
        item = {
            "id": item_id,
            "organization_id": organization_id,
            "source": source,
            "event_type": event_type,
            "payload": copy.deepcopy(payload),
            "status": "pending",
            "attempts": 0,
            "error_message": None,
            "next_attempt_at": None,
            "claimed_at": None,
            "created_at": _utcnow(),
            "processed_at": None,
        }
        self.queue_items[item_id] = item
        return dict(item)

    async def list_claimable_ingestion_items(self, *, limit: int, max_attempts: int) -> list[dict[str, Any]]:
        now = _utcnow()
        items = [
            item
            for item in self.queue_items.values()
            if item["status"] in CLAIMABLE_QUEUE_STATUSES
            and item["attempts"] < max_attempts
            and (item["next_attempt_at"] is None or item["next_attempt_at"] <= now)
        ]
        items.sort(key=lambda item: item["created_at"])
        return [dict(item) for item in items[:limit]]

    async def claim_ingestion_item(self, item_id: str, *, max_attempts: int) -> dict[str, Any] | None:
        item = self.queue_items.get(item_id)
        if item is None or item["status"] not in CLAIMABLE_QUEUE_STATUSES or item["attempts"] >= max_attempts:
            return None
        item["status"] = "processing"
        item["claimed_at"] = _utcnow()
        return dict(item)

    async def complete_ingestion_item(self, item_id: str) -> dict[str, Any]:
        item = self._processing_item(item_id)
        item["status"] = "completed"
        item["processed_at"] = _utcnow()
        item["claimed_at"] = None
        item["error_message"] = None
        return dict(item)

    async def fail_ingestion_item(
        self,
        item_id: str,
        *,
        status: str,
        error_message: str,
        next_attempt_at: datetime | None,
    ) -> dict[str, Any]:
        if status not in {"retry_pending", "failed"}:
            raise RepositoryValidationError("failure status must be one of: retry_pending, failed")
        item = self._processing_item(item_id)
        item["status"] = status
        item["attempts"] += 1
        item["error_message"] = error_message
        item["next_attempt_at"] = next_attempt_at
        item["claimed_at"] = None
        if status == "failed":
            item["processed_at"] = _utcnow()
        return dict(item)

    async def reclaim_stale_ingestion_items(
        self,
        *,
        stale_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> int:
        stale = [
            item
            for item in self.queue_items.values()
            if item["status"] == "processing" and item["claimed_at"] is not None and item["claimed_at"] <= stale_before
        ]
        stale.sort(key=lambda item: item["claimed_at"])
        stale = stale[: max(1, min(limit, 1000))]
        for item in stale:
            item["attempts"] += 1
            item["status"] = "failed" if item["attempts"] >= max_attempts else "retry_pending"
            item["error_message"] = "processing timeout"
            item["next_attempt_at"] = None
            item["claimed_at"] = None
            if item["status"] == "failed":
                item["processed_at"] = _utcnow()
        return len(stale)

    async def count_ingestion_items_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in QUEUE_STATUSES}
        for item in self.queue_items.values():
            counts[item["status"]] += 1
        return counts

    async def list_recent_ingestion_failures(self, *, limit: int) -> list[dict[str, Any]]:
        failed = [dict(item) for item in self.queue_items.values() if item["status"] == "failed"]
        failed.sort(key=lambda item: item["processed_at"] or item["created_at"], reverse=True)
        return failed[:limit]

    # generic job queue

    async def create_job(
        self,
        *,
        job_id: str,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        max_attempts: int,
        scheduled_at: datetime | None,
    ) -> dict[str, Any]:
        if any(job["job_id"] == job_id for job in self.jobs.values()):
            raise RepositoryConflictError(f"job_id already exists: {job_id}")
        now = _utcnow()
        internal_id = str(uuid4())
        job = {
            "id": internal_id,
            "job_id": job_id,
            "job_type": job_type,
            "status": "pending",
            "priority": priority,
            "payload": copy.deepcopy(payload),
            "result": None,
            "error_message": None,
            "attempts": 0,
            "max_attempts": max_attempts,
            "scheduled_at": scheduled_at,
            "started_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.jobs[internal_id] = job
        return dict(job)

    async def claim_next_job(self, *, job_types: list[str] | None = None) -> dict[str, Any] | None:
        now = _utcnow()
        candidates = [
            job
            for job in self.jobs.values()
            if job["status"] in CLAIMABLE_JOB_STATUSES
            and (job["scheduled_at"] is None or job["scheduled_at"] <= now)
            and (not job_types or job["job_type"] in job_types)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda job: (-job["priority"], job["created_at"]))
        job = candidates[0]
        job["status"] = "processing"
        job["started_at"] = now
        job["updated_at"] = now
        job["attempts"] += 1
        return dict(job)

    async def complete_job(self, job_id: str, *, result: dict[str, Any] | None) -> dict[str, Any]:
        job = self._processing_job(job_id)
        now = _utcnow()
        job["status"] = "completed"
        job["result"] = copy.deepcopy(result)
        job["error_message"] = None
        job["completed_at"] = now
        job["updated_at"] = now
        return dict(job)

    async def schedule_job_retry(self, job_id: str, *, error_message: str, scheduled_at: datetime) -> dict[str, Any]:
        job = self._processing_job(job_id)
        job["status"] = "retrying"
        job["error_message"] = error_message
        job["scheduled_at"] = scheduled_at
        job["updated_at"] = _utcnow()
        return dict(job)

    async def fail_job(self, job_id: str, *, error_message: str) -> dict[str, Any]:
        job = self._processing_job(job_id)
        now = _utcnow()
        job["status"] = "failed"
        job["error_message"] = error_message
        job["completed_at"] = now
        job["updated_at"] = now
        return dict(job)

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    async def get_job_by_job_id(self, job_id: str) -> dict[str, Any] | None:
        for job in self.jobs.values():
            if job["job_id"] == job_id:
                return dict(job)
        return None

    async def count_jobs_by_status_and_type(self) -> list[dict[str, Any]]:
        groups: dict[tuple[str, str], int] = {}
        for job in self.jobs.values():
            key = (job["status"], job["job_type"])
            groups[key] = groups.get(key, 0) + 1
        return [
            {"status": status, "job_type": job_type, "count": count}
            for (status, job_type), count in groups.items()
        ]

    async def list_recent_jobs(self, *, limit: int, status: str | None = None) -> list[dict[str, Any]]:
        jobs = [dict(job) for job in self.jobs.values() if status is None or job["status"] == status]
        jobs.sort(key=lambda job: job["created_at"], reverse=True)
        return jobs[:limit]

    async def reclaim_stale_jobs(self, *, stale_before: datetime, limit: int) -> int:
        stale = [
            job
            for job in self.jobs.values()
            if job["status"] == "processing" and job["started_at"] is not None and job["started_at"] <= stale_before
        ]
        stale.sort(key=lambda job: job["started_at"])
        stale = stale[: max(1, min(limit, 1000))]
        now = _utcnow()
        for job in stale:
            exhausted = job["attempts"] >= job["max_attempts"]
            job["status"] = "failed" if exhausted else "retrying"
            job["error_message"] = "processing timeout"
            job["scheduled_at"] = None
            if exhausted:
                job["completed_at"] = now
            job["updated_at"] = now
        return len(stale)

    async def requeue_failed_jobs(self, *, attempts_ceiling: int, limit: int) -> int:
        retryable = [
            job for job in self.jobs.values() if job["status"] == "failed" and job["attempts"] < attempts_ceiling
        ]
        retryable.sort(key=lambda job: job["updated_at"])
        retryable = retryable[: max(1, min(limit, 1000))]
        now = _utcnow()
        for job in retryable:
            job["status"] = "retrying"
            job["max_attempts"] = max(job["max_attempts"], job["attempts"] + 1)
            job["error_message"] = None
            job["scheduled_at"] = None
            job["completed_at"] = None
            job["updated_at"] = now
        return len(retryable)

    async def delete_terminal_jobs(self, *, completed_before: datetime) -> int:
        doomed = [
            job_id
            for job_id, job in self.jobs.items()
            if job["status"] in {"completed", "failed"}
            and job["completed_at"] is not None
            and job["completed_at"] < completed_before
        ]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)

    def _ordered_activities(self) -> list[dict[str, Any]]:
        return sorted(self.activities.values(), key=lambda activity: activity["created_at"])

    def _processing_item(self, item_id: str) -> dict[str, Any]:
        item = self.queue_items.get(item_id)
        if item is None or item["status"] != "processing":
            raise RepositoryConflictError("queue item is not in processing state")
        return item

    def _processing_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "processing":
            raise RepositoryConflictError("job is not in processing state")
        return job
