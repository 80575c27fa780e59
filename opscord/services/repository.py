from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from opscord.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class NewActivity:
    source: str
    event_type: str
    external_id: str
    activity_type: str
    title: str
    attention_score: int
    organization_id: str | None = None
    description: str | None = None
    repo_name: str | None = None
    pr_number: int | None = None
    issue_number: int | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None


@dataclass(slots=True)
class SimilarActivity:
    id: str
    title: str
    description: str | None
    source: str
    activity_type: str
    similarity: float


ACTIVITY_SOURCES = {"github", "gitlab", "jira", "slack", "discord"}
LINK_TYPES = {"lexical", "semantic"}
QUEUE_STATUSES = ("pending", "retry_pending", "processing", "completed", "failed")
CLAIMABLE_QUEUE_STATUSES = ("pending", "retry_pending")
JOB_STATUSES = ("pending", "processing", "completed", "failed", "retrying")
CLAIMABLE_JOB_STATUSES = ("pending", "retrying")

_QUEUE_COLUMNS = """
  id::text as id,
  organization_id,
  source,
  event_type,
  payload,
  status,
  attempts,
  error_message,
  next_attempt_at,
  claimed_at,
  created_at,
  processed_at
"""

_JOB_COLUMNS = """
  id::text as id,
  job_id,
  job_type,
  status,
  priority,
  payload,
  result,
  error_message,
  attempts,
  max_attempts,
  scheduled_at,
  started_at,
  completed_at,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # activities

    async def record_raw_event(self, *, source: str, event_type: str, payload: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into webhooks (source, event_type, payload)
            values ($1, $2, $3::jsonb)
            """,
            source,
            event_type,
            json.dumps(payload, default=str),
        )

    async def find_activity_id(self, *, source: str, external_id: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from activities
            where source = $1 and external_id = $2
            """,
            source,
            external_id,
        )

    async def insert_activity(self, activity: NewActivity) -> tuple[str, bool]:
        """Insert an activity; returns ``(id, inserted)``.

        A concurrent insert of the same ``(source, external_id)`` loses on the
        unique constraint and resolves to the existing row with ``inserted=False``.
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    activity_id = await conn.fetchval(
                        """
                        insert into activities (
                          organization_id,
                          source,
                          event_type,
                          external_id,
                          activity_type,
                          title,
                          description,
                          repo_name,
                          pr_number,
                          issue_number,
                          user_id,
                          metadata,
                          embedding,
                          attention_score
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13::vector, $14)
                        on conflict (source, external_id) do nothing
                        returning id::text
                        """,
                        activity.organization_id,
                        activity.source,
                        activity.event_type,
                        activity.external_id,
                        activity.activity_type,
                        activity.title,
                        activity.description,
                        activity.repo_name,
                        activity.pr_number,
                        activity.issue_number,
                        activity.user_id,
                        json.dumps(activity.metadata, default=str),
                        _vector_literal(activity.embedding),
                        activity.attention_score,
                    )
                    if activity_id:
                        return activity_id, True

                    existing = await conn.fetchval(
                        """
                        select id::text
                        from activities
                        where source = $1 and external_id = $2
                        """,
                        activity.source,
                        activity.external_id,
                    )
                    if not existing:
                        raise RepositoryConflictError("failed to resolve existing activity after conflict")
                    return existing, False
        except (pg_exc.CheckViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc

    async def get_activity(self, activity_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  organization_id,
                  source,
                  event_type,
                  external_id,
                  activity_type,
                  title,
                  description,
                  repo_name,
                  pr_number,
                  issue_number,
                  user_id,
                  metadata,
                  attention_score,
                  created_at
                from activities
                where id = $1::uuid
                """,
                activity_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        if not row:
            return None
        activity = dict(row)
        activity["metadata"] = _coerce_json_dict(row["metadata"])
        return activity

    async def find_activity_ids_by_ticket_key(self, *, organization_id: str, key: str) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from activities
            where organization_id = $1
              and source = 'jira'
              and (upper(external_id) = upper($2) or metadata->'issue'->>'key' = $2 or metadata->>'key' = $2)
            order by created_at asc
            limit 5
            """,
            organization_id,
            key,
        )
        return [row["id"] for row in rows]

    async def find_activity_ids_by_number(
        self,
        *,
        organization_id: str,
        number: int,
        repo_name: str | None = None,
        source: str | None = None,
    ) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from activities
            where organization_id = $1
              and (pr_number = $2 or issue_number = $2)
              and ($3::text is null or repo_name = $3)
              and ($4::text is null or source = $4)
            order by created_at asc
            limit 5
            """,
            organization_id,
            number,
            repo_name,
            source,
        )
        return [row["id"] for row in rows]

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

        pool = await self._get_pool()
        try:
            inserted = await pool.fetchval(
                """
                insert into event_links (
                  source_event_id,
                  target_event_id,
                  link_type,
                  link_subtype,
                  similarity
                )
                values ($1::uuid, $2::uuid, $3, $4, $5)
                on conflict (source_event_id, target_event_id, link_type) do nothing
                returning id::text
                """,
                source_event_id,
                target_event_id,
                link_type,
                link_subtype,
                similarity,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return inserted is not None

    async def list_event_links(self, activity_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  'outgoing' as relationship,
                  l.link_type,
                  l.link_subtype,
                  l.similarity,
                  l.created_at,
                  a.id::text as id,
                  a.title,
                  a.source,
                  a.activity_type,
                  a.repo_name,
                  a.metadata
                from event_links l
                join activities a on a.id = l.target_event_id
                where l.source_event_id = $1::uuid
                union all
                select
                  'incoming' as relationship,
                  l.link_type,
                  l.link_subtype,
                  l.similarity,
                  l.created_at,
                  a.id::text as id,
                  a.title,
                  a.source,
                  a.activity_type,
                  a.repo_name,
                  a.metadata
                from event_links l
                join activities a on a.id = l.source_event_id
                where l.target_event_id = $1::uuid
                order by created_at asc
                """,
                activity_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            # Not a uuid, so no activity and no links.
            return []

        links: list[dict[str, Any]] = []
        for row in rows:
            link = dict(row)
            link["metadata"] = _coerce_json_dict(row["metadata"])
            links.append(link)
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
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select *
            from (
              select
                id::text as id,
                title,
                description,
                source,
                activity_type,
                1 - (embedding <=> $1::vector) as similarity
              from activities
              where embedding is not null
                and ($2::text is null or organization_id = $2)
                and ($3::text is null or id <> $3::uuid)
            ) scored
            where similarity > $4
            order by similarity desc
            limit $5
            """,
            _vector_literal(embedding),
            organization_id,
            exclude_id,
            threshold,
            limit,
        )
        return [
            SimilarActivity(
                id=row["id"],
                title=row["title"],
                description=row["description"],
                source=row["source"],
                activity_type=row["activity_type"],
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    async def list_top_activities(
        self,
        *,
        organization_id: str,
        since: datetime,
        limit: int,
        min_score: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              source,
              activity_type,
              title,
              repo_name,
              attention_score,
              created_at
            from activities
            where organization_id = $1
              and created_at >= $2
              and attention_score >= $3
            order by attention_score desc, created_at desc
            limit $4
            """,
            organization_id,
            since,
            min_score,
            limit,
        )
        return [dict(row) for row in rows]

    async def count_activities(
        self,
        *,
        organization_id: str | None,
        since: datetime,
        until: datetime,
        repo_name: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select source, activity_type, count(*)::int as count, avg(attention_score)::float as avg_score
            from activities
            where ($1::text is null or organization_id = $1)
              and created_at >= $2
              and created_at < $3
              and ($4::text is null or repo_name = $4)
            group by source, activity_type
            order by source asc, activity_type asc
            """,
            organization_id,
            since,
            until,
            repo_name,
        )
        return [dict(row) for row in rows]

    # ingestion retry queue

    async def enqueue_ingestion_item(
        self,
        *,
        organization_id: str | None,
        source: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into ingestion_queue (organization_id, source, event_type, payload, status)
            values ($1, $2, $3, $4::jsonb, 'pending')
            returning {_QUEUE_COLUMNS}
            """,
            organization_id,
            source,
            event_type,
            json.dumps(payload, default=str),
        )
        return self._queue_row_to_dict(row)

    async def list_claimable_ingestion_items(self, *, limit: int, max_attempts: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_QUEUE_COLUMNS}
            from ingestion_queue
            where status in ('pending', 'retry_pending')
              and attempts < $2
              and (next_attempt_at is null or next_attempt_at <= now())
            order by created_at asc
            limit $1
            """,
            limit,
            max_attempts,
        )
        return [self._queue_row_to_dict(row) for row in rows]

    async def claim_ingestion_item(self, item_id: str, *, max_attempts: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingestion_queue
            set status = 'processing', claimed_at = now()
            where id = $1::uuid
              and status in ('pending', 'retry_pending')
              and attempts < $2
            returning {_QUEUE_COLUMNS}
            """,
            item_id,
            max_attempts,
        )
        return self._queue_row_to_dict(row) if row else None

    async def complete_ingestion_item(self, item_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingestion_queue
            set status = 'completed', processed_at = now(), claimed_at = null, error_message = null
            where id = $1::uuid and status = 'processing'
            returning {_QUEUE_COLUMNS}
            """,
            item_id,
        )
        if not row:
            raise RepositoryConflictError("queue item is not in processing state")
        return self._queue_row_to_dict(row)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingestion_queue
            set
              status = $2,
              attempts = attempts + 1,
              error_message = $3,
              next_attempt_at = $4,
              claimed_at = null,
              processed_at = case when $2 = 'failed' then now() else processed_at end
            where id = $1::uuid and status = 'processing'
            returning {_QUEUE_COLUMNS}
            """,
            item_id,
            status,
            error_message,
            next_attempt_at,
        )
        if not row:
            raise RepositoryConflictError("queue item is not in processing state")
        return self._queue_row_to_dict(row)

    async def reclaim_stale_ingestion_items(
        self,
        *,
        stale_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with stale as (
              select id
              from ingestion_queue
              where status = 'processing'
                and claimed_at is not null
                and claimed_at <= $1
              order by claimed_at asc
              limit $3
              for update skip locked
            )
            update ingestion_queue q
            set
              attempts = q.attempts + 1,
              status = case when q.attempts + 1 >= $2 then 'failed' else 'retry_pending' end,
              error_message = 'processing timeout',
              next_attempt_at = null,
              claimed_at = null,
              processed_at = case when q.attempts + 1 >= $2 then now() else q.processed_at end
            from stale s
            where q.id = s.id
            returning q.id::text as id
            """,
            stale_before,
            max_attempts,
            bounded_limit,
        )
        return len(rows)

    async def count_ingestion_items_by_status(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*)::int as count
            from ingestion_queue
            group by status
            """
        )
        counts = {status: 0 for status in QUEUE_STATUSES}
        for row in rows:
            counts[row["status"]] = int(row["count"])
        return counts

    async def list_recent_ingestion_failures(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_QUEUE_COLUMNS}
            from ingestion_queue
            where status = 'failed'
            order by processed_at desc nulls last, created_at desc
            limit $1
            """,
            limit,
        )
        return [self._queue_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into job_queue (job_id, job_type, status, priority, payload, max_attempts, scheduled_at)
                values ($1, $2, 'pending', $3, $4::jsonb, $5, $6)
                returning {_JOB_COLUMNS}
                """,
                job_id,
                job_type,
                priority,
                json.dumps(payload, default=str),
                max_attempts,
                scheduled_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"job_id already exists: {job_id}") from exc
        return self._job_row_to_dict(row)

    async def claim_next_job(self, *, job_types: list[str] | None = None) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_queue
            set
              status = 'processing',
              started_at = now(),
              updated_at = now(),
              attempts = attempts + 1
            where id = (
              select id
              from job_queue
              where status in ('pending', 'retrying')
                and (scheduled_at is null or scheduled_at <= now())
                and ($1::text[] is null or job_type = any($1::text[]))
              order by priority desc, created_at asc
              limit 1
              for update skip locked
            )
            returning {_JOB_COLUMNS}
            """,
            job_types or None,
        )
        return self._job_row_to_dict(row) if row else None

    async def complete_job(self, job_id: str, *, result: dict[str, Any] | None) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_queue
            set
              status = 'completed',
              result = $2::jsonb,
              error_message = null,
              completed_at = now(),
              updated_at = now()
            where id = $1::uuid and status = 'processing'
            returning {_JOB_COLUMNS}
            """,
            job_id,
            json.dumps(result, default=str) if result is not None else None,
        )
        if not row:
            raise RepositoryConflictError("job is not in processing state")
        return self._job_row_to_dict(row)

    async def schedule_job_retry(self, job_id: str, *, error_message: str, scheduled_at: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_queue
            set
              status = 'retrying',
              error_message = $2,
              scheduled_at = $3,
              updated_at = now()
            where id = $1::uuid and status = 'processing'
            returning {_JOB_COLUMNS}
            """,
            job_id,
            error_message,
            scheduled_at,
        )
        if not row:
            raise RepositoryConflictError("job is not in processing state")
        return self._job_row_to_dict(row)

    async def fail_job(self, job_id: str, *, error_message: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update job_queue
            set
              status = 'failed',
              error_message = $2,
              completed_at = now(),
              updated_at = now()
            where id = $1::uuid and status = 'processing'
            returning {_JOB_COLUMNS}
            """,
            job_id,
            error_message,
        )
        if not row:
            raise RepositoryConflictError("job is not in processing state")
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from job_queue where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_dict(row) if row else None

    async def get_job_by_job_id(self, job_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from job_queue where job_id = $1", job_id)
        return self._job_row_to_dict(row) if row else None

    async def count_jobs_by_status_and_type(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, job_type, count(*)::int as count
            from job_queue
            group by status, job_type
            """
        )
        return [dict(row) for row in rows]

    async def list_recent_jobs(self, *, limit: int, status: str | None = None) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from job_queue
            where ($2::text is null or status = $2)
            order by created_at desc
            limit $1
            """,
            limit,
            status,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def reclaim_stale_jobs(self, *, stale_before: datetime, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with stale as (
              select id
              from job_queue
              where status = 'processing'
                and started_at is not null
                and started_at <= $1
              order by started_at asc
              limit $2
              for update skip locked
            )
            update job_queue j
            set
              status = case when j.attempts >= j.max_attempts then 'failed' else 'retrying' end,
              error_message = 'processing timeout',
              scheduled_at = null,
              completed_at = case when j.attempts >= j.max_attempts then now() else j.completed_at end,
              updated_at = now()
            from stale s
            where j.id = s.id
            returning j.id::text as id
            """,
            stale_before,
            bounded_limit,
        )
        return len(rows)

    async def requeue_failed_jobs(self, *, attempts_ceiling: int, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with retryable as (
              select id
              from job_queue
              where status = 'failed' and attempts < $2
              order by updated_at asc
              limit $1
              for update skip locked
            )
            update job_queue j
            set
              status = 'retrying',
              max_attempts = greatest(j.max_attempts, j.attempts + 1),
              error_message = null,
              scheduled_at = null,
              completed_at = null,
              updated_at = now()
            from retryable r
            where j.id = r.id
            returning j.id::text as id
            """,
            bounded_limit,
            attempts_ceiling,
        )
        return len(rows)

    async def delete_terminal_jobs(self, *, completed_before: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from job_queue
            where status in ('completed', 'failed')
              and completed_at < $1
            returning id::text as id
            """,
            completed_before,
        )
        return len(rows)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("OPSCORD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _queue_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        item = dict(row)
        item["payload"] = _coerce_json_dict(row["payload"])
        return item

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["payload"] = _coerce_json_dict(row["payload"])
        result = row["result"]
        job["result"] = _coerce_json_dict(result) if result is not None else None
        return job


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}


def _vector_literal(embedding: list[float] | None) -> str | None:
    if not embedding:
        return None
    return "[" + ",".join(format(float(value), ".8g") for value in embedding) + "]"


@lru_cache
def get_repository():
    """Postgres when a DSN is configured, the in-memory store otherwise."""
    settings = get_settings()
    if not settings.database_url:
        from opscord.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
