"""Supabase-backed job store over the ``background_jobs`` table.

Guarded writes are issued as a single PostgREST ``UPDATE ... WHERE`` with the
status condition in the filter, so the database applies the compare-and-set
atomically. An empty representation means the guard did not hold.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError
from supabase import Client

from app.core.errors import JobNotFoundError, JobsError, StoreError
from app.jobs.models import (
    CLAIMABLE_STATUSES,
    ENTITY_FIELDS,
    LEGACY_JOB_TYPES,
    TERMINAL_STATUSES,
    Job,
    JobError,
    JobStatus,
    JobType,
)
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Job attribute -> table column
_COLUMNS = {
    "id": "id",
    "owner_id": "user_id",
    "organization_id": "company_id",
    "type": "job_type",
    "status": "status",
    "priority": "priority",
    "input": "input_data",
    "output": "output_data",
    "error": "error_data",
    "progress_percent": "progress_percentage",
    "progress_message": "progress_message",
    "retry_count": "retry_count",
    "max_retries": "max_retries",
    "next_retry_at": "next_retry_at",
    "estimated_completion": "estimated_completion",
    "created_at": "created_at",
    "started_at": "started_at",
    "completed_at": "completed_at",
    "training_module_id": "training_module_id",
    "assignment_id": "assignment_id",
}
_ATTRIBUTES = {column: attr for attr, column in _COLUMNS.items()}


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return _timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def to_row(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {_COLUMNS[name]: _encode(value) for name, value in fields.items()}


def from_row(row: Dict[str, Any]) -> Job:
    """Map a table row onto a Job. Raises a non-retryable StoreError when it does not fit."""
    data = {_ATTRIBUTES[k]: v for k, v in row.items() if k in _ATTRIBUTES}
    if data.get("type") in LEGACY_JOB_TYPES:
        data["type"] = LEGACY_JOB_TYPES[data["type"]]
    if data.get("input") is None:
        data["input"] = {}
    if data.get("progress_percent") is None:
        data["progress_percent"] = 0
    try:
        return Job.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise StoreError(
            f"Unreadable job row {row.get('id')}: invalid {fields}",
            retryable=False,
            context={"job_id": row.get("id")},
        ) from e


def _type_values(job_types: Iterable[JobType]) -> List[str]:
    wanted = [JobType(t) for t in job_types]
    return [t.value for t in wanted] + [
        legacy for legacy, t in LEGACY_JOB_TYPES.items() if t in wanted
    ]


def _eligible_filter(now: datetime) -> str:
    ts = _timestamp(now)
    return (
        "status.eq.pending,"
        "and(status.eq.retrying,next_retry_at.is.null),"
        f"and(status.eq.retrying,next_retry_at.lte.{ts})"
    )


class SupabaseJobStore(JobStore):
    def __init__(self, client: Client, table: str = "background_jobs"):
        self._client = client
        self._table = table

    def _query(self):
        return self._client.table(self._table)

    async def _execute(self, query, action: str) -> List[Dict[str, Any]]:
        # supabase-py is synchronous; keep it off the event loop
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, query.execute)
        except JobsError:
            raise
        except Exception as e:
            logger.error("Job store %s failed: %s", action, e)
            raise StoreError(f"Failed to {action}: {e}", context={"action": action}) from e
        return list(response.data or [])

    async def insert(self, job: Job) -> Job:
        row = to_row(job.model_dump(exclude_none=True))
        rows = await self._execute(self._query().insert(row), "create background job")
        return from_row(rows[0]) if rows else job

    async def fetch(self, job_id: str) -> Optional[Job]:
        rows = await self._execute(
            self._query().select("*").eq("id", job_id).limit(1), "get job"
        )
        return from_row(rows[0]) if rows else None

    async def list_by_owner(self, owner_id: str, limit: int) -> List[Job]:
        query = (
            self._query()
            .select("*")
            .eq("user_id", owner_id)
            .order("created_at", desc=True)
            .limit(max(1, limit))
        )
        return [from_row(r) for r in await self._execute(query, "get user jobs")]

    async def list_by_entity(self, field: str, value: str) -> List[Job]:
        if field not in ENTITY_FIELDS:
            raise ValueError(f"Unknown entity reference '{field}'")
        query = (
            self._query()
            .select("*")
            .eq(_COLUMNS[field], value)
            .order("created_at", desc=True)
        )
        return [from_row(r) for r in await self._execute(query, "get entity jobs")]

    async def list_eligible(
        self,
        now: datetime,
        limit: int,
        job_types: Optional[Iterable[JobType]] = None,
    ) -> List[Job]:
        query = self._query().select("*").or_(_eligible_filter(now))
        if job_types:
            query = query.in_("job_type", _type_values(job_types))
        query = query.order("priority").order("created_at").limit(max(0, limit))

        jobs = []
        for row in await self._execute(query, "get pending jobs"):
            try:
                jobs.append(from_row(row))
            except StoreError as e:
                logger.error("Skipping job %s: %s", row.get("id"), e)
                await self._fail_unreadable(row, e, now)
        return jobs

    async def _fail_unreadable(self, row: Dict[str, Any], exc: StoreError, now: datetime) -> None:
        # Unreadable rows would otherwise come back on every batch
        fields = {
            "status": JobStatus.FAILED,
            "error": JobError.from_exception(exc),
            "completed_at": now,
        }
        query = (
            self._query()
            .update(to_row(fields))
            .eq("id", row.get("id"))
            .in_("status", [s.value for s in CLAIMABLE_STATUSES])
        )
        try:
            await self._execute(query, "fail unreadable job")
        except StoreError as e:
            logger.error("Could not mark job %s as failed: %s", row.get("id"), e)

    async def patch(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Iterable[JobStatus],
    ) -> Optional[Job]:
        query = (
            self._query()
            .update(to_row(fields))
            .eq("id", job_id)
            .in_("status", [JobStatus(s).value for s in expected_statuses])
        )
        rows = await self._execute(query, "update job")
        if rows:
            return from_row(rows[0])
        if await self.fetch(job_id) is None:
            raise JobNotFoundError(job_id)
        return None

    async def claim(self, job_id: str, now: datetime, fields: Dict[str, Any]) -> Optional[Job]:
        query = (
            self._query()
            .update(to_row(fields))
            .eq("id", job_id)
            .or_(_eligible_filter(now))
        )
        rows = await self._execute(query, "claim job")
        return from_row(rows[0]) if rows else None

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        query = (
            self._query()
            .delete()
            .in_("status", [s.value for s in TERMINAL_STATUSES])
            .lt("completed_at", _timestamp(cutoff))
        )
        return len(await self._execute(query, "cleanup old jobs"))
