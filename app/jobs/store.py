"""Job store interface and in-process implementation.

The store is the only shared mutable state of the job subsystem. Every write
that depends on the current status goes through :meth:`JobStore.patch` or
:meth:`JobStore.claim`, both of which must behave as a single compare-and-set
against the stored row, so two processor passes racing over the same queue
cannot both take a job.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from app.core.errors import JobNotFoundError
from app.jobs.models import ENTITY_FIELDS, TERMINAL_STATUSES, Job, JobStatus, JobType


class JobStore(ABC):
    """Abstract persistence contract for jobs (Supabase or in-memory)."""

    @abstractmethod
    async def insert(self, job: Job) -> Job:
        """Persist a new job row. Returns the stored job."""
        ...

    @abstractmethod
    async def fetch(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str, limit: int) -> List[Job]:
        """Jobs of one owner, newest first."""
        ...

    @abstractmethod
    async def list_by_entity(self, field: str, value: str) -> List[Job]:
        """Jobs referencing a business entity, newest first."""
        ...

    @abstractmethod
    async def list_eligible(
        self,
        now: datetime,
        limit: int,
        job_types: Optional[Iterable[JobType]] = None,
    ) -> List[Job]:
        """Pending jobs plus retrying jobs whose retry time has passed,
        ordered by (priority, created_at)."""
        ...

    @abstractmethod
    async def patch(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Iterable[JobStatus],
    ) -> Optional[Job]:
        """Apply ``fields`` only if the row's status is in ``expected_statuses``.

        Returns the updated job, or None when the status guard did not hold.
        Raises JobNotFoundError when the row does not exist.
        """
        ...

    @abstractmethod
    async def claim(self, job_id: str, now: datetime, fields: Dict[str, Any]) -> Optional[Job]:
        """Apply ``fields`` only if the job is still claimable at ``now``.

        Returns None when another pass claimed or cancelled it first.
        """
        ...

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal jobs completed before ``cutoff``. Returns count deleted."""
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed store. Every read-modify-write runs under one asyncio lock."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def fetch(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_by_owner(self, owner_id: str, limit: int) -> List[Job]:
        jobs = [j for j in self._jobs.values() if j.owner_id == owner_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[: max(1, limit)]]

    async def list_by_entity(self, field: str, value: str) -> List[Job]:
        if field not in ENTITY_FIELDS:
            raise ValueError(f"Unknown entity reference '{field}'")
        jobs = [j for j in self._jobs.values() if getattr(j, field) == value]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]

    async def list_eligible(
        self,
        now: datetime,
        limit: int,
        job_types: Optional[Iterable[JobType]] = None,
    ) -> List[Job]:
        wanted = set(job_types) if job_types else None
        jobs = [
            j for j in self._jobs.values()
            if j.is_claimable(now) and (wanted is None or j.type in wanted)
        ]
        jobs.sort(key=lambda j: (j.priority, j.created_at))
        return [j.model_copy(deep=True) for j in jobs[: max(0, limit)]]

    async def patch(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Iterable[JobStatus],
    ) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.status not in set(expected_statuses):
                return None
            updated = current.model_copy(update=fields, deep=True)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def claim(self, job_id: str, now: datetime, fields: Dict[str, Any]) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None or not current.is_claimable(now):
                return None
            updated = current.model_copy(update=fields, deep=True)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id for job_id, j in self._jobs.items()
                if j.status in TERMINAL_STATUSES and j.completed_at and j.completed_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)
