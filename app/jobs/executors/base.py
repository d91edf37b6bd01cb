"""Base executor interface for job types."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Type

from pydantic import BaseModel

from app.jobs.models import JOB_INPUT_MODELS, Job, JobType, parse_input

# Async progress callback: fn(percent, message)
ProgressCallback = Callable[[int, Optional[str]], Awaitable[None]]


class JobExecutor(ABC):
    """Abstract base class for the executor of one job type.

    To add a job type:
    1. Add it to JobType with its input/output models in app.jobs.models
    2. Subclass JobExecutor and implement execute()
    3. Register an instance in build_registry()
    """

    job_type: JobType
    timeout_seconds: float = 60.0

    @property
    def input_model(self) -> Type[BaseModel]:
        return JOB_INPUT_MODELS[self.job_type]

    def parse(self, job: Job) -> BaseModel:
        """Validate the job's raw input. Raises InvalidInputError."""
        return parse_input(self.job_type, job.input, self.input_model)

    @abstractmethod
    async def execute(
        self,
        job: Job,
        payload: BaseModel,
        progress: ProgressCallback,
    ) -> BaseModel:
        """Do the work. Returns the typed output model of this job type."""
        ...
