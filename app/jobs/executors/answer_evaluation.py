"""Grade an employee's checkpoint answer against the training content."""

from app.core.errors import TransientExternalError
from app.jobs.executors.base import JobExecutor, ProgressCallback
from app.jobs.models import AnswerEvaluationInput, AnswerEvaluationOutput, Job, JobType
from app.providers.openai_client import OpenAIClient

SYSTEM_PROMPT = (
    "You are an expert training evaluator. Evaluate the employee's answer "
    "and provide constructive feedback."
)


class AnswerEvaluationExecutor(JobExecutor):
    job_type = JobType.ANSWER_EVALUATION

    def __init__(self, openai: OpenAIClient, model: str = "gpt-4o-mini", timeout_seconds: float = 60.0):
        self._openai = openai
        self._model = model
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        job: Job,
        payload: AnswerEvaluationInput,
        progress: ProgressCallback,
    ) -> AnswerEvaluationOutput:
        await progress(50, "Evaluating answer...")
        evaluation = await self._openai.chat(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Question: {payload.question}\n"
                        f"Employee Answer: {payload.answer}\n"
                        f"Training Context: {payload.transcript}\n\n"
                        "Provide evaluation and feedback."
                    ),
                },
            ],
            model=self._model,
        )
        if not evaluation.strip():
            raise TransientExternalError("Evaluation result was empty")
        await progress(100, "Evaluation complete")
        return AnswerEvaluationOutput(evaluation=evaluation.strip())
