"""Write-back of job results onto the training module a job serves."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict

from supabase import Client

from app.core.errors import JobsError, StoreError


class TrainingModuleWriter(ABC):
    @abstractmethod
    async def update(self, module_id: str, fields: Dict[str, Any]) -> None:
        ...


class SupabaseTrainingModuleWriter(TrainingModuleWriter):
    """Updates rows of the ``training_modules`` table with the service-role client."""

    def __init__(self, client: Client, table: str = "training_modules"):
        self._client = client
        self._table = table

    async def update(self, module_id: str, fields: Dict[str, Any]) -> None:
        query = self._client.table(self._table).update(fields).eq("id", module_id)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, query.execute)
        except JobsError:
            raise
        except Exception as e:
            raise StoreError(
                f"Failed to update training module {module_id}: {e}",
                context={"training_module_id": module_id},
            ) from e
