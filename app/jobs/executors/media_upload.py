"""Hand a stored video to the hosting provider and wait for a playable asset."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from app.core.errors import InvalidInputError, TransientExternalError
from app.db.training_modules import TrainingModuleWriter
from app.jobs.executors.base import JobExecutor, ProgressCallback
from app.jobs.models import Job, JobType, MediaUploadInput, MediaUploadOutput
from app.providers.mux_client import MuxClient

logger = logging.getLogger(__name__)


class MediaUploadExecutor(JobExecutor):
    job_type = JobType.MEDIA_UPLOAD

    def __init__(
        self,
        mux: MuxClient,
        training_modules: Optional[TrainingModuleWriter] = None,
        poll_interval: float = 5.0,
        max_polls: int = 20,
        timeout_seconds: float = 150.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._mux = mux
        self._training_modules = training_modules
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        job: Job,
        payload: MediaUploadInput,
        progress: ProgressCallback,
    ) -> MediaUploadOutput:
        await progress(30, "Uploading to video host...")
        asset = await self._mux.create_asset(payload.video_url)
        asset_id = asset.get("id")
        if not asset_id:
            raise TransientExternalError("Video host did not return an asset id")

        await progress(60, "Waiting for asset to become ready...")
        polls = 0
        while asset.get("status") not in ("ready", "errored") and polls < self._max_polls:
            await self._sleep(self._poll_interval)
            asset = await self._mux.retrieve_asset(asset_id)
            polls += 1
            logger.debug("Asset %s status %s after %d polls", asset_id, asset.get("status"), polls)

        status = asset.get("status")
        if status == "errored":
            raise InvalidInputError(f"Asset processing failed for asset {asset_id}")
        if status != "ready":
            raise TransientExternalError("Asset processing timed out")

        playback_ids = asset.get("playback_ids") or []
        playback_id = playback_ids[0].get("id") if playback_ids else None
        if not playback_id:
            raise TransientExternalError("Playback ID not available")

        if job.training_module_id and self._training_modules:
            await self._training_modules.update(
                job.training_module_id,
                {"mux_playback_id": playback_id, "mux_asset_id": asset_id},
            )

        await progress(100, "Video upload complete")
        return MediaUploadOutput(playback_id=playback_id, asset_id=asset_id, status=status)
