"""
Video Synthesis — Veo long-running job.

State machine: IDLE -> SUBMITTED -> POLLING -> READY | FAILED

  - submit:  up to 3 reference images (provider hard limit) + narration prompt
  - poll:    every `poll_interval` seconds until the operation reports done;
             an asyncio suspension, not a thread stall
  - resolve: download the remote video with the API key and store it in the
             local media cache so a renderer can address it
"""

import asyncio
import logging
from typing import Callable, Optional, Sequence

from ..config import REFERENCE_VIDEO_MODEL, GenerationConfig
from ..veo import MAX_REFERENCE_IMAGES, VeoClient
from .errors import (
    GenerationError,
    OperationCancelled,
    PermissionDeniedError,
    ProviderError,
    VideoGenerationFailed,
    VideoTimeoutError,
    is_permission_failure,
)
from .models import MediaPayload, VideoJob, VideoJobState
from .storage import MediaCache

logger = logging.getLogger(__name__)

VIDEO_RESOLUTION = "720p"
VIDEO_ASPECT_RATIO = "16:9"

StateCallback = Callable[[VideoJob], None]


def build_video_prompt(script: str) -> str:
    return f'Cinematic video ad. Narration/Context: "{script}". Style: High quality, coherent transition.'


class VideoSynthesizer:
    """
    Drives one video job through its states.

    Usage:
        synth = VideoSynthesizer(config, media_cache)
        job = await synth.run(script, reference_images)
        job.local_url  # -> "/media/videos/<id>.mp4"
    """

    def __init__(
        self,
        config: GenerationConfig,
        media_cache: MediaCache,
        client: Optional[VeoClient] = None,
        on_state: Optional[StateCallback] = None,
    ):
        self.config = config
        self.media_cache = media_cache
        self.client = client or VeoClient(config)
        self.on_state = on_state
        self.job = VideoJob()

    def _transition(self, state: VideoJobState, **fields):
        self.job = self.job.model_copy(update={"state": state, **fields})
        logger.info(f"[video {self.job.job_id}] → {state.value}")
        if self.on_state is not None:
            self.on_state(self.job)

    def _model_for(self, refs: Sequence[MediaPayload]) -> str:
        if refs:
            return REFERENCE_VIDEO_MODEL
        return self.config.resolve("video").model

    async def submit(self, script: str, reference_images: Sequence[MediaPayload]) -> str:
        refs = list(reference_images)[:MAX_REFERENCE_IMAGES]
        if len(reference_images) > MAX_REFERENCE_IMAGES:
            logger.warning(f"Truncating {len(reference_images)} reference images to {MAX_REFERENCE_IMAGES}")

        operation_name = await self.client.submit(
            model=self._model_for(refs),
            prompt=build_video_prompt(script),
            reference_images=refs,
            resolution=VIDEO_RESOLUTION,
            aspect_ratio=VIDEO_ASPECT_RATIO,
        )
        self._transition(VideoJobState.SUBMITTED, operation_name=operation_name)
        return operation_name

    async def wait_until_done(
        self,
        operation_name: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Poll the operation; returns the remote video URI."""
        self._transition(VideoJobState.POLLING)
        loop = asyncio.get_running_loop()
        started = loop.time()
        max_wait = self.config.max_wait_seconds

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"Video job {operation_name} was cancelled.")
            if max_wait is not None and loop.time() - started >= max_wait:
                raise VideoTimeoutError(f"Video generation timed out after {max_wait:.0f}s")

            status = await self.client.get_operation(operation_name)
            self.job = self.job.model_copy(update={"polls": self.job.polls + 1})
            logger.info(f"Veo poll #{self.job.polls}: done={status.done}")

            if status.done:
                if status.error:
                    message = status.error.get("message", "Unknown Veo error")
                    code = status.error.get("code")
                    if is_permission_failure(code, str(status.error)):
                        raise PermissionDeniedError(f"Veo rejected the credential: {message}", status_code=code)
                    raise ProviderError(f"Veo generation failed: {message}")
                if not status.video_uri:
                    raise VideoGenerationFailed("Video generation failed: no video in the finished operation.")
                return status.video_uri

            await self._sleep(cancel_event)

    async def _sleep(self, cancel_event: Optional[asyncio.Event]):
        if cancel_event is None:
            await asyncio.sleep(self.config.poll_interval)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def resolve(self, uri: str) -> str:
        """Fetch the remote video and return a local URL for it."""
        data = await self.client.download(uri)
        return self.media_cache.store_video(self.job.job_id, data)

    async def run(
        self,
        script: str,
        reference_images: Sequence[MediaPayload],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VideoJob:
        """Submit, poll, resolve. Failures move the job to FAILED and re-raise."""
        try:
            operation_name = await self.submit(script, reference_images)
            uri = await self.wait_until_done(operation_name, cancel_event)
            local_url = await self.resolve(uri)
        except GenerationError as e:
            self._transition(VideoJobState.FAILED, error=e.message)
            raise
        except Exception as e:
            logger.error(f"[video {self.job.job_id}] unexpected failure: {e}", exc_info=True)
            self._transition(VideoJobState.FAILED, error=str(e))
            raise ProviderError(f"Video generation failed: {e}") from e

        self._transition(VideoJobState.READY, video_uri=uri, local_url=local_url)
        return self.job
