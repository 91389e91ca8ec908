"""The ``process-video`` job handler: the video lifecycle state machine.

    PENDING → PROCESSING → READY | FAILED

Each dispatch polls the provider once. While the provider is still
transcoding the handler raises RetryLater, so the queue re-dispatches the job
after ``worker.poll_interval_s`` instead of the worker sleeping in its slot.
The wait is bounded by ``worker.max_processing_wait_s`` measured from the
first claim of the job.

Broadcast events, one per transition:
    PROCESSING  progress 0
    READY       progress 100
    FAILED      progress 0 + errorMessage
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import pydantic

from .errors import (
    AuthorizationError,
    PipelineError,
    ProcessingTimeoutError,
    ProviderProcessingError,
    StoreUnavailableError,
    TransientNetworkError,
    ValidationError,
)
from .models import ProcessVideoPayload, VideoStatus, VideoStatusEvent, WorkerConfig
from .provider.client import ProviderClient, TranscodeStatus
from .queue.backends import QueueBackend
from .queue.models import JobRecord, JobState
from .queue.worker import RetryLater
from .realtime.base import Broadcaster
from .store import VideoStore

logger = logging.getLogger(__name__)

# Progress reported while the provider is transcoding
TRANSCODING_PROGRESS = 10


def parse_payload(data: Dict[str, Any]) -> ProcessVideoPayload:
    try:
        return ProcessVideoPayload.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed process-video payload: {e.errors()[0]['msg']}") from e


class VideoProcessor:
    """Job handler and failure hook for ``process-video``."""

    def __init__(
        self,
        store: VideoStore,
        provider: ProviderClient,
        broadcaster: Broadcaster,
        config: WorkerConfig,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.provider = provider
        self.broadcaster = broadcaster
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep

    def handle(self, job: JobRecord, queue: QueueBackend) -> Dict[str, Any]:
        payload = parse_payload(job.data)
        video = self.store.get_video(payload.videoId)

        if video.status.is_terminal:
            logger.info(
                "Video %s already %s, job %s has nothing to do",
                payload.videoId,
                video.status.value,
                job.id,
            )
            return {"videoId": payload.videoId, "status": video.status.value, "skipped": True}

        previous = self._store_write(self.store.mark_processing, payload.videoId, job.id)
        if previous.is_terminal:
            return {"videoId": payload.videoId, "status": previous.value, "skipped": True}
        if previous == VideoStatus.PENDING:
            logger.info(
                "Processing video %s (asset %s, job %s)",
                payload.videoId,
                payload.externalAssetId,
                job.id,
            )
            self._emit(payload.videoId, VideoStatus.PROCESSING, 0)

        remote = self._poll(payload)

        if remote.transcode_status == TranscodeStatus.COMPLETE:
            embed_url = remote.player_embed_url or self.provider.embed_url_for(
                payload.externalAssetId
            )
            written = self._store_write(
                self.store.mark_ready,
                payload.videoId,
                job.id,
                embed_url,
                remote.link,
                remote.duration,
            )
            queue.update_progress(job.id, 100)
            if written:
                self._emit(payload.videoId, VideoStatus.READY, 100)
            logger.info("Video %s is ready (%s)", payload.videoId, embed_url)
            return {"videoId": payload.videoId, "status": VideoStatus.READY.value, "embedUrl": embed_url}

        if remote.transcode_status == TranscodeStatus.ERROR:
            raise ProviderProcessingError(
                f"Provider failed to transcode asset {payload.externalAssetId}",
                details={"videoId": payload.videoId},
            )

        started = job.first_started_at or job.created_at
        waited = (self.clock() - started).total_seconds()
        if waited > self.config.max_processing_wait_s:
            raise ProcessingTimeoutError(
                f"Provider did not finish asset {payload.externalAssetId} "
                f"within {int(self.config.max_processing_wait_s)}s",
                details={"videoId": payload.videoId},
            )

        raise RetryLater(
            self.config.poll_interval_s,
            progress=max(job.progress, TRANSCODING_PROGRESS),
            reason=f"asset {payload.externalAssetId} transcode {remote.transcode_status.value}",
        )

    def on_failed(self, job: JobRecord, error: BaseException) -> None:
        """Runs on the job's last attempt, before the queue fails it for good.

        Raises StoreUnavailableError when the FAILED write cannot be made; the
        worker then keeps the job live and calls the hook again later.
        """
        video_id = job.data.get("videoId")
        if not video_id:
            logger.error("Job %s failed without a videoId, nothing to mark", job.id)
            return

        message = str(error) or type(error).__name__
        written = self._store_write(self.store.mark_failed, video_id, job.id, message)
        if written:
            self._emit(video_id, VideoStatus.FAILED, 0, message)

    def reconcile(self, queue: QueueBackend) -> int:
        """Fail PROCESSING videos whose job has failed or is gone.

        Returns:
            Number of videos moved to FAILED
        """
        failed = 0
        for video in self.store.list_by_status(VideoStatus.PROCESSING):
            job = queue.get_job(video.processing_job_id) if video.processing_job_id else None
            if job is not None and job.state != JobState.FAILED:
                continue

            if job is not None:
                message = job.failed_reason or f"Processing job {job.id} failed"
            else:
                message = f"Processing job {video.processing_job_id} is no longer tracked"
            logger.warning("Video %s is PROCESSING with no live job: %s", video.id, message)
            if self._store_write(
                self.store.mark_failed, video.id, video.processing_job_id, message
            ):
                self._emit(video.id, VideoStatus.FAILED, 0, message)
                failed += 1
        return failed

    def _poll(self, payload: ProcessVideoPayload):
        try:
            return self.provider.get_video(payload.externalAssetId)
        except AuthorizationError as e:
            if not self.provider.credentials.can_refresh:
                raise
            try:
                self.provider.refresh_credentials()
            except PipelineError as refresh_error:
                logger.error("Provider token refresh failed: %s", refresh_error)
                raise e from refresh_error
            raise TransientNetworkError(
                "Provider token refreshed, retrying", details={"videoId": payload.videoId}
            ) from e

    def _store_write(self, write: Callable, *args):
        """Run a store write, retrying StoreUnavailableError with backoff."""
        attempts = self.config.store_write_attempts
        for attempt in range(1, attempts + 1):
            try:
                return write(*args)
            except StoreUnavailableError as e:
                if attempt == attempts:
                    raise
                delay = self.config.store_write_backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    write.__name__,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
        return None

    def _emit(
        self,
        video_id: str,
        status: VideoStatus,
        progress: int,
        error_message: Optional[str] = None,
    ) -> None:
        event = VideoStatusEvent(
            videoId=video_id, status=status, progress=progress, errorMessage=error_message
        )
        self.broadcaster.publish_status(event)
