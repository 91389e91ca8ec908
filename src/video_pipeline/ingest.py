"""Upload submission: provider upload → PENDING video → queued job."""

import logging
from typing import BinaryIO, Optional

from pydantic import BaseModel

from .errors import JobConflictError, PipelineError, QueueUnavailableError, ValidationError
from .models import ProcessVideoPayload, QueueConfig, VideoRecord, VideoStatus
from .provider.upload import ResumableUploader
from .queue.backends import QueueBackend
from .queue.models import BackoffPolicy, JobHandle, JobOptions
from .store import VideoStore

logger = logging.getLogger(__name__)


class SubmissionResult(BaseModel):
    video: VideoRecord
    job_id: str


class VideoIngestService:
    """Accepts uploads and hands them to the processing queue.

    If the broker is down the call fails with QueueUnavailableError carrying
    the video id; the video stays PENDING with no job attached and can be
    passed to ``resubmit`` later.
    """

    def __init__(
        self,
        store: VideoStore,
        uploader: ResumableUploader,
        queue: QueueBackend,
        queue_config: QueueConfig,
    ):
        self.store = store
        self.uploader = uploader
        self.queue = queue
        self.queue_config = queue_config

    def job_options(self, video_id: str) -> JobOptions:
        return JobOptions(
            attempts=self.queue_config.attempts,
            backoff=BackoffPolicy(
                type=self.queue_config.backoff_type,
                delay_ms=self.queue_config.backoff_delay_ms,
            ),
            dedupe_key=video_id,
            remove_on_complete=self.queue_config.remove_on_complete,
            remove_on_fail=self.queue_config.remove_on_fail,
        )

    def submit(
        self,
        chapter_id: str,
        stream: BinaryIO,
        title: str,
        description: Optional[str] = None,
        order_index: int = 0,
        duration: Optional[int] = None,
        size: Optional[int] = None,
    ) -> SubmissionResult:
        if self.store.find_by_order_index(chapter_id, order_index) is not None:
            raise ValidationError(
                f"Order index {order_index} is already used in chapter {chapter_id}",
                details={"chapterId": chapter_id, "orderIndex": order_index},
            )

        upload = self.uploader.submit_upload(stream, title, description, size)
        try:
            video = self.store.create_video(
                chapter_id=chapter_id,
                title=title,
                external_asset_id=upload.external_asset_id,
                embed_url=upload.embed_url,
                description=description,
                order_index=order_index,
                duration=duration,
            )
        except PipelineError:
            self._discard_asset(upload.external_asset_id)
            raise
        handle = self._enqueue(video)
        return SubmissionResult(video=video, job_id=handle.id)

    def _discard_asset(self, asset_id: str) -> None:
        """Delete an uploaded asset that never got a video row."""
        try:
            self.uploader.client.delete_video(asset_id)
        except PipelineError as e:
            logger.error("Provider asset %s is orphaned, delete failed: %s", asset_id, e)
            return
        logger.warning("Video row not created, removed provider asset %s", asset_id)

    def resubmit(self, video_id: str) -> SubmissionResult:
        """Queue a PENDING video that has no job (e.g. after a broker outage)."""
        video = self.store.get_video(video_id)
        if video.status != VideoStatus.PENDING or video.processing_job_id:
            raise JobConflictError(
                f"Video {video_id} is {video.status.value}, only PENDING videos can be resubmitted",
                details={"videoId": video_id, "status": video.status.value},
            )
        if not video.external_asset_id:
            raise ValidationError(
                f"Video {video_id} has no provider asset", details={"videoId": video_id}
            )

        live = self.queue.find_live_job(self.queue_config.job_name, video_id)
        if live is not None:
            raise JobConflictError(
                f"Video {video_id} already has job {live.id} ({live.state.value})",
                details={"videoId": video_id, "jobId": live.id},
            )

        handle = self._enqueue(video)
        return SubmissionResult(video=video, job_id=handle.id)

    def _enqueue(self, video: VideoRecord) -> JobHandle:
        payload = ProcessVideoPayload(
            videoId=video.id,
            externalAssetId=video.external_asset_id,
            title=video.title,
            chapterId=video.chapter_id,
        )
        try:
            handle = self.queue.enqueue(
                self.queue_config.job_name, payload.model_dump(), self.job_options(video.id)
            )
        except QueueUnavailableError as e:
            logger.error(
                "Video %s stored but not queued, it stays PENDING until resubmitted: %s",
                video.id,
                e,
            )
            raise QueueUnavailableError(
                f"Video {video.id} was stored but could not be queued: {e.message}",
                details={"videoId": video.id},
            ) from e

        logger.info("Queued job %s for video %s", handle.id, video.id)
        return handle
