"""Read side: persisted video status merged with the live queue snapshot.

The persisted row is the source of truth for the lifecycle; the queue adds
intermediate progress before the terminal write lands. A queue lookup that
fails or exceeds ``lookup_timeout_s`` is logged and reported as
``jobStatus: null``; it never fails the response.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from databases import Database
from pydantic import BaseModel
from sqlalchemy import select

from .api.db_models import Video
from .errors import NotFoundError, PipelineError
from .models import VideoRecord, VideoStatus
from .queue.backends import QueueBackend
from .queue.models import JobSnapshot
from .store import row_to_record

logger = logging.getLogger(__name__)


class VideoStatusView(BaseModel):
    id: str
    title: str
    status: VideoStatus
    processingJobId: Optional[str] = None  # noqa: N815
    errorMessage: Optional[str] = None  # noqa: N815
    processedAt: Optional[datetime] = None  # noqa: N815
    embedUrl: Optional[str] = None  # noqa: N815
    externalAssetId: Optional[str] = None  # noqa: N815

    @classmethod
    def from_record(cls, video: VideoRecord) -> "VideoStatusView":
        return cls(
            id=video.id,
            title=video.title,
            status=video.status,
            processingJobId=video.processing_job_id,
            errorMessage=video.error_message,
            processedAt=video.processed_at,
            embedUrl=video.embed_url,
            externalAssetId=video.external_asset_id,
        )


class JobStatusView(BaseModel):
    id: str
    status: str
    progress: int
    failedReason: Optional[str] = None  # noqa: N815

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> "JobStatusView":
        return cls(
            id=snapshot.id,
            status=snapshot.state.value,
            progress=snapshot.progress,
            failedReason=snapshot.failed_reason,
        )


class VideoStatusResponse(BaseModel):
    video: VideoStatusView
    jobStatus: Optional[JobStatusView] = None  # noqa: N815


class StatusService:
    """Async status reads for the API."""

    def __init__(
        self,
        database: Database,
        queue: QueueBackend,
        job_name: str,
        lookup_timeout_s: float = 2.0,
    ):
        self.database = database
        self.queue = queue
        self.job_name = job_name
        self.lookup_timeout_s = lookup_timeout_s

    async def get_status(self, video_id: str) -> VideoStatusResponse:
        row = await self.database.fetch_one(select(Video).where(Video.id == video_id))
        if row is None:
            raise NotFoundError(f"Video {video_id} not found", details={"videoId": video_id})
        return await self._merge(row_to_record(row))

    async def list_statuses(self, chapter_id: str) -> List[VideoStatusResponse]:
        rows = await self.database.fetch_all(
            select(Video).where(Video.chapterId == chapter_id).order_by(Video.orderIndex)
        )
        return list(await asyncio.gather(*(self._merge(row_to_record(row)) for row in rows)))

    async def _merge(self, video: VideoRecord) -> VideoStatusResponse:
        snapshot = await self._lookup(video)
        return VideoStatusResponse(
            video=VideoStatusView.from_record(video),
            jobStatus=JobStatusView.from_snapshot(snapshot) if snapshot else None,
        )

    async def _lookup(self, video: VideoRecord) -> Optional[JobSnapshot]:
        if video.processing_job_id:
            find = lambda: self.queue.get_job(video.processing_job_id)  # noqa: E731
        elif video.status == VideoStatus.PENDING:
            find = lambda: self.queue.find_live_job(self.job_name, video.id)  # noqa: E731
        else:
            return None

        try:
            return await asyncio.wait_for(asyncio.to_thread(find), timeout=self.lookup_timeout_s)
        except asyncio.TimeoutError:
            logger.error(
                "Queue lookup for video %s timed out after %.1fs", video.id, self.lookup_timeout_s
            )
        except PipelineError as e:
            logger.error("Queue lookup for video %s failed: %s", video.id, e)
        return None
