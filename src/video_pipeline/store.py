"""Persistence for the video table.

The worker and the ingest service write through ``VideoStore`` with a
synchronous SQLAlchemy engine. Every lifecycle write is a conditional UPDATE
so a redelivered or stale job can never move a video backwards:

    PENDING → PROCESSING     only from PENDING, or by the owning job again
    PROCESSING → READY       only by the job in processingJobId
    * → FAILED               only from PENDING/PROCESSING, by the owning job

Terminal writes report whether they changed anything, which makes them safe
to retry.
"""

import logging
import uuid
from typing import Any, List, Mapping, Optional

from sqlalchemy import create_engine, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from .api.db_models import Base, Video, utcnow
from .errors import JobConflictError, NotFoundError, StoreUnavailableError, ValidationError
from .models import VideoRecord, VideoStatus

logger = logging.getLogger(__name__)


def row_to_record(row: Mapping[str, Any]) -> VideoRecord:
    """Convert a Video row (camelCase columns) to a VideoRecord."""
    return VideoRecord(
        id=row["id"],
        chapter_id=row["chapterId"],
        title=row["title"],
        description=row["description"],
        order_index=row["orderIndex"] or 0,
        duration=row["duration"],
        external_asset_id=row["externalAssetId"],
        external_playback_url=row["externalPlaybackUrl"],
        embed_url=row["embedUrl"],
        status=VideoStatus(row["status"]),
        processing_job_id=row["processingJobId"],
        error_message=row["errorMessage"],
        processed_at=row["processedAt"],
        created_at=row["createdAt"],
        updated_at=row["updatedAt"],
    )


class VideoStore:
    """Reads and lifecycle writes for the Video table."""

    def __init__(self, database_url: str, engine=None):
        self.database_url = database_url
        self.engine = engine or create_engine(database_url)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # --- reads ---

    def get_video(self, video_id: str) -> VideoRecord:
        row = self._fetch_one(video_id)
        if row is None:
            raise NotFoundError(f"Video {video_id} not found", details={"videoId": video_id})
        return row_to_record(row)

    def list_videos(self, chapter_id: str) -> List[VideoRecord]:
        query = select(Video).where(Video.chapterId == chapter_id).order_by(Video.orderIndex)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e
        return [row_to_record(row) for row in rows]

    def list_by_status(self, status: VideoStatus) -> List[VideoRecord]:
        query = select(Video).where(Video.status == status).order_by(Video.updatedAt)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e
        return [row_to_record(row) for row in rows]

    def find_by_order_index(self, chapter_id: str, order_index: int) -> Optional[VideoRecord]:
        query = select(Video).where(
            Video.chapterId == chapter_id, Video.orderIndex == order_index
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e
        return row_to_record(row) if row else None

    # --- writes ---

    def create_video(
        self,
        chapter_id: str,
        title: str,
        external_asset_id: str,
        embed_url: Optional[str] = None,
        description: Optional[str] = None,
        order_index: int = 0,
        duration: Optional[int] = None,
        video_id: Optional[str] = None,
    ) -> VideoRecord:
        """Insert a PENDING video with no job attached."""
        video_id = video_id or str(uuid.uuid4())
        now = utcnow()
        values = dict(
            id=video_id,
            chapterId=chapter_id,
            title=title,
            description=description,
            orderIndex=order_index,
            duration=duration,
            externalAssetId=external_asset_id,
            embedUrl=embed_url,
            status=VideoStatus.PENDING,
            processingJobId=None,
            errorMessage=None,
            createdAt=now,
            updatedAt=now,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(Video).values(**values))
        except IntegrityError as e:
            raise ValidationError(
                f"Order index {order_index} is already used in chapter {chapter_id}",
                details={"chapterId": chapter_id, "orderIndex": order_index},
            ) from e
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e

        logger.info("Created video %s (asset %s) in chapter %s", video_id, external_asset_id, chapter_id)
        return self.get_video(video_id)

    def mark_processing(self, video_id: str, job_id: str) -> VideoStatus:
        """Claim the video for ``job_id``.

        Returns:
            The status before the call: PENDING when this call made the
            transition, PROCESSING when ``job_id`` already owned it, or the
            terminal status (nothing written)

        Raises:
            JobConflictError: another job owns the video
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(Video)
                    .where(Video.id == video_id, Video.status == VideoStatus.PENDING)
                    .values(
                        status=VideoStatus.PROCESSING,
                        processingJobId=job_id,
                        errorMessage=None,
                        updatedAt=utcnow(),
                    )
                )
                if result.rowcount == 1:
                    return VideoStatus.PENDING

                row = conn.execute(select(Video).where(Video.id == video_id)).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e

        if row is None:
            raise NotFoundError(f"Video {video_id} not found", details={"videoId": video_id})
        status = VideoStatus(row["status"])
        if status == VideoStatus.PROCESSING and row["processingJobId"] != job_id:
            raise JobConflictError(
                f"Video {video_id} is already being processed by job {row['processingJobId']}",
                details={"videoId": video_id, "processingJobId": row["processingJobId"]},
            )
        return status

    def mark_ready(
        self,
        video_id: str,
        job_id: str,
        embed_url: Optional[str],
        playback_url: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> bool:
        """PROCESSING → READY for the owning job.

        Returns:
            True if written, False if the video was already READY
        """
        values = dict(
            status=VideoStatus.READY,
            processingJobId=None,
            errorMessage=None,
            processedAt=utcnow(),
            updatedAt=utcnow(),
        )
        if embed_url:
            values["embedUrl"] = embed_url
        if playback_url:
            values["externalPlaybackUrl"] = playback_url
        if duration is not None:
            values["duration"] = duration

        return self._terminal_write(
            video_id,
            job_id,
            VideoStatus.READY,
            (Video.status == VideoStatus.PROCESSING, Video.processingJobId == job_id),
            values,
        )

    def mark_failed(self, video_id: str, job_id: Optional[str], error_message: str) -> bool:
        """PENDING/PROCESSING → FAILED for the owning job (or an unowned video).

        Returns:
            True if written, False if the video was already terminal
        """
        values = dict(
            status=VideoStatus.FAILED,
            processingJobId=None,
            errorMessage=error_message or "Unknown error",
            updatedAt=utcnow(),
        )
        owner = or_(Video.processingJobId.is_(None), Video.processingJobId == job_id)
        return self._terminal_write(
            video_id,
            job_id,
            VideoStatus.FAILED,
            (Video.status.in_([VideoStatus.PENDING, VideoStatus.PROCESSING]), owner),
            values,
        )

    # --- helpers ---

    def _terminal_write(self, video_id, job_id, target: VideoStatus, conditions, values) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(Video).where(Video.id == video_id, *conditions).values(**values)
                )
                if result.rowcount == 1:
                    logger.info("Video %s → %s (job %s)", video_id, target.value, job_id)
                    return True
                row = conn.execute(select(Video).where(Video.id == video_id)).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e

        if row is None:
            raise NotFoundError(f"Video {video_id} not found", details={"videoId": video_id})
        status = VideoStatus(row["status"])
        if status.is_terminal:
            logger.info(
                "Video %s already %s, %s write skipped", video_id, status.value, target.value
            )
            return False
        raise JobConflictError(
            f"Video {video_id} is owned by job {row['processingJobId']}, not {job_id}",
            details={"videoId": video_id, "processingJobId": row["processingJobId"]},
        )

    def _fetch_one(self, video_id: str):
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(Video).where(Video.id == video_id)).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Video store unavailable: {e}") from e
