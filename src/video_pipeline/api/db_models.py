from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from video_pipeline.models import VideoStatus

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Video(Base):
    __tablename__ = "Video"
    __table_args__ = (UniqueConstraint("chapterId", "orderIndex", name="uq_video_chapter_order"),)

    id = Column(String, primary_key=True)
    chapterId = Column(String, nullable=False, index=True)  # noqa: N815
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    orderIndex = Column(Integer, nullable=False, default=0)  # noqa: N815
    duration = Column(Integer, nullable=True)  # seconds

    externalAssetId = Column(String, nullable=True)  # noqa: N815
    externalPlaybackUrl = Column(String, nullable=True)  # noqa: N815
    embedUrl = Column(String, nullable=True)  # noqa: N815

    status = Column(Enum(VideoStatus), nullable=False, default=VideoStatus.PENDING)
    processingJobId = Column(String, nullable=True)  # noqa: N815
    errorMessage = Column(Text, nullable=True)  # noqa: N815
    processedAt = Column(DateTime, nullable=True)  # noqa: N815

    createdAt = Column(DateTime, default=utcnow)  # noqa: N815
    updatedAt = Column(DateTime, default=utcnow, onupdate=utcnow)  # noqa: N815
