"""Pydantic models for configuration and data validation."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

VIDEO_STATUS_UPDATE = "VIDEO_STATUS_UPDATE"
CONNECTED = "connected"
PROCESS_VIDEO_JOB = "process-video"


class DatabaseConfig(BaseModel):
    """Relational store holding the video table."""

    url: str = Field(
        default="sqlite:///./video_pipeline.db", description="SQLAlchemy database URL"
    )


class QueueConfig(BaseModel):
    """Job queue broker and default job options."""

    db_path: str = Field(default="queue.db", description="SQLite broker database path")
    job_name: str = Field(default=PROCESS_VIDEO_JOB, description="Job type for video processing")
    attempts: int = Field(default=3, ge=1, description="Max attempts per job")
    backoff_type: Literal["exponential", "fixed"] = Field(
        default="exponential", description="Retry backoff strategy"
    )
    backoff_delay_ms: int = Field(default=2000, ge=0, description="Base retry delay in ms")
    remove_on_complete: int = Field(
        default=10, ge=0, description="Completed jobs kept for introspection"
    )
    remove_on_fail: int = Field(default=5, ge=0, description="Failed jobs kept for introspection")
    stale_timeout_s: int = Field(
        default=600, gt=0, description="Active jobs without heartbeat for this long are redelivered"
    )
    lookup_timeout_s: float = Field(
        default=2.0, gt=0.0, description="Timeout for a single live job lookup from the API"
    )


class ProviderConfig(BaseModel):
    """External video provider (OAuth2 + TUS upload)."""

    api_base_url: str = Field(default="https://api.vimeo.com", description="Provider REST root")
    player_base_url: str = Field(
        default="https://player.vimeo.com/video", description="Embed player root"
    )
    access_token: Optional[str] = Field(default=None, description="OAuth2 bearer token")
    refresh_token: Optional[str] = Field(default=None, description="OAuth2 refresh token")
    token_expires_in: Optional[int] = Field(
        default=None, gt=0, description="Seconds until the configured access token expires"
    )
    client_id: Optional[str] = Field(default=None, description="OAuth2 client id")
    client_secret: Optional[str] = Field(default=None, description="OAuth2 client secret")
    redirect_uri: Optional[str] = Field(default=None, description="OAuth2 redirect URI")
    scope: str = Field(default="private upload video_files", description="OAuth2 scopes")
    request_timeout_s: float = Field(default=30.0, gt=0.0, description="REST call timeout")
    upload_timeout_s: float = Field(default=300.0, gt=0.0, description="TUS transfer timeout")
    chunk_size: int = Field(
        default=8 * 1024 * 1024, gt=0, description="Bytes read per chunk while streaming"
    )
    privacy_view: Literal["anybody", "nobody", "contacts", "password", "disable", "unlisted"] = (
        Field(default="nobody", description="Who may view the asset on the provider site")
    )
    embed_domains: List[str] = Field(
        default_factory=list, description="Domains allowed to embed the player"
    )


class WorkerConfig(BaseModel):
    """Processing worker runtime."""

    concurrency: int = Field(default=2, ge=1, description="Concurrent job slots per process")
    idle_sleep_s: float = Field(default=1.0, gt=0.0, description="Sleep when the queue is empty")
    poll_interval_s: float = Field(
        default=10.0, ge=0.0, description="Delay between provider status polls"
    )
    max_processing_wait_s: float = Field(
        default=3600.0, gt=0.0, description="Give up on the provider after this long"
    )
    store_write_attempts: int = Field(
        default=5, ge=1, description="Local retries for terminal store writes"
    )
    store_write_backoff_s: float = Field(
        default=0.2, ge=0.0, description="Base delay for terminal store write retries"
    )
    embedded: bool = Field(
        default=False, description="Run worker threads inside the API process"
    )


class RealtimeConfig(BaseModel):
    """WebSocket delivery."""

    backend: Literal["local", "redis"] = Field(
        default="local", description="In-process registry or Redis pub/sub fan-out"
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the fan-out")
    channel: str = Field(default="video-pipeline:events", description="Pub/sub channel")
    presence_key: str = Field(
        default="video-pipeline:presence", description="Redis hash of online user ids"
    )
    send_timeout_s: float = Field(default=5.0, gt=0.0, description="Per-delivery timeout")


class AuthConfig(BaseModel):
    """Bearer credential validation for WebSocket connections."""

    jwt_secret: str = Field(default="change-me", description="HMAC secret for access tokens")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    cookie_names: List[str] = Field(
        default_factory=lambda: ["accessToken", "client-access-token-win"],
        description="Cookies checked for an access token",
    )


class LoggingConfig(BaseModel):
    """Standard library logging setup."""

    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(
        default="%(asctime)s %(levelname)s %(name)s: %(message)s",
        description="logging.basicConfig format string",
    )


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)


class VideoStatus(str, Enum):
    """Video lifecycle.

    State transitions:
        PENDING → PROCESSING     (worker claims the job)
        PROCESSING → READY       (provider finished transcoding)
        PROCESSING → FAILED      (provider error, timeout, retries exhausted)
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.READY, VideoStatus.FAILED)


class VideoRecord(BaseModel):
    """A row of the video table."""

    id: str
    chapter_id: str
    title: str
    description: Optional[str] = None
    order_index: int = 0
    duration: Optional[int] = None
    external_asset_id: Optional[str] = None
    external_playback_url: Optional[str] = None
    embed_url: Optional[str] = None
    status: VideoStatus = VideoStatus.PENDING
    processing_job_id: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProcessVideoPayload(BaseModel):
    """Job payload for ``process-video``."""

    videoId: str = Field(..., min_length=1)  # noqa: N815
    externalAssetId: str = Field(..., min_length=1)  # noqa: N815
    title: str
    chapterId: str = Field(..., min_length=1)  # noqa: N815


class VideoStatusEvent(BaseModel):
    """Payload of a ``VIDEO_STATUS_UPDATE`` event."""

    videoId: str  # noqa: N815
    status: VideoStatus
    progress: int = Field(ge=0, le=100)
    errorMessage: Optional[str] = None  # noqa: N815

    @field_validator("errorMessage")
    @classmethod
    def error_only_when_failed(cls, v: Optional[str], info) -> Optional[str]:
        """An error message only accompanies FAILED."""
        if v is not None and info.data.get("status") != VideoStatus.FAILED:
            raise ValueError("errorMessage is only allowed with FAILED")
        return v

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class Identity(BaseModel):
    """Authenticated user behind a WebSocket connection."""

    userId: str  # noqa: N815
    email: Optional[str] = None
    role: Optional[str] = None
