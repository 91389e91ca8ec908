"""Wiring: builds the pipeline's collaborators from a PipelineConfig."""

import logging
from typing import Optional

import httpx

from .errors import ValidationError
from .ingest import VideoIngestService
from .models import PipelineConfig
from .processing import VideoProcessor
from .provider.client import ProviderClient
from .provider.credentials import ProviderCredentials
from .provider.upload import ResumableUploader
from .queue.backends import QueueBackend
from .queue.sqlite_backend import SQLiteQueue
from .queue.worker import QueueWorker
from .realtime.base import Broadcaster
from .realtime.redis_fanout import RedisBroadcaster
from .realtime.registry import ConnectionRegistry, LocalBroadcaster
from .store import VideoStore

logger = logging.getLogger(__name__)


def build_broadcaster(config: PipelineConfig, registry: ConnectionRegistry) -> Broadcaster:
    realtime = config.realtime
    if realtime.backend == "redis":
        if not realtime.redis_url:
            raise ValidationError("realtime.redis_url is required for the redis backend")
        return RedisBroadcaster.from_url(realtime.redis_url, realtime.channel, realtime.presence_key)
    return LocalBroadcaster(registry, send_timeout_s=realtime.send_timeout_s)


class PipelineServices:
    """Everything the API and the worker share, built once per process."""

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[VideoStore] = None,
        queue: Optional[QueueBackend] = None,
        http: Optional[httpx.Client] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.config = config
        self.store = store or VideoStore(config.database.url)
        self.queue = queue or SQLiteQueue(config.queue.db_path)
        self.credentials = ProviderCredentials(config.provider)
        self.provider = ProviderClient(config.provider, self.credentials, http)
        self.uploader = ResumableUploader(self.provider)
        self.registry = ConnectionRegistry(send_timeout_s=config.realtime.send_timeout_s)
        self.broadcaster = broadcaster or build_broadcaster(config, self.registry)
        self.processor = VideoProcessor(
            self.store, self.provider, self.broadcaster, config.worker
        )
        self.ingest = VideoIngestService(self.store, self.uploader, self.queue, config.queue)

    def build_worker(self, concurrency: Optional[int] = None) -> QueueWorker:
        worker = QueueWorker(
            self.queue,
            concurrency=concurrency or self.config.worker.concurrency,
            idle_sleep_s=self.config.worker.idle_sleep_s,
            stale_timeout_s=self.config.queue.stale_timeout_s,
        )
        worker.register(
            self.config.queue.job_name, self.processor.handle, self.processor.on_failed
        )
        worker.add_reconciler(self.processor.reconcile)
        return worker

    def check_standalone_worker(self) -> None:
        """A worker outside the API process can only reach clients through redis.

        Raises:
            ValidationError: realtime.backend is ``local``
        """
        if self.config.realtime.backend == "local":
            raise ValidationError(
                "A standalone worker cannot deliver status events with realtime.backend=local; "
                "use realtime.backend=redis, run the worker inside the API "
                "(worker.embedded=true), or pass --no-events"
            )

    def close(self) -> None:
        self.provider.close()
        if isinstance(self.broadcaster, RedisBroadcaster):
            self.broadcaster.close()
        if isinstance(self.queue, SQLiteQueue):
            self.queue.close()
        self.store.dispose()
