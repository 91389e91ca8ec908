"""Tests for upload submission and resubmission."""

import io

import pytest

from video_pipeline.errors import (
    JobConflictError,
    NotFoundError,
    QueueUnavailableError,
    StoreUnavailableError,
    TransientNetworkError,
    ValidationError,
)
from video_pipeline.models import VideoStatus
from video_pipeline.queue import JobState, SQLiteQueue
from video_pipeline.services import PipelineServices


class UnreachableQueue(SQLiteQueue):
    """SQLite broker whose producer side can be switched off."""

    down = True

    def enqueue(self, name, data, options=None):
        if self.down:
            raise QueueUnavailableError("Queue broker unavailable: connection refused")
        return super().enqueue(name, data, options)


@pytest.fixture
def outage_services(config, fake_provider, broadcaster):
    svc = PipelineServices(
        config,
        queue=UnreachableQueue(config.queue.db_path),
        http=fake_provider.client(),
        broadcaster=broadcaster,
    )
    svc.store.create_tables()
    yield svc
    svc.close()


def _upload(services, order_index=0, chapter="chapter-1"):
    return services.ingest.submit(
        chapter, io.BytesIO(b"fake video bytes"), "Intro", "About the course", order_index
    )


class TestSubmit:
    def test_submit_queues_job(self, services, fake_provider):
        result = _upload(services)

        assert result.video.status == VideoStatus.PENDING
        assert result.video.processing_job_id is None
        assert result.video.external_asset_id == "1001"
        assert result.video.embed_url == "https://player.vimeo.com/video/1001"
        assert result.video.description == "About the course"

        job = services.queue.get_job(result.job_id)
        assert job.state == JobState.WAITING
        assert job.data == {
            "videoId": result.video.id,
            "externalAssetId": "1001",
            "title": "Intro",
            "chapterId": "chapter-1",
        }
        assert job.max_attempts == 3

    def test_job_options_follow_config(self, services):
        options = services.ingest.job_options("video-1")
        assert options.dedupe_key == "video-1"
        assert options.attempts == 3
        assert options.backoff.type == "exponential"
        assert options.remove_on_complete == 10
        assert options.remove_on_fail == 5

    def test_duplicate_order_index_rejected_before_upload(self, services, fake_provider):
        _upload(services, order_index=1)
        uploads_before = len(fake_provider.uploads)

        with pytest.raises(ValidationError):
            _upload(services, order_index=1)
        assert len(fake_provider.uploads) == uploads_before

    def test_failed_upload_creates_no_video(self, services, fake_provider):
        fake_provider.upload_status = 500

        with pytest.raises(TransientNetworkError):
            _upload(services)
        assert services.store.list_videos("chapter-1") == []

    def test_failed_row_insert_deletes_uploaded_asset(self, services, fake_provider, monkeypatch):
        def _store_down(**kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(services.store, "create_video", _store_down)

        with pytest.raises(StoreUnavailableError):
            _upload(services)
        assert "1001" in fake_provider.uploads
        assert "1001" not in fake_provider.assets
        assert [r.method for r in fake_provider.requests if r.url.path == "/videos/1001"] == [
            "GET",
            "DELETE",
        ]

    def test_failed_asset_delete_keeps_original_error(
        self, services, fake_provider, monkeypatch, caplog
    ):
        def _store_down(**kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(services.store, "create_video", _store_down)
        fake_provider.fail_status[("DELETE", "/videos/1001")] = 500

        with pytest.raises(StoreUnavailableError):
            _upload(services)
        assert "1001" in fake_provider.assets
        assert "orphaned" in caplog.text


class TestBrokerOutage:
    def test_video_stays_pending_without_job(self, outage_services):
        with pytest.raises(QueueUnavailableError) as exc_info:
            _upload(outage_services)

        video_id = exc_info.value.details["videoId"]
        video = outage_services.store.get_video(video_id)
        assert video.status == VideoStatus.PENDING
        assert video.processing_job_id is None
        assert outage_services.queue.find_live_job("process-video", video_id) is None
        assert outage_services.queue.counts()["total"] == 0

    def test_resubmit_after_recovery(self, outage_services, fake_provider, drain):
        with pytest.raises(QueueUnavailableError) as exc_info:
            _upload(outage_services)
        video_id = exc_info.value.details["videoId"]

        outage_services.queue.down = False
        result = outage_services.ingest.resubmit(video_id)
        fake_provider.transcode["1001"] = ["complete"]
        drain(outage_services.build_worker())

        assert outage_services.queue.get_job(result.job_id).state == JobState.COMPLETED
        assert outage_services.store.get_video(video_id).status == VideoStatus.READY

    def test_resubmit_while_still_down(self, outage_services):
        with pytest.raises(QueueUnavailableError) as exc_info:
            _upload(outage_services)
        video_id = exc_info.value.details["videoId"]

        with pytest.raises(QueueUnavailableError):
            outage_services.ingest.resubmit(video_id)
        assert outage_services.store.get_video(video_id).status == VideoStatus.PENDING


class TestResubmit:
    def test_live_job_conflicts(self, services):
        result = _upload(services)

        with pytest.raises(JobConflictError) as exc_info:
            services.ingest.resubmit(result.video.id)
        assert exc_info.value.details["jobId"] == result.job_id

    def test_processing_video_conflicts(self, services):
        result = _upload(services)
        services.store.mark_processing(result.video.id, result.job_id)

        with pytest.raises(JobConflictError):
            services.ingest.resubmit(result.video.id)

    def test_unknown_video(self, services):
        with pytest.raises(NotFoundError):
            services.ingest.resubmit("missing")

    def test_video_without_asset(self, services):
        video = services.store.create_video("chapter-1", "No asset", None)

        with pytest.raises(ValidationError):
            services.ingest.resubmit(video.id)
