"""Tests for the TUS upload flow."""

import io

import httpx
import pytest

from video_pipeline.errors import (
    AuthorizationError,
    ProviderProcessingError,
    TransientNetworkError,
    ValidationError,
)
from video_pipeline.models import ProviderConfig
from video_pipeline.provider import ProviderClient, ProviderCredentials, ResumableUploader
from video_pipeline.provider.upload import iter_chunks, stream_size


@pytest.fixture
def uploader(fake_provider):
    config = ProviderConfig(access_token="test-token", chunk_size=4)
    client = ProviderClient(config, ProviderCredentials(config), fake_provider.client())
    yield ResumableUploader(client)
    client.close()


class TestSubmitUpload:
    def test_upload_creates_asset(self, uploader, fake_provider):
        progress = []

        result = uploader.submit_upload(
            io.BytesIO(b"0123456789"),
            "Lesson 1",
            "First lesson",
            on_progress=lambda sent, total: progress.append((sent, total)),
        )

        assert result.external_asset_id == "1001"
        assert result.embed_url == "https://player.vimeo.com/video/1001"
        assert result.asset_url == "https://vimeo.com/1001"
        assert fake_provider.uploads["1001"] == b"0123456789"
        assert progress == [(4, 10), (8, 10), (10, 10)]

    def test_session_request(self, uploader, fake_provider):
        uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")

        create = fake_provider.assets["1001"]["create"]
        assert create["upload"] == {"approach": "tus", "size": 3}
        assert create["name"] == "Lesson 1"
        assert create["privacy"]["view"] == "nobody"

    def test_tus_headers(self, uploader, fake_provider):
        uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")

        patch = next(r for r in fake_provider.requests if r.method == "PATCH")
        assert patch.headers["tus-resumable"] == "1.0.0"
        assert patch.headers["upload-offset"] == "0"
        assert patch.headers["content-type"] == "application/offset+octet-stream"

    def test_embed_domains_whitelist(self, fake_provider):
        config = ProviderConfig(access_token="test-token", embed_domains=["lms.example.com"])
        client = ProviderClient(config, ProviderCredentials(config), fake_provider.client())
        ResumableUploader(client).submit_upload(io.BytesIO(b"abc"), "Lesson 1")

        privacy = fake_provider.assets["1001"]["create"]["privacy"]
        assert privacy["embed"] == "whitelist"
        assert privacy["domains"] == ["lms.example.com"]

    def test_empty_file_rejected(self, uploader, fake_provider):
        with pytest.raises(ValidationError):
            uploader.submit_upload(io.BytesIO(b""), "Lesson 1")
        assert fake_provider.requests == []

    def test_title_required(self, uploader):
        with pytest.raises(ValidationError):
            uploader.submit_upload(io.BytesIO(b"abc"), "  ")

    def test_missing_token_fails_before_provider_call(self, fake_provider):
        config = ProviderConfig()
        client = ProviderClient(config, ProviderCredentials(config), fake_provider.client())

        with pytest.raises(AuthorizationError):
            ResumableUploader(client).submit_upload(io.BytesIO(b"abc"), "Lesson 1")
        assert fake_provider.requests == []

    def test_rejected_token(self, uploader, fake_provider):
        fake_provider.valid_tokens.clear()
        with pytest.raises(AuthorizationError):
            uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")

    def test_failed_transfer_is_transient(self, uploader, fake_provider):
        fake_provider.upload_status = 500
        with pytest.raises(TransientNetworkError) as exc_info:
            uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")
        assert exc_info.value.details["externalAssetId"] == "1001"

    def test_transfer_auth_rejection(self, uploader, fake_provider):
        fake_provider.upload_status = 401
        with pytest.raises(AuthorizationError):
            uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")
        assert not uploader.client.credentials.has_token

    def test_incomplete_metadata(self, uploader, fake_provider):
        original = fake_provider.handler

        def handler(request):
            response = original(request)
            if request.method == "GET" and request.url.path.startswith("/videos/"):
                return httpx.Response(200, json={"uri": request.url.path})
            return response

        uploader.client.http = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderProcessingError):
            uploader.submit_upload(io.BytesIO(b"abc"), "Lesson 1")


class TestStreamHelpers:
    def test_stream_size_keeps_position(self):
        stream = io.BytesIO(b"0123456789")
        stream.seek(3)
        assert stream_size(stream) == 7
        assert stream.tell() == 3

    def test_stream_size_of_file(self, tmp_path):
        path = tmp_path / "clip.mp4"
        path.write_bytes(b"x" * 100)
        with open(path, "rb") as f:
            assert stream_size(f) == 100

    def test_iter_chunks(self):
        chunks = list(iter_chunks(io.BytesIO(b"abcdefg"), 3, 7))
        assert chunks == [b"abc", b"def", b"g"]
