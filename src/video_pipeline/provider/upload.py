"""Resumable (TUS) upload to the video provider.

Three phases:
1. Create an upload session (declared size + metadata) → upload link, asset id
2. One PATCH of the whole file from offset 0 with TUS headers
3. Read back the asset metadata to confirm the provider registered it

A failed transfer is never resumed from a partial offset: the caller restarts
the whole upload. Nothing is written to the video store here.
"""

import logging
import os
from typing import BinaryIO, Callable, Iterator, Optional

import httpx
from pydantic import BaseModel

from ..errors import (
    AuthorizationError,
    ProviderProcessingError,
    TransientNetworkError,
    ValidationError,
)
from .client import ProviderClient

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
TUS_CONTENT_TYPE = "application/offset+octet-stream"

ProgressCallback = Callable[[int, int], None]


class UploadResult(BaseModel):
    external_asset_id: str
    asset_url: str
    embed_url: str


def stream_size(stream: BinaryIO) -> int:
    """Remaining bytes in a seekable stream; the position is left unchanged."""
    try:
        return os.fstat(stream.fileno()).st_size - stream.tell()
    except (AttributeError, OSError, ValueError):
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        end = stream.tell()
        stream.seek(position)
        return end - position


def iter_chunks(
    stream: BinaryIO,
    chunk_size: int,
    total: int,
    on_progress: Optional[ProgressCallback] = None,
) -> Iterator[bytes]:
    sent = 0
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        sent += len(chunk)
        if on_progress:
            on_progress(sent, total)
        yield chunk


class ResumableUploader:
    """Streams a file to the provider with the TUS protocol."""

    def __init__(self, client: ProviderClient):
        self.client = client
        self.config = client.config

    def submit_upload(
        self,
        stream: BinaryIO,
        title: str,
        description: Optional[str] = None,
        size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload ``stream`` and return the confirmed asset.

        Raises:
            ValidationError: empty file or missing title
            AuthorizationError: credential missing or rejected
            TransientNetworkError: transfer failed; restart from the beginning
        """
        if not title or not title.strip():
            raise ValidationError("Video title is required")
        size = stream_size(stream) if size is None else size
        if size <= 0:
            raise ValidationError("Video file is empty")

        # Fail before the provider creates an orphan asset
        self.client.credentials.require_token()

        session = self.client.create_upload_session(size, title, description)
        logger.info(
            "Starting TUS upload of %d bytes for asset %s", size, session.asset_id
        )

        self._transfer(session.upload_link, stream, size, session.asset_id, on_progress)

        video = self.client.get_video(session.asset_id)
        if not video.link or not video.player_embed_url:
            raise ProviderProcessingError(
                f"Provider metadata for asset {session.asset_id} is incomplete",
                details={"externalAssetId": session.asset_id},
            )

        logger.info(
            "Upload of asset %s confirmed (%s)", session.asset_id, video.player_embed_url
        )
        return UploadResult(
            external_asset_id=session.asset_id,
            asset_url=video.link,
            embed_url=video.player_embed_url,
        )

    def _transfer(
        self,
        upload_link: str,
        stream: BinaryIO,
        size: int,
        asset_id: str,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        headers = {
            "Tus-Resumable": TUS_VERSION,
            "Upload-Offset": "0",
            "Content-Type": TUS_CONTENT_TYPE,
            "Content-Length": str(size),
        }
        try:
            response = self.client.http.patch(
                upload_link,
                content=iter_chunks(stream, self.config.chunk_size, size, on_progress),
                headers=headers,
                timeout=self.config.upload_timeout_s,
            )
        except httpx.TimeoutException as e:
            logger.error("TUS upload of asset %s timed out", asset_id)
            raise TransientNetworkError(
                f"Upload of asset {asset_id} timed out", details={"externalAssetId": asset_id}
            ) from e
        except httpx.TransportError as e:
            logger.error("TUS upload of asset %s failed: %s", asset_id, e)
            raise TransientNetworkError(
                f"Upload of asset {asset_id} failed: {e}", details={"externalAssetId": asset_id}
            ) from e

        if response.status_code in (401, 403):
            self.client.credentials.invalidate()
            raise AuthorizationError(
                f"Provider rejected the upload ({response.status_code})",
                details={"externalAssetId": asset_id},
            )
        if response.status_code != 204:
            raise TransientNetworkError(
                f"TUS upload failed with status {response.status_code}",
                details={"externalAssetId": asset_id, "providerStatus": response.status_code},
            )

        offset = response.headers.get("Upload-Offset")
        if offset is not None and offset.isdigit() and int(offset) != size:
            raise TransientNetworkError(
                f"TUS upload incomplete: {offset}/{size} bytes accepted",
                details={"externalAssetId": asset_id},
            )
