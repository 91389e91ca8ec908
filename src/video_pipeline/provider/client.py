"""REST client for the external video provider (Vimeo API shape).

Maps HTTP outcomes onto the pipeline error taxonomy:

- timeouts and transport failures, 429 and 5xx → TransientNetworkError
- 401/403 → AuthorizationError (a 401 also drops the cached token)
- 404 → NotFoundError
- other 4xx → ValidationError
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from ..errors import (
    AuthorizationError,
    NotFoundError,
    PipelineError,
    ProviderProcessingError,
    TransientNetworkError,
    ValidationError,
)
from ..models import ProviderConfig
from .credentials import ProviderCredentials

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/vnd.vimeo.*+json;version=3.4"
INVALID_TOKEN_ERROR_CODE = 8003

ASSET_ID_PATTERNS = [
    re.compile(r"player\.vimeo\.com/video/(\d+)"),
    re.compile(r"vimeo\.com/groups/[^/]+/videos/(\d+)"),
    re.compile(r"vimeo\.com/(?:videos/)?(\d+)"),
]


class TranscodeStatus(str, Enum):
    COMPLETE = "complete"
    IN_PROGRESS = "in_progress"
    ERROR = "error"
    UNKNOWN = "unknown"


class UploadSession(BaseModel):
    """Result of asking the provider for a TUS upload slot."""

    asset_id: str
    uri: str
    upload_link: str


class ProviderVideo(BaseModel):
    """The subset of asset metadata the pipeline reads."""

    asset_id: str
    name: Optional[str] = None
    link: Optional[str] = None
    player_embed_url: Optional[str] = None
    duration: Optional[int] = None
    upload_status: Optional[str] = None
    transcode_status: TranscodeStatus = TranscodeStatus.UNKNOWN
    play_status: Optional[str] = None
    privacy_view: Optional[str] = None

    @classmethod
    def from_api(cls, asset_id: str, body: Dict[str, Any]) -> "ProviderVideo":
        # Transcode/upload state is top-level in API 3.4, nested under status in older shapes
        status = body.get("status") if isinstance(body.get("status"), dict) else {}
        transcode = body.get("transcode") or status.get("transcode") or {}
        upload = body.get("upload") or status.get("upload") or {}
        try:
            transcode_status = TranscodeStatus(transcode.get("status"))
        except ValueError:
            transcode_status = TranscodeStatus.UNKNOWN
        return cls(
            asset_id=asset_id,
            name=body.get("name"),
            link=body.get("link"),
            player_embed_url=body.get("player_embed_url"),
            duration=body.get("duration"),
            upload_status=upload.get("status"),
            transcode_status=transcode_status,
            play_status=(body.get("play") or {}).get("status"),
            privacy_view=(body.get("privacy") or {}).get("view"),
        )


class Readiness(BaseModel):
    ready: bool
    status: str
    message: str


def extract_asset_id(url: str) -> Optional[str]:
    """Pull the numeric asset id out of a provider page or player URL."""
    for pattern in ASSET_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


def embed_url_for(asset_id: str, player_base_url: str = "https://player.vimeo.com/video") -> str:
    return f"{player_base_url.rstrip('/')}/{asset_id}"


class ProviderClient:
    """Synchronous provider API client built on httpx."""

    def __init__(
        self,
        config: ProviderConfig,
        credentials: ProviderCredentials,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.credentials = credentials
        self.http = http or httpx.Client(timeout=config.request_timeout_s)

    def close(self) -> None:
        self.http.close()

    def _request(
        self,
        method: str,
        path: str,
        expected=(200,),
        authenticated: bool = True,
        **kwargs,
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.config.api_base_url}{path}"
        headers = {"Accept": ACCEPT_HEADER, **kwargs.pop("headers", {})}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.credentials.require_token()}"
        kwargs.setdefault("timeout", self.config.request_timeout_s)

        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if response.status_code in expected:
            return response
        self._raise_for_status(method, path, response)
        return response

    def _raise_for_status(self, method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        error_code = None
        message = response.reason_phrase
        try:
            body = response.json()
            if isinstance(body, dict):
                error_code = body.get("error_code")
                message = body.get("error") or body.get("developer_message") or message
        except ValueError:
            pass

        details = {"providerStatus": status}
        if status == 401 or error_code == INVALID_TOKEN_ERROR_CODE:
            self.credentials.invalidate()
            raise AuthorizationError(f"Provider rejected the access token: {message}", details)
        if status == 403:
            raise AuthorizationError(f"Provider denied {method} {path}: {message}", details)
        if status == 404:
            raise NotFoundError(f"Provider resource not found: {path}", details)
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{method} {path} returned {status}", details)
        raise ValidationError(f"{method} {path} rejected ({status}): {message}", details)

    def create_upload_session(
        self, size: int, title: str, description: Optional[str] = None
    ) -> UploadSession:
        """Ask for a TUS upload link sized for ``size`` bytes."""
        privacy: Dict[str, Any] = {"view": self.config.privacy_view}
        if self.config.embed_domains:
            privacy["embed"] = "whitelist"
            privacy["domains"] = self.config.embed_domains

        response = self._request(
            "POST",
            "/me/videos",
            expected=(200, 201),
            json={
                "upload": {"approach": "tus", "size": size},
                "name": title,
                "description": description or "",
                "privacy": privacy,
            },
        )
        body = response.json()
        uri = body.get("uri") or ""
        upload_link = (body.get("upload") or {}).get("upload_link")
        if not uri or not upload_link:
            raise ProviderProcessingError("Provider did not return an upload link")

        session = UploadSession(asset_id=uri.rstrip("/").split("/")[-1], uri=uri, upload_link=upload_link)
        logger.info("Provider upload session created for asset %s", session.asset_id)
        return session

    def get_video(self, asset_id: str) -> ProviderVideo:
        response = self._request("GET", f"/videos/{asset_id}")
        return ProviderVideo.from_api(asset_id, response.json())

    def check_readiness(self, asset_id: str) -> Readiness:
        """Whether the asset can be played by viewers, with the blocking reason."""
        try:
            video = self.get_video(asset_id)
        except AuthorizationError:
            return Readiness(
                ready=False, status="auth_error", message="Authentication required to access this video"
            )
        except NotFoundError:
            return Readiness(
                ready=False, status="not_found", message="Video not found or has been deleted"
            )
        except PipelineError as e:
            logger.error("Readiness check failed for asset %s: %s", asset_id, e)
            return Readiness(ready=False, status="error", message="Unable to check video status")

        if video.upload_status and video.upload_status != "complete":
            return Readiness(ready=False, status="uploading", message="Video is still being uploaded")
        if video.transcode_status != TranscodeStatus.COMPLETE:
            return Readiness(ready=False, status="processing", message="Video is being processed")
        if video.play_status and video.play_status != "available":
            return Readiness(
                ready=False, status="unavailable", message="Video is not available for playback"
            )
        if video.privacy_view in ("nobody", "password"):
            return Readiness(
                ready=False,
                status="private",
                message="Video is set to private. Please check privacy settings.",
            )
        return Readiness(ready=True, status="ready", message="Video is ready to play")

    def delete_video(self, asset_id: str) -> None:
        self._request("DELETE", f"/videos/{asset_id}", expected=(204,))
        logger.info("Deleted provider asset %s", asset_id)

    def verify_credentials(self) -> bool:
        """Check ``GET /me`` with the current token."""
        try:
            self._request("GET", "/me")
        except AuthorizationError as e:
            logger.warning("Provider credential check failed: %s", e)
            return False
        return True

    def refresh_credentials(self) -> str:
        return self.credentials.refresh(self.http)

    def exchange_code(self, code: str) -> str:
        return self.credentials.exchange_code(self.http, code)

    def embed_url_for(self, asset_id: str) -> str:
        return embed_url_for(asset_id, self.config.player_base_url)
