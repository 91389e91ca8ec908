"""External video provider: OAuth2 credentials, REST client and TUS upload."""

from .client import (
    ProviderClient,
    ProviderVideo,
    Readiness,
    TranscodeStatus,
    UploadSession,
    embed_url_for,
    extract_asset_id,
)
from .credentials import ProviderCredentials
from .upload import ResumableUploader, UploadResult

__all__ = [
    "ProviderClient",
    "ProviderCredentials",
    "ProviderVideo",
    "Readiness",
    "ResumableUploader",
    "TranscodeStatus",
    "UploadResult",
    "UploadSession",
    "embed_url_for",
    "extract_asset_id",
]
