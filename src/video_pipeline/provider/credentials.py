"""OAuth2 credential holder for the video provider.

One instance is shared by the upload client and the worker. It keeps the
current access token with its expiry, builds the authorization URL for the
code grant and performs code exchange and refresh-token grants.
"""

import logging
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from ..errors import AuthorizationError, TransientNetworkError, ValidationError
from ..models import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderCredentials:
    """Thread-safe access token store with expiry tracking."""

    def __init__(self, config: ProviderConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._refresh_token: Optional[str] = config.refresh_token
        if config.access_token:
            self.set_token(config.access_token, config.token_expires_in)

    def set_token(
        self,
        token: str,
        expires_in: Optional[int] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._access_token = token
            self._expires_at = self.clock() + expires_in if expires_in else None
            if refresh_token:
                self._refresh_token = refresh_token
        logger.info(
            "Provider access token updated (expires in %s)",
            f"{expires_in}s" if expires_in else "unknown",
        )

    def get_token(self) -> Optional[str]:
        """Current token, or None once it has expired."""
        with self._lock:
            if self._expires_at is not None and self.clock() > self._expires_at:
                logger.warning("Provider access token has expired")
                self._access_token = None
                self._expires_at = None
            return self._access_token

    def require_token(self) -> str:
        token = self.get_token()
        if not token:
            raise AuthorizationError(
                "Provider access token not available. Complete OAuth authentication first."
            )
        return token

    @property
    def has_token(self) -> bool:
        return self.get_token() is not None

    @property
    def can_refresh(self) -> bool:
        return bool(self._refresh_token and self.config.client_id and self.config.client_secret)

    def invalidate(self) -> None:
        """Drop the access token after the provider rejected it."""
        with self._lock:
            self._access_token = None
            self._expires_at = None

    def authorization_url(self, state: Optional[str] = None) -> str:
        """URL that starts the authorization-code grant."""
        if not self.config.client_id or not self.config.redirect_uri:
            raise ValidationError("Provider client_id and redirect_uri must be configured")
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope,
        }
        if state:
            params["state"] = state
        return f"{self.config.api_base_url}/oauth/authorize?{urlencode(params)}"

    def exchange_code(self, http: httpx.Client, code: str) -> str:
        """Exchange an authorization code for an access token."""
        if not code:
            raise ValidationError("Authorization code is required")
        return self._token_request(
            http,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.redirect_uri,
            },
        )

    def refresh(self, http: httpx.Client) -> str:
        """Refresh-token grant."""
        if not self.can_refresh:
            raise AuthorizationError("No refresh token or client credentials configured")
        logger.info("Refreshing provider access token")
        return self._token_request(
            http, {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
        )

    def _token_request(self, http: httpx.Client, data: dict) -> str:
        if not self.config.client_id or not self.config.client_secret:
            raise AuthorizationError("Provider client credentials are not configured")
        try:
            response = http.post(
                f"{self.config.api_base_url}/oauth/access_token",
                data=data,
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Accept": "application/vnd.vimeo.*+json;version=3.4"},
                timeout=self.config.request_timeout_s,
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Token request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"Token endpoint returned {response.status_code}")
        if response.status_code != 200:
            logger.error(
                "Provider token grant %s rejected: %s %s",
                data.get("grant_type"),
                response.status_code,
                response.text[:200],
            )
            raise AuthorizationError(
                f"Failed to authenticate with provider ({response.status_code})"
            )

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise AuthorizationError("Token response did not include an access token")
        self.set_token(token, body.get("expires_in"), body.get("refresh_token"))
        return token
