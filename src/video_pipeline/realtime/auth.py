"""Bearer credential validation for WebSocket connections."""

import logging
from typing import Iterable, Mapping, Optional

import jwt

from ..errors import AuthorizationError
from ..models import AuthConfig, Identity

logger = logging.getLogger(__name__)


def extract_token(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    cookies: Mapping[str, str],
    cookie_names: Iterable[str],
) -> Optional[str]:
    """Find an access token: Authorization header, then ``token`` query, then cookies."""
    authorization = headers.get("authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()

    if query_params.get("token"):
        return query_params["token"]

    for name in cookie_names:
        if cookies.get(name):
            return cookies[name]
    return None


class TokenVerifier:
    """Validates HMAC-signed access tokens issued by the auth layer."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    @classmethod
    def from_config(cls, config: AuthConfig) -> "TokenVerifier":
        return cls(config.jwt_secret, config.jwt_algorithm)

    def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthorizationError("Authentication required")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected access token: %s", e)
            raise AuthorizationError("Invalid token") from e

        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise AuthorizationError("Token has no user id")
        return Identity(userId=str(user_id), email=claims.get("email"), role=claims.get("role"))

    def issue(self, user_id: str, **claims) -> str:
        """Sign a token (CLI and tests)."""
        return jwt.encode({"userId": user_id, **claims}, self.secret, algorithm=self.algorithm)
