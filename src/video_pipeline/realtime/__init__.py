"""Real-time status delivery over WebSocket."""

from .auth import TokenVerifier, extract_token
from .base import Broadcaster, frame
from .redis_fanout import RedisBroadcaster, RedisRelay
from .registry import ConnectionRegistry, LocalBroadcaster

__all__ = [
    "Broadcaster",
    "ConnectionRegistry",
    "LocalBroadcaster",
    "RedisBroadcaster",
    "RedisRelay",
    "TokenVerifier",
    "extract_token",
    "frame",
]
