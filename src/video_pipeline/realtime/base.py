"""Broadcaster interface injected into the worker and the services."""

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..models import VIDEO_STATUS_UPDATE, VideoStatusEvent


def frame(event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Wire shape of every WebSocket message."""
    return {"type": event, "payload": payload}


class Broadcaster(ABC):
    """Best-effort push to connected clients.

    No queuing, no persistence, no replay: an event for a user without a live
    connection is dropped.
    """

    @abstractmethod
    def send_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Deliver to one user; False if the user is offline or delivery failed."""

    @abstractmethod
    def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        """Deliver to every connected session; returns the number reached."""

    def publish_status(self, event: VideoStatusEvent) -> int:
        return self.broadcast(VIDEO_STATUS_UPDATE, event.to_payload())
