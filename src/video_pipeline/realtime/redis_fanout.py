"""Redis pub/sub fan-out for horizontally scaled API processes.

Workers publish through ``RedisBroadcaster``; every API process runs a
``RedisRelay`` that subscribes to the channel and delivers to its own
``ConnectionRegistry``. Presence is a Redis hash user id → instance id so a
worker can tell whether ``send_to_user`` has anyone to reach. A new connection
publishes a ``replace`` control message so any other instance holding the same
user closes its slot.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

import redis
import redis.asyncio as aioredis

from .base import Broadcaster
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)

# Control message: a user connected on another instance
REPLACE = "replace"


class RedisBroadcaster(Broadcaster):
    """Publishes events to the fan-out channel (sync, safe from worker threads)."""

    def __init__(self, client: redis.Redis, channel: str, presence_key: str):
        self.client = client
        self.channel = channel
        self.presence_key = presence_key

    @classmethod
    def from_url(cls, url: str, channel: str, presence_key: str) -> "RedisBroadcaster":
        client = redis.Redis.from_url(
            url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5
        )
        return cls(client, channel, presence_key)

    def send_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        try:
            if not self.client.hexists(self.presence_key, user_id):
                logger.info("User %s is offline, %s not delivered", user_id, event)
                return False
            self.client.publish(
                self.channel, json.dumps({"target": user_id, "type": event, "payload": payload})
            )
        except redis.RedisError as e:
            logger.error("Redis publish of %s for user %s failed: %s", event, user_id, e)
            return False
        return True

    def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        try:
            receivers = self.client.publish(
                self.channel, json.dumps({"target": None, "type": event, "payload": payload})
            )
        except redis.RedisError as e:
            logger.error("Redis broadcast of %s failed: %s", event, e)
            return 0
        logger.info("Published %s to %d API process(es)", event, receivers)
        return receivers

    def close(self) -> None:
        self.client.close()


class RedisRelay:
    """Subscribes to the fan-out channel and feeds the local registry."""

    def __init__(
        self,
        client: aioredis.Redis,
        registry: ConnectionRegistry,
        channel: str,
        presence_key: str,
        instance_id: Optional[str] = None,
    ):
        self.client = client
        self.registry = registry
        self.channel = channel
        self.presence_key = presence_key
        self.instance_id = instance_id or uuid.uuid4().hex
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_url(
        cls, url: str, registry: ConnectionRegistry, channel: str, presence_key: str
    ) -> "RedisRelay":
        client = aioredis.Redis.from_url(url, decode_responses=True)
        return cls(client, registry, channel, presence_key)

    async def start(self) -> None:
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen())
        logger.info("Relay %s subscribed to %s", self.instance_id, self.channel)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        # Drop presence entries owned by this process
        for user_id in self.registry.online_users():
            await self.mark_offline(user_id)
        await self.client.aclose()

    async def mark_online(self, user_id: str) -> None:
        """Take presence for ``user_id`` and tell other instances to drop theirs."""
        try:
            await self.client.hset(self.presence_key, user_id, self.instance_id)
            await self.client.publish(
                self.channel,
                json.dumps({"control": REPLACE, "target": user_id, "origin": self.instance_id}),
            )
        except redis.RedisError as e:
            logger.warning("Presence update for %s failed: %s", user_id, e)

    async def mark_offline(self, user_id: str) -> None:
        try:
            owner = await self.client.hget(self.presence_key, user_id)
            if owner == self.instance_id:
                await self.client.hdel(self.presence_key, user_id)
        except redis.RedisError as e:
            logger.warning("Presence cleanup for %s failed: %s", user_id, e)

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            await self.deliver(message.get("data"))

    async def deliver(self, raw: str) -> None:
        """Route one published message to the local registry."""
        try:
            message = json.loads(raw)
            control, target = message.get("control"), message["target"]
            if control is None:
                event, payload = message["type"], message.get("payload") or {}
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.warning("Ignoring malformed fan-out message: %s", e)
            return

        if control == REPLACE:
            await self._replaced(target, message.get("origin"))
            return
        if control is not None:
            logger.warning("Ignoring unknown fan-out control %r", control)
            return

        if target:
            await self.registry.send_to_user(target, event, payload)
        else:
            await self.registry.broadcast(event, payload)

    async def _replaced(self, user_id: str, origin: Optional[str]) -> None:
        if origin == self.instance_id or not self.registry.is_online(user_id):
            return
        try:
            owner = await self.client.hget(self.presence_key, user_id)
        except redis.RedisError as e:
            logger.warning("Presence lookup for %s failed: %s", user_id, e)
            return
        # A late message from an instance that has since lost the user is ignored
        if owner != self.instance_id:
            await self.registry.evict(user_id)
