from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable

import redis.asyncio as aioredis

from .models import InstanceEvent


class RedisEventBus:
    """Fans instance events from any process out to the leader over redis pub/sub."""

    def __init__(self, url: str, channel: str):
        self.channel = channel
        self._redis = aioredis.from_url(url)
        self._pubsub = None

    async def publish(self, event: InstanceEvent | str | bytes | dict[str, Any]) -> int:
        """Forward a payload unchanged (models are serialized as JSON)."""
        if isinstance(event, InstanceEvent):
            payload: str | bytes = event.model_dump_json()
        elif isinstance(event, dict):
            payload = json.dumps(event)
        else:
            payload = event
        return await self._redis.publish(self.channel, payload)

    async def messages(self) -> AsyncIterator[bytes]:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield message["data"]
        finally:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None

    async def close(self) -> None:
        await self._redis.aclose()


class LeadershipSignal:
    """Leader flag plus change notifications; election itself happens elsewhere."""

    def __init__(self, is_leader: bool = False):
        self._is_leader = bool(is_leader)
        self._callbacks: list[Callable[[bool], Any]] = []

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def subscribe(self, callback: Callable[[bool], Any]) -> None:
        self._callbacks.append(callback)

    def set(self, is_leader: bool) -> None:
        is_leader = bool(is_leader)
        if is_leader == self._is_leader:
            return
        self._is_leader = is_leader
        for cb in list(self._callbacks):
            cb(is_leader)
