"""
Inventory Service — event publishers

RedisPublisher sends straight to a Redis Pub/Sub channel. It is what the
outbox dispatcher delivers through; the engine itself is given an
OutboxPublisher so that events are only written, inside the caller's
transaction, and leave the process after commit.

Note: Redis Pub/Sub is fire-and-forget. Subscribers that are down while a
message is sent never see it.
"""

import json
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import PublishError
from .events import OutboxEvent
from .repository import Repository, Transaction


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: dict, tx: Transaction | None = None): ...


class RedisPublisher:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, topic: str, payload: dict, tx: Transaction | None = None) -> None:
        try:
            await self.redis.publish(topic, json.dumps(payload, default=str))
        except RedisError as exc:
            raise PublishError(topic, exc) from exc


class OutboxPublisher:
    def __init__(self, repo: Repository):
        self.repo = repo

    async def publish(
        self, topic: str, payload: dict, tx: Transaction | None = None
    ) -> OutboxEvent:
        return await self.repo.add_outbox_event(topic, payload, tx=tx)
