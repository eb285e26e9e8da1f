"""
Storefront — イベント発行

Redis Pub/Sub の order_events チャネルへ JSON で発行する。
購読側（集計・通知など）はこのサービスの外にある。
"""

import json
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel


class EventPublisher(Protocol):
    async def publish(self, event: BaseModel) -> None: ...


class RedisEventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = "order_events") -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )


class NullPublisher:
    async def publish(self, event: BaseModel) -> None:
        return None
