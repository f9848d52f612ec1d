"""
Rastuci 事件总线
基于 Redis Streams 实现持久化消息队列

主题约定：
- rs.orders.status_changed  订单状态变更
- rs.notifications.push     推送通知
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextlib import asynccontextmanager

import redis.asyncio as redis
from rastuci_core.config import get_settings
from rastuci_core.utils.logger import get_logger

logger = get_logger(__name__)

TOPIC_PREFIX = "rs."
ORDER_STATUS_CHANGED = "rs.orders.status_changed"
PUSH_NOTIFICATION = "rs.notifications.push"


class EventPayload:
    """事件载荷"""

    def __init__(
        self,
        event_id: Optional[str] = None,
        topic: str = "",
        order_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None
    ):
        self.event_id = event_id or str(uuid.uuid4())
        self.topic = topic
        self.order_id = order_id
        self.payload = payload or {}
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "ts": self.timestamp,
            "topic": self.topic,
            "order_id": self.order_id,
            "payload": self.payload
        }


class EventBus:
    """
    事件总线实现

    订单事件写入 Redis Stream（rs:events:{topic}），
    下游（推送服务、后台看板）以消费组方式读取
    """

    def __init__(self, redis_url: Optional[str] = None, stream_maxlen: int = 10000):
        self.redis_url = redis_url or get_settings().redis_url
        self.stream_maxlen = stream_maxlen
        self.redis_client: Optional[redis.Redis] = None

    @asynccontextmanager
    async def _get_redis(self):
        """获取 Redis 连接"""
        if not self.redis_client:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        try:
            yield self.redis_client
        except Exception:
            logger.error("Redis operation failed", exc_info=True)
            raise

    async def initialize(self) -> None:
        """初始化事件总线"""
        logger.info("Initializing event bus")

        async with self._get_redis() as r:
            await r.ping()

        logger.info("Event bus initialized")

    async def shutdown(self) -> None:
        """关闭事件总线"""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

        logger.info("Event bus shutdown complete")

    @staticmethod
    def stream_name(topic: str) -> str:
        return f"rs:events:{topic}"

    def build_message(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None
    ) -> EventPayload:
        """校验主题并生成事件载荷"""
        if not topic.startswith(TOPIC_PREFIX):
            raise ValueError(f"Invalid topic format: {topic}")

        return EventPayload(
            topic=topic,
            order_id=payload.get("order_id") or key,
            payload=payload
        )

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None
    ) -> str:
        """发布事件到指定主题，返回 event_id"""
        event = self.build_message(topic, payload, key)

        event_data = {
            "data": json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        }
        if key:
            event_data["key"] = key

        async with self._get_redis() as r:
            message_id = await r.xadd(
                self.stream_name(topic),
                event_data,
                maxlen=self.stream_maxlen,
                approximate=True
            )

        logger.debug(f"Published event to {topic}",
                     event_id=event.event_id,
                     message_id=message_id,
                     order_id=event.order_id)

        return event.event_id


# 全局事件总线实例
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """获取事件总线单例"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
