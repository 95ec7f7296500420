"""
Realtime fan-out

Publishes row change events on Redis pub/sub after every durable write so
connected dashboards can re-sort their lists without polling.

Channel:  {prefix}:{table}          e.g. inbox:conversations
Payload:  {"type": "INSERT"|"UPDATE", "table": ..., "id": ..., "at": ...}
"""

import time
import orjson
import structlog
import redis.asyncio as redis
from typing import Optional

from config import get_settings

logger = structlog.get_logger("realtime")


class RealtimePublisher:
    def __init__(self, redis_client: Optional[redis.Redis], prefix: str = None):
        self.redis = redis_client
        self.prefix = prefix or get_settings().REALTIME_CHANNEL_PREFIX

    def channel(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    async def publish(self, table: str, event_type: str, record_id: str):
        """
        Best effort: the write is already durable, so a Redis hiccup only
        costs dashboards one live update (they resync on reconnect).
        """
        if self.redis is None:
            return

        payload = orjson.dumps({
            "type": event_type,
            "table": table,
            "id": record_id,
            "at": time.time(),
        })
        try:
            await self.redis.publish(self.channel(table), payload)
        except Exception as e:
            logger.warning("Realtime publish failed", table=table, id=record_id, error=str(e))

    async def inserted(self, table: str, record_id: str):
        await self.publish(table, "INSERT", record_id)

    async def updated(self, table: str, record_id: str):
        await self.publish(table, "UPDATE", record_id)
