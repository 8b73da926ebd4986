"""
Redis client factory with connection pooling, plus the pub/sub notifier that
delivers audit lifecycle notifications to the email / alerting side.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
import structlog

from site_audit.core.config import Settings, get_settings
from site_audit.pipeline.interfaces import NotificationKind
from site_audit.pipeline.models import utcnow

logger = structlog.get_logger(__name__)

_redis_pool: aioredis.ConnectionPool | None = None


def _get_pool() -> aioredis.ConnectionPool:
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.ConnectionPool.from_url(
            settings.REDIS_DSN,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=5.0,
            retry_on_timeout=True,
            health_check_interval=30,
            decode_responses=True,
        )
    return _redis_pool


async def get_redis_client() -> aioredis.Redis:
    """Get a Redis client from the connection pool."""
    return aioredis.Redis(connection_pool=_get_pool())


async def close_redis_pool() -> None:
    """Drop pooled connections; they are bound to the event loop that opened them."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None


class RedisNotifier:
    """Publishes notifications as JSON messages on NOTIFICATION_CHANNEL."""

    def __init__(self, redis: aioredis.Redis | None = None, settings: Settings | None = None):
        self.redis = redis
        self.settings = settings or get_settings()

    async def _client(self) -> aioredis.Redis:
        if self.redis is None:
            self.redis = await get_redis_client()
        return self.redis

    async def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        message = json.dumps(
            {"kind": kind.value, "sent_at": utcnow().isoformat(), "payload": payload},
            default=str,
        )
        client = await self._client()
        receivers = await client.publish(self.settings.NOTIFICATION_CHANNEL, message)
        logger.info(
            "Notification published",
            kind=kind.value,
            job_id=payload.get("job_id"),
            receivers=receivers,
        )
