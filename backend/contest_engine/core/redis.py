"""
Redis price mirror.

When REDIS_URL is configured, every accepted price is cached under
``price:{symbol}`` with a TTL and published on the ``price_updates`` channel
so other processes (or tools) can follow the feed. The engine never reads
prices back from Redis; the in-process cache is authoritative.
"""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

PRICE_CHANNEL = "price_updates"


class RedisPriceMirror:
    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 60):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    async def connect(cls, url: str, ttl_seconds: int = 60) -> Optional["RedisPriceMirror"]:
        """Connect and ping; returns None when Redis is unreachable."""
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=False)
        try:
            await client.ping()
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            await client.aclose()
            return None
        logger.info("Redis connected")
        return cls(client, ttl_seconds)

    async def mirror(self, symbol: str, price: str, timestamp: str) -> None:
        """Cache and publish one price. Failures are logged, never raised."""
        payload = json.dumps({"symbol": symbol, "price": price, "timestamp": timestamp})
        try:
            await self.redis.setex(f"price:{symbol}", self.ttl_seconds, payload)
            await self.redis.publish(PRICE_CHANNEL, payload)
        except Exception as e:
            logger.warning(f"Redis mirror failed for {symbol}: {e}")

    async def close(self) -> None:
        await self.redis.aclose()
