"""
config/redis_client.py
Async Redis client for caching, the JWT deny-list, hospital geo queries
and rate limiting.
"""

import json
from typing import Any, Iterable, Optional, Tuple
import redis.asyncio as aioredis

from config.settings import settings


HOSPITALS_GEO_KEY = "hospitals:geo"


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Hospital Geo Index ────────────────────────────────────
    async def has_hospital_index(self) -> bool:
        return await self.client.exists(HOSPITALS_GEO_KEY) == 1

    async def index_hospitals(
        self,
        locations: Iterable[Tuple[str, float, float]],
        ttl: int = settings.REDIS_CACHE_TTL,
    ) -> None:
        """Rebuild the hospital GEO set from (hospital_id, lng, lat) triples."""
        values: list = []
        for hospital_id, lng, lat in locations:
            values.extend([lng, lat, hospital_id])
        await self.client.delete(HOSPITALS_GEO_KEY)
        if values:
            await self.client.geoadd(HOSPITALS_GEO_KEY, values)
            await self.client.expire(HOSPITALS_GEO_KEY, ttl)

    async def add_hospital_location(self, hospital_id: str, lng: float, lat: float) -> None:
        """Add one hospital to the GEO set, if the set has been built."""
        if await self.has_hospital_index():
            await self.client.geoadd(HOSPITALS_GEO_KEY, [lng, lat, hospital_id])

    async def get_nearby_hospitals(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        count: Optional[int] = None,
    ) -> list[dict]:
        """Hospital IDs within radius_km of the given coordinates, nearest first."""
        results = await self.client.georadius(
            HOSPITALS_GEO_KEY,
            lng, lat,
            radius_km,
            unit="km",
            withdist=True,
            count=count,
            sort="ASC",
        )
        return [
            {"hospital_id": r[0], "distance_km": float(r[1])}
            for r in results
        ]

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count <= limit
