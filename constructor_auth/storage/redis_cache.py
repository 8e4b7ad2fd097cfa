from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding JSON user snapshots.

    Entries carry no expiry; they live until a write invalidates them.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def from_client(cls, client: aioredis.Redis) -> "RedisCache":
        return cls("redis://injected", client=client)

    @staticmethod
    def user_id_key(user_id: int) -> str:
        return f"user:id:{user_id}"

    @staticmethod
    def username_key(username: str) -> str:
        return f"user:username:{username.strip().lower()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (TypeError, ValueError):
            # Unreadable entries are dropped so the next read goes to the store.
            await self.client.delete(key)
            return None

    async def set_json(self, keys: Iterable[str], payload: Dict[str, Any]) -> None:
        encoded = json.dumps(payload, default=str)
        pipe = self.client.pipeline()
        for key in keys:
            pipe.set(key, encoded)
        await pipe.execute()

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()
