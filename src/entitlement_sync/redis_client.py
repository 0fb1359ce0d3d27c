"""Async Redis client wrapper."""

import json
from datetime import datetime
from typing import Any, cast

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class RedisClient:
    """Thin async Redis wrapper with JSON helpers."""

    def __init__(self, url: str, decode_responses: bool = True) -> None:
        self._url = url
        self._decode_responses = decode_responses
        self._client: Any = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is not None:
            return
        self._client = redis.from_url(  # type: ignore[no-untyped-call]
            self._url,
            decode_responses=self._decode_responses,
        )
        # Log only the host part, the URL may carry a password
        logger.info("Connected to Redis", host=self._url.rsplit("@", 1)[-1])

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    @property
    def client(self) -> Any:
        """Get the underlying Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def get(self, key: str) -> str | None:
        result = await self.client.get(key)
        return cast("str | None", result)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        result = await self.client.set(key, value, ex=ex)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        result = await self.client.delete(*keys)
        return cast("int", result)

    async def incr(self, key: str, ex: int | None = None) -> int:
        result = await self.client.incr(key)
        if ex is not None:
            await self.client.expire(key, ex)
        return cast("int", result)

    async def get_json(self, key: str) -> dict[str, Any] | list[Any] | None:
        data = await self.get(key)
        if data:
            result: dict[str, Any] | list[Any] = json.loads(data)
            return result
        return None

    async def set_json(
        self,
        key: str,
        value: dict[str, Any] | list[Any],
        ex: int | None = None,
    ) -> bool:
        return await self.set(key, json.dumps(value, cls=DateTimeEncoder), ex=ex)
