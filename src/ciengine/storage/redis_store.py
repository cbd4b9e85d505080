from __future__ import annotations

import json
import re
from typing import Any, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import StorageError

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _escape_glob(prefix: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", prefix)


class RedisMetadataStore:
    """
    Metadata store on Redis.

    Values are JSON strings. `pop` uses GETDEL so two schedulers racing for
    the same queue entry cannot both claim it.
    """

    def __init__(self, client: "redis.Redis"):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> RedisMetadataStore:
        return cls(redis.from_url(url, decode_responses=True))

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.r.set(key, json.dumps(value), ex=ttl or None)
        except RedisError as e:
            raise StorageError(f"redis SET failed: {e}", details={"key": key}) from e

    async def get(self, key: str) -> Any:
        try:
            raw = await self.r.get(key)
        except RedisError as e:
            raise StorageError(f"redis GET failed: {e}", details={"key": key}) from e
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.r.delete(key))
        except RedisError as e:
            raise StorageError(f"redis DEL failed: {e}", details={"key": key}) from e

    async def pop(self, key: str) -> Any:
        try:
            raw = await self.r.getdel(key)
        except RedisError as e:
            raise StorageError(f"redis GETDEL failed: {e}", details={"key": key}) from e
        return json.loads(raw) if raw is not None else None

    async def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        try:
            async for key in self.r.scan_iter(match=_escape_glob(prefix) + "*", count=500):
                keys.append(key)
        except RedisError as e:
            raise StorageError(f"redis SCAN failed: {e}", details={"prefix": prefix}) from e
        return sorted(set(keys))

    async def close(self) -> None:
        await self.r.aclose()
