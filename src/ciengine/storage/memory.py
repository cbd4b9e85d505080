"""In-process stores for local runs and tests."""

from __future__ import annotations

import copy
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..model import now_ms
from .base import Blob, BlobInfo


class InMemoryMetadataStore:
    """Dict-backed metadata store. Values are JSON round-tripped like a real store."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[int]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl * 1000 if ttl else None
        self._data[key] = (json.dumps(value), expires_at)

    async def get(self, key: str) -> Any:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        existed = self._live(key) is not None
        self._data.pop(key, None)
        return existed

    async def pop(self, key: str) -> Any:
        raw = self._live(key)
        if raw is None:
            return None
        del self._data[key]
        return json.loads(raw)

    async def list(self, prefix: str) -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)

    def __len__(self) -> int:
        return len(self._data)


class InMemoryBlobStore:
    def __init__(self):
        self._objects: Dict[str, Blob] = {}

    async def put(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> BlobInfo:
        blob = Blob(path=path, data=bytes(data), metadata={k: str(v) for k, v in (metadata or {}).items()})
        self._objects[path] = blob
        return BlobInfo(path=path, size=blob.size, metadata=dict(blob.metadata))

    async def get(self, path: str) -> Optional[Blob]:
        blob = self._objects.get(path)
        return copy.copy(blob) if blob is not None else None

    async def head(self, path: str) -> Optional[BlobInfo]:
        blob = self._objects.get(path)
        if blob is None:
            return None
        return BlobInfo(path=path, size=blob.size, metadata=dict(blob.metadata))

    async def list(self, prefix: str) -> List[BlobInfo]:
        return [
            BlobInfo(path=p, size=b.size, metadata=dict(b.metadata))
            for p, b in sorted(self._objects.items())
            if p.startswith(prefix)
        ]

    async def delete(self, path: str) -> bool:
        return self._objects.pop(path, None) is not None
