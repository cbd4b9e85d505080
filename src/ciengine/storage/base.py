"""Contracts for the metadata (key-value) and blob stores the engine runs on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class BlobInfo:
    """Listing/head entry for a stored blob."""
    path: str
    size: int
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Blob:
    path: str
    data: bytes
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


class MetadataStore(Protocol):
    """
    String key -> JSON-serializable value, with optional TTL (seconds).

    Eventually consistent across callers. `pop` is the one atomic primitive:
    it returns the value and deletes the key, and only one concurrent caller
    can win it.
    """

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def get(self, key: str) -> Any: ...

    async def delete(self, key: str) -> bool: ...

    async def pop(self, key: str) -> Any: ...

    async def list(self, prefix: str) -> List[str]: ...


class BlobStore(Protocol):
    """Object storage keyed by path, with small string metadata attachments."""

    async def put(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> BlobInfo: ...

    async def get(self, path: str) -> Optional[Blob]: ...

    async def head(self, path: str) -> Optional[BlobInfo]: ...

    async def list(self, prefix: str) -> List[BlobInfo]: ...

    async def delete(self, path: str) -> bool: ...
