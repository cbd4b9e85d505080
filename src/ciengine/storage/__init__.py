from __future__ import annotations

from pathlib import Path

from ..settings import Settings
from .base import Blob, BlobInfo, BlobStore, MetadataStore
from .local import LocalBlobStore
from .memory import InMemoryBlobStore, InMemoryMetadataStore
from .redis_store import RedisMetadataStore


def build_metadata_store(settings: Settings) -> MetadataStore:
    if settings.metadata_backend == "redis":
        return RedisMetadataStore.from_url(settings.redis_url)
    if settings.metadata_backend == "memory":
        return InMemoryMetadataStore()
    raise ValueError(f"Unknown metadata backend: {settings.metadata_backend!r}")


def build_blob_store(settings: Settings, name: str) -> BlobStore:
    """`name` separates buckets (e.g. 'cache', 'state') under one blob root."""
    if settings.blob_backend == "local":
        return LocalBlobStore(Path(settings.blob_root) / name)
    if settings.blob_backend == "memory":
        return InMemoryBlobStore()
    raise ValueError(f"Unknown blob backend: {settings.blob_backend!r}")


__all__ = [
    "Blob",
    "BlobInfo",
    "BlobStore",
    "MetadataStore",
    "LocalBlobStore",
    "InMemoryBlobStore",
    "InMemoryMetadataStore",
    "RedisMetadataStore",
    "build_metadata_store",
    "build_blob_store",
]
