from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

from ..errors import StorageError
from .base import Blob, BlobInfo


class LocalBlobStore:
    """
    File-based blob store:
      root/
        <quoted path>            (object bytes)
        <quoted path>.meta.json  (metadata)

    Object paths are percent-quoted into flat file names, so keys such as
    `cache/https://github.com/org/repo-<sha>.tar.gz` are stored safely.

    File I/O runs in worker threads (`asyncio.to_thread`).
    """

    META_SUFFIX = ".meta.json"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, path: str) -> Path:
        return self.root / quote(path, safe="")

    def _meta_path(self, path: str) -> Path:
        return self.root / (quote(path, safe="") + self.META_SUFFIX)

    def _read_meta(self, path: str) -> Dict[str, str]:
        meta = self._meta_path(path)
        if not meta.exists():
            return {}
        try:
            return json.loads(meta.read_text(encoding="utf-8"))
        except ValueError:
            return {}

    # -------------------- blocking implementations --------------------

    def _put(self, path: str, data: bytes, meta: Dict[str, str]) -> None:
        obj = self._object_path(path)
        tmp = obj.with_name(obj.name + ".tmp")
        try:
            # write to tmp, then atomic rename
            tmp.write_bytes(data)
            tmp.replace(obj)
            self._meta_path(path).write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"blob put failed: {e}", details={"path": path}) from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def _get(self, path: str) -> Optional[Blob]:
        obj = self._object_path(path)
        if not obj.exists():
            return None
        try:
            data = obj.read_bytes()
        except OSError as e:
            raise StorageError(f"blob get failed: {e}", details={"path": path}) from e
        return Blob(path=path, data=data, metadata=self._read_meta(path))

    def _head(self, path: str) -> Optional[BlobInfo]:
        obj = self._object_path(path)
        if not obj.exists():
            return None
        return BlobInfo(path=path, size=obj.stat().st_size, metadata=self._read_meta(path))

    def _list(self, prefix: str) -> List[BlobInfo]:
        out: List[BlobInfo] = []
        for f in sorted(self.root.iterdir()):
            if not f.is_file() or f.name.endswith(self.META_SUFFIX) or f.name.endswith(".tmp"):
                continue
            path = unquote(f.name)
            if path.startswith(prefix):
                out.append(BlobInfo(path=path, size=f.stat().st_size, metadata=self._read_meta(path)))
        return out

    def _delete(self, path: str) -> bool:
        obj = self._object_path(path)
        existed = obj.exists()
        try:
            obj.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"blob delete failed: {e}", details={"path": path}) from e
        return existed

    # -------------------- BlobStore --------------------

    async def put(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> BlobInfo:
        meta = {k: str(v) for k, v in (metadata or {}).items()}
        await asyncio.to_thread(self._put, path, data, meta)
        return BlobInfo(path=path, size=len(data), metadata=meta)

    async def get(self, path: str) -> Optional[Blob]:
        return await asyncio.to_thread(self._get, path)

    async def head(self, path: str) -> Optional[BlobInfo]:
        return await asyncio.to_thread(self._head, path)

    async def list(self, prefix: str) -> List[BlobInfo]:
        return await asyncio.to_thread(self._list, prefix)

    async def delete(self, path: str) -> bool:
        return await asyncio.to_thread(self._delete, path)
