# cache.py
from __future__ import annotations

import hashlib
import posixpath
import shlex
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import CacheError, NoCacheableDirectories
from .model import CacheKey, now_ms
from .sandbox.base import ExecOptions, Sandbox
from .settings import Settings, get_settings
from .storage.base import BlobStore, MetadataStore

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching per build identity:
#   cache_key = "{repo}-{commit}" [+ "-" + sha256(manifest contents)[:12]]
#
# Manifests (lockfiles) are read from the sandbox in the order given and
# concatenated; missing ones are skipped. The order is NOT normalized, so
# ["a.lock", "b.lock"] and ["b.lock", "a.lock"] give different keys.
#
# Cache artifact:
#   a tar.gz of the dependency dirs that exist in the workspace, stored at
#   cache/{key}.tar.gz in the blob store, with metadata under cache:{key}
#   in the metadata store.
# ---------------------------------------------------------------------

KEY_HASH_LENGTH = 12
ARCHIVE_EXT = ".tar.gz"
CACHE_BLOB_PREFIX = "cache/"
CACHE_META_PREFIX = "cache:"

DEFAULT_CACHE_PATHS: Dict[str, List[str]] = {
    "node": ["node_modules", ".npm", ".yarn/cache"],
    "python": [".venv", "__pycache__", ".pip-cache", ".cache/pip"],
    "go": ["go/pkg/mod", ".cache/go-build"],
    "rust": ["target", ".cargo/registry", ".cargo/git"],
}

# manifest file name -> ecosystem
MANIFEST_PROJECT_TYPES: Dict[str, str] = {
    "package.json": "node",
    "package-lock.json": "node",
    "npm-shrinkwrap.json": "node",
    "yarn.lock": "node",
    "pnpm-lock.yaml": "node",
    "requirements.txt": "python",
    "pyproject.toml": "python",
    "poetry.lock": "python",
    "Pipfile.lock": "python",
    "uv.lock": "python",
    "go.mod": "go",
    "go.sum": "go",
    "Cargo.toml": "rust",
    "Cargo.lock": "rust",
}

# used when no manifest is recognized
FALLBACK_PROJECT_TYPES = ("node", "python", "go")


def cache_blob_path(key: str) -> str:
    return f"{CACHE_BLOB_PREFIX}{key}{ARCHIVE_EXT}"


def cache_meta_key(key: str) -> str:
    return f"{CACHE_META_PREFIX}{key}"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


def compute_cache_key(repo: str, commit: str, contents: Sequence[bytes]) -> str:
    """Pure key derivation from already-read manifest contents (in order)."""
    parts = [repo, commit]
    if contents:
        parts.append(_sha256_bytes(b"".join(contents))[:KEY_HASH_LENGTH])
    return "-".join(parts)


def get_default_cache_paths(project_type: str) -> List[str]:
    return list(DEFAULT_CACHE_PATHS.get(project_type, []))


def detect_project_types(manifest_paths: Iterable[str]) -> List[str]:
    """Ecosystems implied by manifest file names, in first-seen order."""
    found: List[str] = []
    for path in manifest_paths:
        project_type = MANIFEST_PROJECT_TYPES.get(posixpath.basename(path))
        if project_type and project_type not in found:
            found.append(project_type)
    return found


def detect_cache_paths(manifest_paths: Iterable[str]) -> List[str]:
    """Dependency dirs worth caching for the given manifests."""
    project_types = detect_project_types(manifest_paths) or list(FALLBACK_PROJECT_TYPES)
    paths: List[str] = []
    for project_type in project_types:
        for p in get_default_cache_paths(project_type):
            if p not in paths:
                paths.append(p)
    return paths


class CacheManager:
    """Derives cache keys and moves dependency archives between sandbox and blob store."""

    def __init__(
        self,
        blobs: BlobStore,
        store: MetadataStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.blobs = blobs
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock

    def _scratch_path(self, kind: str) -> str:
        return posixpath.join(self.settings.scratch_dir, f"ciengine-{kind}-{uuid.uuid4().hex}{ARCHIVE_EXT}")

    async def generate_cache_key(
        self,
        repo: str,
        commit: str,
        manifest_paths: Sequence[str],
        sandbox: Optional[Sandbox] = None,
    ) -> str:
        contents: List[bytes] = []
        if sandbox is not None and manifest_paths:
            for path in manifest_paths:
                try:
                    contents.append(await sandbox.read_file(path))
                except OSError:
                    # manifest doesn't exist, skip
                    continue
        return compute_cache_key(repo, commit, contents)

    async def save_cache(
        self,
        key: str,
        paths: Sequence[str],
        sandbox: Sandbox,
        working_dir: Optional[str] = None,
    ) -> CacheKey:
        """
        Archive the existing subset of `paths` and upload it under `key`.

        Raises NoCacheableDirectories when none of the paths exist.
        """
        opts = ExecOptions(working_dir=working_dir)

        existing: List[str] = []
        for path in paths:
            q = shlex.quote(path)
            result = await sandbox.exec(f"test -d {q} && echo exists || echo missing", opts)
            if result.stdout.strip() == "exists":
                existing.append(path)

        if not existing:
            raise NoCacheableDirectories(
                "No cache directories found to archive",
                details={"key": key, "paths": list(paths)},
            )

        scratch = self._scratch_path("cache")
        try:
            args = " ".join(shlex.quote(p) for p in existing)
            result = await sandbox.exec(f"tar -czf {shlex.quote(scratch)} {args}", opts)
            if not result.ok:
                raise CacheError(
                    f"tar failed with exit code {result.exit_code}",
                    details={"key": key, "stderr": result.stderr[-2000:]},
                )
            data = await sandbox.read_file(scratch)
        finally:
            await sandbox.exec(f"rm -f {shlex.quote(scratch)}")

        timestamp = self._clock()
        await self.blobs.put(
            cache_blob_path(key),
            data,
            {
                "cache_key": key,
                "paths": ",".join(existing),
                "timestamp": str(timestamp),
                "size": str(len(data)),
            },
        )

        record = CacheKey(key=key, paths=existing, last_used=timestamp, size=len(data))
        await self.store.put(cache_meta_key(key), record.to_dict(), ttl=self.settings.cache_ttl)
        return record

    async def restore_cache(
        self,
        key: str,
        sandbox: Sandbox,
        working_dir: Optional[str] = None,
    ) -> bool:
        """Extract the archive for `key` into the sandbox. Returns False on a miss."""
        blob = await self.blobs.get(cache_blob_path(key))
        if blob is None:
            return False

        scratch = self._scratch_path("restore")
        await sandbox.write_file(scratch, blob.data)
        try:
            result = await sandbox.exec(f"tar -xzf {shlex.quote(scratch)}", ExecOptions(working_dir=working_dir))
            if not result.ok:
                raise CacheError(
                    f"cache extract failed with exit code {result.exit_code}",
                    details={"key": key, "stderr": result.stderr[-2000:]},
                )
        finally:
            await sandbox.exec(f"rm -f {shlex.quote(scratch)}")

        meta = await self.store.get(cache_meta_key(key))
        if meta:
            meta["last_used"] = self._clock()
            await self.store.put(cache_meta_key(key), meta, ttl=self.settings.cache_ttl)

        return True

    async def cache_exists(self, key: str) -> bool:
        return await self.blobs.head(cache_blob_path(key)) is not None

    async def list_caches(self) -> List[CacheKey]:
        caches: List[CacheKey] = []
        for info in await self.blobs.list(CACHE_BLOB_PREFIX):
            md = info.metadata or {}
            key = md.get("cache_key")
            if not key:
                key = info.path[len(CACHE_BLOB_PREFIX):]
                if key.endswith(ARCHIVE_EXT):
                    key = key[: -len(ARCHIVE_EXT)]
            caches.append(
                CacheKey(
                    key=key,
                    paths=[p for p in md.get("paths", "").split(",") if p],
                    last_used=_int(md.get("timestamp")),
                    size=info.size,
                )
            )
        return caches

    async def cache_stats(self, limit: int = 20) -> Dict:
        caches = await self.list_caches()
        return {
            "total_caches": len(caches),
            "total_size": sum(c.size or 0 for c in caches),
            "caches": [c.to_dict() for c in caches[:limit]],
        }

    async def prune_caches(self, max_age: Optional[int] = None) -> int:
        """Delete bundles (and their metadata) saved more than max_age seconds ago."""
        if max_age is None:
            max_age = self.settings.cache_max_age
        cutoff = self._clock() - max_age * 1000
        deleted = 0

        for info in await self.blobs.list(CACHE_BLOB_PREFIX):
            md = info.metadata or {}
            timestamp = _int(md.get("timestamp"))
            if 0 < timestamp < cutoff:
                await self.blobs.delete(info.path)
                if md.get("cache_key"):
                    await self.store.delete(cache_meta_key(md["cache_key"]))
                deleted += 1

        return deleted
