"""Sharded on-disk store for generated thumbnails."""

from __future__ import annotations

import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from cache_keys import SHARD_LENGTH, CacheKey
from thumbnail_errors import CacheWriteFailed

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"
# Temp files younger than this belong to a write that may still be running.
TEMP_GRACE_SECONDS = 3600
SECONDS_PER_DAY = 24 * 60 * 60
STORE_ATTEMPTS = 3


def _human_readable_size(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    idx = int(min(len(units) - 1, math.floor(math.log(size, 1024))))
    scaled = size / (1024**idx)
    return f"{scaled:.1f} {units[idx]}"


@dataclass(frozen=True)
class CacheStats:
    cache_dir: Path
    total_files: int
    total_bytes: int

    @property
    def size_text(self) -> str:
        return _human_readable_size(self.total_bytes)


class ThumbnailCache:
    """Content-addressed file store keyed by :class:`CacheKey`.

    Entries live at ``<cache_dir>/<first two digest chars>/<digest><ext>`` so
    no directory grows past a 256th of the library. Writers publish through
    an atomic rename; readers never need a lock.
    """

    def __init__(self, cache_dir: Union[str, Path], *, shard_length: int = SHARD_LENGTH) -> None:
        self._cache_dir = Path(cache_dir)
        self._shard_length = max(1, int(shard_length))

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def ensure_dir(self) -> Path:
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - depends on fs permissions
            logger.warning("Unable to create thumbnail cache %s: %s", self._cache_dir, exc)
        return self._cache_dir

    def path_for(self, key: CacheKey) -> Path:
        return self._cache_dir / key.digest[: self._shard_length] / key.filename

    def lookup(self, key: CacheKey) -> Optional[Path]:
        candidate = self.path_for(key)
        return candidate if candidate.is_file() else None

    def store(self, key: CacheKey, data: bytes) -> Path:
        """Atomically write ``data`` as the entry for ``key`` and return its path."""

        target = self.path_for(key)
        temp_name: Optional[str] = None
        try:
            fd, temp_name = self._open_temp(target.parent, key.extension)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
            temp_name = None
        except OSError as exc:
            raise CacheWriteFailed(f"Unable to write cache entry {target}: {exc}", path=str(target)) from exc
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    pass
        logger.debug("Stored thumbnail %s (%d bytes)", target, len(data))
        return target

    def _open_temp(self, shard_dir: Path, extension: str) -> Tuple[int, str]:
        for attempt in range(STORE_ATTEMPTS):
            shard_dir.mkdir(parents=True, exist_ok=True)
            try:
                return tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=extension, dir=shard_dir)
            except FileNotFoundError:
                # A concurrent sweep pruned the shard before the temp file existed.
                if attempt + 1 == STORE_ATTEMPTS:
                    raise
                logger.debug("Shard %s vanished before write; recreating", shard_dir)
        raise FileNotFoundError(shard_dir)

    def sweep(self, max_age_days: float, *, now: Optional[float] = None) -> int:
        """Delete entries older than ``max_age_days`` and prune empty shards.

        Returns the number of files removed.
        """

        if max_age_days < 0:
            raise ValueError("max_age_days must not be negative")
        if not self._cache_dir.is_dir():
            return 0
        now = time.time() if now is None else now
        cutoff = now - max_age_days * SECONDS_PER_DAY
        temp_cutoff = now - TEMP_GRACE_SECONDS
        if os.name == "nt":
            # Without POSIX unlink semantics an open reader would break.
            cutoff = min(cutoff, temp_cutoff)
        deleted = 0
        root = str(self._cache_dir)
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            for name in filenames:
                full_path = os.path.join(dirpath, name)
                limit = temp_cutoff if name.startswith(TEMP_PREFIX) else cutoff
                try:
                    if os.stat(full_path).st_mtime > limit:
                        continue
                    os.unlink(full_path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Unable to remove cache entry %s: %s", full_path, exc)
                    continue
                deleted += 1
            if dirpath == root:
                continue
            try:
                if not os.listdir(dirpath):
                    os.rmdir(dirpath)
            except OSError:
                # A concurrent store may have just repopulated the shard.
                continue
        logger.info("Thumbnail cache sweep removed %d file(s) older than %s day(s)", deleted, max_age_days)
        return deleted

    def stats(self) -> CacheStats:
        total_files = 0
        total_bytes = 0
        if self._cache_dir.is_dir():
            for dirpath, _dirnames, filenames in os.walk(self._cache_dir):
                for name in filenames:
                    if name.startswith(TEMP_PREFIX):
                        continue
                    try:
                        total_bytes += os.stat(os.path.join(dirpath, name)).st_size
                    except OSError:
                        continue
                    total_files += 1
        return CacheStats(cache_dir=self._cache_dir, total_files=total_files, total_bytes=total_bytes)
