"""Coordinates thumbnail generation across concurrent requests.

``resolve`` is the single entry point. For each distinct cache key at most
one transform runs at a time; concurrent callers for the same key wait on the
same future. Any failure degrades to the original source path, and failures
are never remembered, so the next request simply tries again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from cache_keys import CacheKey, SourceFile, TransformOptions, derive_key
from image_transform import ImageTransformer
from thumbnail_cache import ThumbnailCache
from thumbnail_config import ThumbnailSettings, normalize_extension
from thumbnail_errors import SourceNotFound, ThumbnailError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedThumbnail:
    path: Path
    source: Path
    options: Optional[TransformOptions] = None

    @property
    def transformed(self) -> bool:
        return self.path != self.source


class ThumbnailManager:
    """Resolve ``(source, options)`` requests to a servable file path."""

    def __init__(
        self,
        settings: ThumbnailSettings,
        cache: ThumbnailCache,
        transformer: Optional[ImageTransformer] = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._transformer = transformer or ImageTransformer(settings)
        self._lock = threading.Lock()
        self._in_flight: Dict[str, "Future[Path]"] = {}
        self._transform_slots = threading.BoundedSemaphore(max(1, settings.max_concurrent))

    @property
    def settings(self) -> ThumbnailSettings:
        return self._settings

    @property
    def cache(self) -> ThumbnailCache:
        return self._cache

    @property
    def processing_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def resolve(
        self,
        source_path: Union[str, Path],
        options: Optional[TransformOptions] = None,
    ) -> Path:
        return self.resolve_result(source_path, options).path

    def resolve_result(
        self,
        source_path: Union[str, Path],
        options: Optional[TransformOptions] = None,
    ) -> ResolvedThumbnail:
        source = Path(source_path)
        ext = normalize_extension(source.suffix) if source.suffix else ""
        try:
            source_file = SourceFile.from_path(source)
        except SourceNotFound as exc:
            logger.warning("Thumbnail source unavailable %s: %s", source, exc.message)
            return ResolvedThumbnail(path=source, source=source)

        if not self._settings.should_transform(ext, source_file.size):
            logger.debug("Serving %s without thumbnail (ext=%s size=%d)", source, ext, source_file.size)
            return ResolvedThumbnail(path=source, source=source)

        effective = self._settings.effective_options(options, ext)
        key = derive_key(source_file, effective)

        cached = self._cache.lookup(key)
        if cached is not None:
            logger.debug("Thumbnail cache hit %s -> %s", source, cached)
            return ResolvedThumbnail(path=cached, source=source, options=effective)

        with self._lock:
            future = self._in_flight.get(key.digest)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key.digest] = future

        if not owner:
            logger.debug("Waiting for in-flight thumbnail %s", key)
            result = future.result()
            return ResolvedThumbnail(path=result, source=source, options=effective)

        result = source
        try:
            result = self._generate(source, key, effective)
        finally:
            with self._lock:
                self._in_flight.pop(key.digest, None)
            future.set_result(result)
        return ResolvedThumbnail(path=result, source=source, options=effective)

    def _generate(self, source: Path, key: CacheKey, options: TransformOptions) -> Path:
        # Another generation may have finished between our lookup and registering.
        cached = self._cache.lookup(key)
        if cached is not None:
            return cached
        try:
            # Header-only check; sources that already fit never take a transform slot.
            if self._transformer.is_passthrough(source, options):
                logger.debug("Source %s already fits %sx%s", source, options.width, options.height)
                return source
            with self._transform_slots:
                outcome = self._transformer.transform(source, options)
            if outcome.passthrough:
                return source
            target = self._cache.store(key, outcome.data)
        except ThumbnailError as exc:
            logger.warning("Thumbnail generation failed for %s (%s): %s", source, exc.code, exc.message)
            return source
        except Exception:
            logger.exception("Unexpected error generating thumbnail for %s", source)
            return source
        logger.info(
            "Generated thumbnail %s -> %s (%dx%d, %d bytes)",
            source,
            target,
            outcome.width,
            outcome.height,
            len(outcome.data),
        )
        return target
