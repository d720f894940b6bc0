"""Age-based eviction for the thumbnail cache.

``sweep`` is the whole contract and is safe to call at any time, including
while thumbnails are being generated. The optional background thread only
exists so a deployment can sweep without an external scheduler.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from thumbnail_cache import ThumbnailCache

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60


class CacheJanitor:
    """Delete cache entries older than a configurable age."""

    def __init__(self, cache: ThumbnailCache, *, max_age_days: int, interval: float = 0) -> None:
        self._cache = cache
        self._max_age_days = max(0, int(max_age_days))
        self._interval = float(interval or 0)
        if 0 < self._interval < MIN_INTERVAL_SECONDS:
            self._interval = float(MIN_INTERVAL_SECONDS)
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_deleted: Optional[int] = None

    @property
    def max_age_days(self) -> int:
        return self._max_age_days

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------ Sweep
    def sweep(self, max_age_days: Optional[float] = None) -> int:
        age = self._max_age_days if max_age_days is None else max_age_days
        # One sweep at a time.
        with self._sweep_lock:
            deleted = self._cache.sweep(age)
        self.last_deleted = deleted
        return deleted

    # ------------------------------------------------------------------ Lifecycle
    def start(self) -> bool:
        if self._interval <= 0 or self.running:
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="ThumbnailCacheJanitor", daemon=True)
        self._thread.start()
        logger.info("Thumbnail cache janitor started (every %.0fs, max age %d days)", self._interval, self._max_age_days)
        return True

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=2.0)
        self._thread = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except OSError as exc:
                logger.warning("Thumbnail cache sweep failed: %s", exc)
