"""Error taxonomy for thumbnail generation.

Every error here is recovered by :class:`thumbnail_manager.ThumbnailManager`,
which falls back to serving the original file.
"""

from __future__ import annotations

from typing import Optional


class ThumbnailError(RuntimeError):
    """Base error raised while producing or caching a thumbnail."""

    code = "thumbnail_error"

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path


class SourceNotFound(ThumbnailError):
    code = "source_not_found"


class DecodeFailed(ThumbnailError):
    code = "decode_failed"


class EncodeFailed(ThumbnailError):
    code = "encode_failed"


class UnsupportedFormat(ThumbnailError):
    code = "unsupported_format"


class CacheWriteFailed(ThumbnailError):
    code = "cache_write_failed"
