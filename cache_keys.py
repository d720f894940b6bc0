"""Content-addressed cache keys for generated thumbnails."""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from thumbnail_errors import SourceNotFound

FIT_INSIDE = "inside"
FIT_COVER = "cover"
FIT_FILL = "fill"
FIT_MODES = frozenset({FIT_INSIDE, FIT_COVER, FIT_FILL})

SHARD_LENGTH = 2

PathLike = Union[str, Path]


def _check_dimension(name: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class TransformOptions:
    """Requested transform for a single thumbnail.

    Equality and the derived cache key only depend on the field values, so
    two option sets built in a different order always map to the same key.
    """

    width: Optional[int] = None
    height: Optional[int] = None
    quality: Optional[int] = None
    fit: str = FIT_INSIDE
    allow_upscale: bool = False
    sharpen: bool = False
    format_overrides: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        _check_dimension("width", self.width)
        _check_dimension("height", self.height)
        if self.quality is not None:
            if isinstance(self.quality, bool) or not isinstance(self.quality, int):
                raise ValueError(f"quality must be an integer, got {self.quality!r}")
            if not 1 <= self.quality <= 100:
                raise ValueError(f"quality must be between 1 and 100, got {self.quality}")
        if self.fit not in FIT_MODES:
            raise ValueError(f"Unknown fit mode {self.fit!r}")
        overrides = dict(self.format_overrides or {})
        for key in overrides:
            if not isinstance(key, str):
                raise ValueError("format override names must be strings")
        object.__setattr__(self, "allow_upscale", bool(self.allow_upscale))
        object.__setattr__(self, "sharpen", bool(self.sharpen))
        object.__setattr__(self, "format_overrides", MappingProxyType(overrides))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "quality": self.quality,
            "fit": self.fit,
            "allow_upscale": self.allow_upscale,
            "sharpen": self.sharpen,
            "format_overrides": dict(self.format_overrides),
        }


@dataclass(frozen=True)
class SourceFile:
    """Identity of a source image as observed at request time."""

    path: str
    mtime_ms: int
    size: int

    @classmethod
    def from_stat(cls, path: PathLike, stat_info: os.stat_result) -> "SourceFile":
        return cls(
            path=os.path.abspath(os.fspath(path)),
            mtime_ms=stat_info.st_mtime_ns // 1_000_000,
            size=stat_info.st_size,
        )

    @classmethod
    def from_path(cls, path: PathLike) -> "SourceFile":
        try:
            stat_info = os.stat(path)
        except OSError as exc:
            raise SourceNotFound(f"Unable to stat source: {exc}", path=str(path)) from exc
        return cls.from_stat(path, stat_info)


@dataclass(frozen=True)
class CacheKey:
    digest: str
    extension: str

    @property
    def shard(self) -> str:
        return self.digest[:SHARD_LENGTH]

    @property
    def filename(self) -> str:
        return f"{self.digest}{self.extension}"

    def __str__(self) -> str:
        return self.filename


def canonical_options(options: TransformOptions) -> str:
    """Return the stable JSON serialization used for key derivation."""

    try:
        return json.dumps(options.to_dict(), sort_keys=True, separators=(",", ":"))
    except TypeError as exc:
        raise ValueError(f"Transform options are not serializable: {exc}") from exc


def derive_key(source: SourceFile, options: TransformOptions) -> CacheKey:
    """Digest the source identity and the canonical options into a cache key."""

    material = "\0".join(
        (
            source.path,
            str(source.mtime_ms),
            str(source.size),
            canonical_options(options),
        )
    )
    digest = hashlib.sha256(material.encode("utf-8", "surrogateescape")).hexdigest()
    return CacheKey(digest=digest, extension=Path(source.path).suffix.lower())
