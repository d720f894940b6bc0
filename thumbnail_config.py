"""Static thumbnail tables and runtime settings.

The format-policy table, sharpen tuning and presets are read-only after
import. :class:`ThumbnailSettings` is built once from the loaded config.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional

from cache_keys import FIT_INSIDE, FIT_MODES, TransformOptions

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS: FrozenSet[str] = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".gif",
        ".bmp",
        ".tiff",
        ".tif",
    }
)

DEFAULT_MIN_FILE_SIZE = 300 * 1024
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1920
DEFAULT_QUALITY = 95
DEFAULT_MIN_QUALITY = 50
DEFAULT_MAX_DIMENSION = 8192
DEFAULT_ALWAYS_TRANSFORM_EXTS: FrozenSet[str] = frozenset({".tiff", ".tif"})
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_CACHE_DAYS = 60


@dataclass(frozen=True)
class FormatPolicy:
    """Encoder selection for one source extension."""

    pillow_format: str
    params: Mapping[str, Any] = field(default_factory=dict)
    quality_floor: Optional[int] = None
    # Modes the encoder accepts as-is; anything else is converted to fallback_mode.
    modes: FrozenSet[str] = frozenset({"RGB", "L"})
    fallback_mode: str = "RGB"
    palette_reduction: bool = False
    accepts_quality: bool = True
    # Requested quality at or above which the encoder switches to lossless mode.
    lossless_at_quality: Optional[int] = None


_JPEG_POLICY = FormatPolicy(
    pillow_format="JPEG",
    params={"subsampling": 0, "optimize": True, "progressive": True},
)

FORMAT_POLICIES: Mapping[str, FormatPolicy] = {
    ".jpg": _JPEG_POLICY,
    ".jpeg": _JPEG_POLICY,
    ".png": FormatPolicy(
        pillow_format="PNG",
        params={"compress_level": 9, "optimize": True},
        modes=frozenset({"RGB", "RGBA", "L", "LA", "P", "I", "I;16"}),
        fallback_mode="RGBA",
        palette_reduction=True,
        accepts_quality=False,
    ),
    ".webp": FormatPolicy(
        pillow_format="WEBP",
        params={"method": 6, "lossless": False, "alpha_quality": 100, "exact": True},
        modes=frozenset({"RGB", "RGBA"}),
        fallback_mode="RGBA",
        lossless_at_quality=100,
    ),
    # Uncompressed TIFF sources are bulky, so they go through JPEG compression
    # with a fixed floor no request can lower.
    ".tiff": FormatPolicy(
        pillow_format="TIFF",
        params={"compression": "jpeg"},
        quality_floor=98,
    ),
    ".tif": FormatPolicy(
        pillow_format="TIFF",
        params={"compression": "jpeg"},
        quality_floor=98,
    ),
    ".gif": FormatPolicy(
        pillow_format="GIF",
        params={"optimize": True},
        modes=frozenset({"P", "L"}),
        fallback_mode="P",
        accepts_quality=False,
    ),
    ".bmp": FormatPolicy(
        pillow_format="BMP",
        modes=frozenset({"RGB", "L", "P"}),
        accepts_quality=False,
    ),
}

SHARPEN_OPTIONS: Mapping[str, float] = {
    "sigma": 0.5,
    "flat": 1.0,
    "jagged": 2.0,
}

THUMBNAIL_PRESETS: Mapping[str, Mapping[str, Any]] = {
    "cover": {"width": 1200, "height": 1200, "quality": 95, "sharpen": True},
    "list": {"width": 600, "height": 600, "quality": 90, "sharpen": True},
    "detail": {"width": 1920, "height": 1920, "quality": 95, "sharpen": True},
    "high_quality": {"width": 2560, "height": 2560, "quality": 98, "sharpen": True},
    "original_quality": {"width": 3840, "height": 3840, "quality": 100, "sharpen": True},
}


def normalize_extension(value: str) -> str:
    text = str(value).strip().lower()
    return text if text.startswith(".") else f".{text}"


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip().lower()
        if not stripped:
            return default
        return stripped in {"1", "true", "yes", "on"}
    if value is None:
        return default
    return bool(value)


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))


def _as_extensions(value: Any, default: FrozenSet[str]) -> FrozenSet[str]:
    if value is None:
        return default
    if isinstance(value, str):
        value = [part for part in value.replace(";", ",").split(",") if part.strip()]
    return frozenset(normalize_extension(ext) for ext in value)


@dataclass(frozen=True)
class ThumbnailSettings:
    """Runtime knobs for eligibility, defaults and encoding."""

    min_file_size: int = DEFAULT_MIN_FILE_SIZE
    default_width: int = DEFAULT_WIDTH
    default_height: int = DEFAULT_HEIGHT
    default_quality: int = DEFAULT_QUALITY
    min_quality: int = DEFAULT_MIN_QUALITY
    max_dimension: int = DEFAULT_MAX_DIMENSION
    always_transform_exts: FrozenSet[str] = DEFAULT_ALWAYS_TRANSFORM_EXTS
    # Extensions thumbnailed with the Pillow encoder registered for them.
    extra_extensions: FrozenSet[str] = frozenset()
    format_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    auto_sharpen: bool = False
    auto_normalize: bool = False
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    cache_days: int = DEFAULT_CACHE_DAYS

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ThumbnailSettings":
        always = _as_extensions(config.get("THUMB_ALWAYS_TRANSFORM_EXTS"), DEFAULT_ALWAYS_TRANSFORM_EXTS)
        extra = _as_extensions(config.get("THUMB_EXTRA_EXTENSIONS"), frozenset())

        overrides: Dict[str, Dict[str, Any]] = {}
        raw_overrides = config.get("THUMB_FORMAT_OVERRIDES") or {}
        if isinstance(raw_overrides, Mapping):
            for ext, params in raw_overrides.items():
                if not isinstance(params, Mapping):
                    logger.warning("Ignoring format override for %s: expected a mapping", ext)
                    continue
                overrides[normalize_extension(ext)] = dict(params)
        else:
            logger.warning("THUMB_FORMAT_OVERRIDES must be a mapping; ignoring %r", raw_overrides)

        default_quality = _clamp(_as_int(config.get("THUMB_DEFAULT_QUALITY"), DEFAULT_QUALITY), 1, 100)
        min_quality = _clamp(_as_int(config.get("THUMB_MIN_QUALITY"), DEFAULT_MIN_QUALITY), 1, 100)
        return cls(
            min_file_size=max(0, _as_int(config.get("THUMB_MIN_FILE_SIZE"), DEFAULT_MIN_FILE_SIZE)),
            default_width=max(1, _as_int(config.get("THUMB_DEFAULT_WIDTH"), DEFAULT_WIDTH)),
            default_height=max(1, _as_int(config.get("THUMB_DEFAULT_HEIGHT"), DEFAULT_HEIGHT)),
            default_quality=default_quality,
            min_quality=min_quality,
            max_dimension=max(1, _as_int(config.get("THUMB_MAX_DIMENSION"), DEFAULT_MAX_DIMENSION)),
            always_transform_exts=always,
            extra_extensions=extra,
            format_overrides=overrides,
            auto_sharpen=_as_bool(config.get("THUMB_AUTO_SHARPEN"), False),
            auto_normalize=_as_bool(config.get("THUMB_AUTO_NORMALIZE"), False),
            max_concurrent=max(1, _as_int(config.get("THUMB_MAX_CONCURRENT"), DEFAULT_MAX_CONCURRENT)),
            cache_days=max(0, _as_int(config.get("THUMB_CACHE_DAYS"), DEFAULT_CACHE_DAYS)),
        )

    def policy_for(self, extension: str) -> Optional[FormatPolicy]:
        return FORMAT_POLICIES.get(normalize_extension(extension))

    def encode_params(self, extension: str, request_overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Merge table params, configured overrides and per-request overrides."""

        ext = normalize_extension(extension)
        params: Dict[str, Any] = {}
        policy = self.policy_for(ext)
        if policy is not None:
            params.update(policy.params)
        params.update(self.format_overrides.get(ext, {}))
        if request_overrides:
            params.update(request_overrides)
        return params

    @property
    def image_extensions(self) -> FrozenSet[str]:
        return IMAGE_EXTENSIONS | self.extra_extensions

    def is_image(self, extension: str) -> bool:
        return normalize_extension(extension) in self.image_extensions

    def should_transform(self, extension: str, size: int) -> bool:
        """Return True when a source of this type and size is worth thumbnailing."""

        ext = normalize_extension(extension)
        if ext not in self.image_extensions or size <= 0:
            return False
        if ext in self.always_transform_exts:
            return True
        return size > self.min_file_size

    def effective_options(self, options: Optional[TransformOptions], extension: str) -> TransformOptions:
        """Fill defaults and clamp values so equivalent requests share one key."""

        options = options or TransformOptions()
        width = options.width
        height = options.height
        if width is None and height is None:
            width, height = self.default_width, self.default_height
        if width is not None:
            width = _clamp(width, 1, self.max_dimension)
        if height is not None:
            height = _clamp(height, 1, self.max_dimension)

        quality = options.quality if options.quality is not None else self.default_quality
        quality = _clamp(quality, self.min_quality, 100)
        policy = self.policy_for(extension)
        if policy is not None and policy.quality_floor is not None:
            quality = max(quality, policy.quality_floor)

        return replace(
            options,
            width=width,
            height=height,
            quality=quality,
            sharpen=options.sharpen or self.auto_sharpen,
        )


def parse_transform_options(
    args: Mapping[str, Any],
    *,
    settings: Optional[ThumbnailSettings] = None,
) -> TransformOptions:
    """Build :class:`TransformOptions` from raw request parameters.

    Accepts ``w``/``width``, ``h``/``height``, ``q``/``quality``, ``fit``,
    ``sharpen``, ``upscale`` and ``preset``. Explicit values override the
    preset. Non-numeric dimensions or quality raise ``ValueError``; numeric
    values are clamped to the configured ranges.
    """

    settings = settings or ThumbnailSettings()
    values: Dict[str, Any] = {}

    preset_name = args.get("preset")
    if preset_name:
        preset = THUMBNAIL_PRESETS.get(str(preset_name).strip().lower())
        if preset is None:
            raise ValueError(f"Unknown preset {preset_name!r}")
        values.update(preset)

    def _numeric(*names: str) -> Optional[int]:
        for name in names:
            raw = args.get(name)
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                continue
            if isinstance(raw, bool):
                raise ValueError(f"{name} must be numeric")
            try:
                return int(str(raw).strip())
            except ValueError:
                raise ValueError(f"{name} must be numeric, got {raw!r}")
        return None

    width = _numeric("w", "width")
    height = _numeric("h", "height")
    quality = _numeric("q", "quality")
    if width is not None:
        values["width"] = _clamp(width, 1, settings.max_dimension)
    if height is not None:
        values["height"] = _clamp(height, 1, settings.max_dimension)
    if quality is not None:
        values["quality"] = _clamp(quality, settings.min_quality, 100)

    fit = args.get("fit")
    if fit:
        fit_value = str(fit).strip().lower()
        if fit_value not in FIT_MODES:
            raise ValueError(f"Unknown fit mode {fit!r}")
        values["fit"] = fit_value
    if args.get("sharpen") is not None:
        values["sharpen"] = _as_bool(args.get("sharpen"), False)
    if args.get("upscale") is not None:
        values["allow_upscale"] = _as_bool(args.get("upscale"), False)

    return TransformOptions(
        width=values.get("width"),
        height=values.get("height"),
        quality=values.get("quality"),
        fit=values.get("fit", FIT_INSIDE),
        allow_upscale=values.get("allow_upscale", False),
        sharpen=values.get("sharpen", False),
    )
