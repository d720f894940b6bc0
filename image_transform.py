"""Pillow-based resize and re-encode step for thumbnails."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from PIL import Image, ImageFilter, ImageOps

from cache_keys import FIT_COVER, FIT_FILL, TransformOptions
from thumbnail_config import SHARPEN_OPTIONS, FormatPolicy, ThumbnailSettings, normalize_extension
from thumbnail_errors import DecodeFailed, EncodeFailed, UnsupportedFormat

logger = logging.getLogger(__name__)

RESAMPLING_FILTER = Image.Resampling.LANCZOS
FLATTEN_BACKGROUND = (255, 255, 255)
_WORKING_MODES = {"RGB", "RGBA", "L"}
ORIENTATION_TAG = 0x0112
# EXIF orientations that rotate by 90 degrees and so swap width and height.
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
TRANSPARENT_INDEX = 255


def _orientation(image: Image.Image) -> Optional[int]:
    raw = image.info.get("exif")
    if isinstance(raw, bytes) and raw:
        exif = Image.Exif()
        exif.load(raw)
        return exif.get(ORIENTATION_TAG)
    if image.format == "TIFF":
        return image.getexif().get(ORIENTATION_TAG)
    return None


def _oriented_size(image: Image.Image) -> Tuple[int, int]:
    """Size after EXIF orientation, read from the header only."""

    width, height = image.size
    if _orientation(image) in _TRANSPOSED_ORIENTATIONS:
        return height, width
    return width, height


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    width: int
    height: int
    format: str
    passthrough: bool = False


def _within_bounds(size: Tuple[int, int], options: TransformOptions) -> bool:
    width, height = size
    if options.width is not None and width > options.width:
        return False
    if options.height is not None and height > options.height:
        return False
    return True


def _inside_size(size: Tuple[int, int], options: TransformOptions) -> Tuple[int, int]:
    src_w, src_h = size
    scales = []
    if options.width is not None:
        scales.append(options.width / src_w)
    if options.height is not None:
        scales.append(options.height / src_h)
    scale = min(scales) if scales else 1.0
    if not options.allow_upscale:
        scale = min(scale, 1.0)
    return max(1, round(src_w * scale)), max(1, round(src_h * scale))


def _to_working_mode(image: Image.Image) -> Image.Image:
    if image.mode in _WORKING_MODES:
        return image
    has_alpha = image.mode in {"LA", "PA", "RGBa", "La"} or (
        image.mode == "P" and "transparency" in image.info
    )
    return image.convert("RGBA" if has_alpha else "RGB")


def _flatten(image: Image.Image) -> Image.Image:
    if image.mode != "RGBA":
        return image.convert("RGB")
    background = Image.new("RGB", image.size, FLATTEN_BACKGROUND)
    background.paste(image, (0, 0), image)
    return background


def _sharpen(image: Image.Image) -> Image.Image:
    sigma = SHARPEN_OPTIONS["sigma"]
    flat = SHARPEN_OPTIONS["flat"]
    jagged = SHARPEN_OPTIONS["jagged"]
    unsharp = ImageFilter.UnsharpMask(
        radius=max(0.5, sigma * 2),
        percent=int(50 * (flat + jagged)),
        threshold=int(jagged),
    )
    return image.filter(unsharp)


def _normalize(image: Image.Image) -> Image.Image:
    if image.mode == "RGBA":
        alpha = image.getchannel("A")
        adjusted = ImageOps.autocontrast(image.convert("RGB"), cutoff=1)
        adjusted.putalpha(alpha)
        return adjusted
    return ImageOps.autocontrast(image, cutoff=1)


def _reduce_palette(image: Image.Image) -> Image.Image:
    """Convert to a palette image when that loses nothing."""

    if image.mode != "RGB":
        return image
    colors = image.getcolors(256)
    if not colors:
        return image
    flat = [channel for _count, rgb in colors for channel in rgb]
    palette_image = Image.new("P", (1, 1))
    palette_image.putpalette(flat + [0] * (768 - len(flat)))
    return image.quantize(palette=palette_image, dither=Image.Dither.NONE)


def _to_palette(image: Image.Image) -> Image.Image:
    """Quantize to a palette image, keeping fully transparent pixels on a reserved index."""

    if image.mode != "RGBA":
        return _flatten(image).quantize(colors=256)
    alpha = image.getchannel("A")
    paletted = image.convert("RGB").quantize(colors=TRANSPARENT_INDEX)
    palette = paletted.getpalette()[: TRANSPARENT_INDEX * 3]
    paletted.putpalette(palette + [0] * (768 - len(palette)))
    paletted.paste(TRANSPARENT_INDEX, (0, 0), alpha.point(lambda value: 255 if value < 128 else 0))
    paletted.info["transparency"] = TRANSPARENT_INDEX
    return paletted


def _prepare_for_encoder(image: Image.Image, policy: Optional[FormatPolicy]) -> Image.Image:
    if policy is None:
        return image if image.mode in {"RGB", "L"} else _flatten(image)
    if image.mode in policy.modes:
        return image
    if policy.fallback_mode == "RGB":
        return _flatten(image)
    if policy.fallback_mode == "P":
        return _to_palette(image)
    return image.convert(policy.fallback_mode)


class ImageTransformer:
    """Decode, resize and encode a source image according to the policy table."""

    def __init__(self, settings: Optional[ThumbnailSettings] = None) -> None:
        self._settings = settings or ThumbnailSettings()

    def _resolve_format(self, extension: str) -> Tuple[Optional[FormatPolicy], str]:
        policy = self._settings.policy_for(extension)
        if policy is not None:
            return policy, policy.pillow_format
        pillow_format = Image.registered_extensions().get(extension)
        if not pillow_format or pillow_format not in Image.SAVE:
            raise UnsupportedFormat(f"No encoder registered for '{extension}'")
        return None, pillow_format

    def source_size(self, source_path: Union[str, Path]) -> Tuple[int, int]:
        """Return the display size of a source from its header, without decoding pixels."""

        path = Path(source_path)
        try:
            with Image.open(path) as opened:
                return _oriented_size(opened)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            raise DecodeFailed(f"Unable to read image header of {path}: {exc}", path=str(path)) from exc

    def is_passthrough(self, source_path: Union[str, Path], options: TransformOptions) -> bool:
        """True when the source already fits ``options`` and would be served unchanged."""

        if options.allow_upscale:
            return False
        return _within_bounds(self.source_size(source_path), options)

    def transform(self, source_path: Union[str, Path], options: TransformOptions) -> TransformResult:
        path = Path(source_path)
        ext = normalize_extension(path.suffix) if path.suffix else ""
        policy, pillow_format = self._resolve_format(ext)

        size = self.source_size(path)
        if not options.allow_upscale and _within_bounds(size, options):
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise DecodeFailed(f"Unable to read {path}: {exc}", path=str(path)) from exc
            logger.debug("Source %s already within %sx%s; passing through", path, options.width, options.height)
            return TransformResult(
                data=data,
                width=size[0],
                height=size[1],
                format=pillow_format,
                passthrough=True,
            )

        try:
            with Image.open(path) as opened:
                opened.load()
                image = ImageOps.exif_transpose(opened)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            raise DecodeFailed(f"Unable to decode {path}: {exc}", path=str(path)) from exc

        image = _to_working_mode(image)
        image = self._resize(image, options)
        if options.sharpen:
            image = _sharpen(image)
        if self._settings.auto_normalize:
            image = _normalize(image)
        if policy is not None and policy.palette_reduction:
            image = _reduce_palette(image)
        image = _prepare_for_encoder(image, policy)

        params = self._encode_params(ext, policy, options)
        if pillow_format == "GIF" and "transparency" in image.info:
            # Palette optimization would renumber the transparent index.
            params["transparency"] = image.info["transparency"]
            params["optimize"] = False
        buffer = io.BytesIO()
        try:
            image.save(buffer, format=pillow_format, **params)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise EncodeFailed(f"Unable to encode {path} as {pillow_format}: {exc}", path=str(path)) from exc
        return TransformResult(
            data=buffer.getvalue(),
            width=image.width,
            height=image.height,
            format=pillow_format,
        )

    def _resize(self, image: Image.Image, options: TransformOptions) -> Image.Image:
        if options.fit == FIT_COVER and options.width is not None and options.height is not None:
            box = (options.width, options.height)
            if not options.allow_upscale:
                box = (min(box[0], image.width), min(box[1], image.height))
            return ImageOps.fit(image, box, method=RESAMPLING_FILTER, centering=(0.5, 0.5))
        if options.fit == FIT_FILL:
            width = options.width or image.width
            height = options.height or image.height
            if not options.allow_upscale:
                width = min(width, image.width)
                height = min(height, image.height)
            return image.resize((width, height), RESAMPLING_FILTER)
        target = _inside_size(image.size, options)
        if target == image.size:
            return image
        return image.resize(target, RESAMPLING_FILTER)

    def _encode_params(
        self,
        extension: str,
        policy: Optional[FormatPolicy],
        options: TransformOptions,
    ) -> Dict[str, Any]:
        params = self._settings.encode_params(extension, options.format_overrides)
        accepts_quality = policy.accepts_quality if policy is not None else True
        if accepts_quality and options.quality is not None:
            params.setdefault("quality", options.quality)
        if policy is not None and policy.quality_floor is not None and "quality" in params:
            params["quality"] = max(int(params["quality"]), policy.quality_floor)
        if (
            policy is not None
            and policy.lossless_at_quality is not None
            and int(params.get("quality", 0)) >= policy.lossless_at_quality
        ):
            params["lossless"] = True
        return params
