from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import unquote

from cache_keys import TransformOptions
from config_manager import MediaRoot, resolve_root
from thumbnail_manager import ThumbnailManager

logger = logging.getLogger(__name__)


class MediaManagerError(RuntimeError):
    """Structured exception raised for media management operations."""

    def __init__(self, message: str, *, code: str = "error", status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


@dataclass(frozen=True)
class ServedFile:
    path: Path
    source: Path
    transformed: bool
    mimetype: Optional[str]
    options: Optional[TransformOptions] = None


class MediaManager:
    """Map ``(root id, relative path)`` requests onto files and thumbnails."""

    def __init__(self, roots: Sequence[MediaRoot], thumbnails: ThumbnailManager) -> None:
        if not roots:
            raise ValueError("At least one media root is required")
        self._roots: List[MediaRoot] = list(roots)
        self._thumbnails = thumbnails

    @property
    def thumbnails(self) -> ThumbnailManager:
        return self._thumbnails

    # ----------------------------------------------------------------------
    # Path helpers
    # ----------------------------------------------------------------------
    def list_roots(self) -> List[Dict[str, Any]]:
        return [root.to_dict() for root in self._roots]

    def resolve_root(self, root_id: Any) -> MediaRoot:
        root = resolve_root(self._roots, root_id)
        if root is None:
            raise MediaManagerError(f"Unknown media root '{root_id}'", code="not_found", status=404)
        return root

    def resolve_file(self, root_id: Any, relative: str) -> Path:
        root = self.resolve_root(root_id)
        text = str(relative or "").strip()
        if "%" in text:
            text = unquote(text)
        normalized = text.replace("\\", "/").strip("/")
        if not normalized:
            raise MediaManagerError("File path is required", code="invalid_path")
        root_base = root.path.resolve()
        target = (root_base / normalized).resolve()
        try:
            target.relative_to(root_base)
        except ValueError:
            raise MediaManagerError("Path escapes the media root", code="invalid_path")
        if not target.is_file():
            logger.debug("Requested file missing root=%s path=%s", root.root_id, target)
            raise MediaManagerError("File not found", code="not_found", status=404)
        return target

    # ----------------------------------------------------------------------
    # Serving
    # ----------------------------------------------------------------------
    def serve(
        self,
        root_id: Any,
        relative: str,
        options: Optional[TransformOptions] = None,
    ) -> ServedFile:
        """Return the file to send for a request, thumbnailing when asked."""

        abs_path = self.resolve_file(root_id, relative)
        if options is None or not self._thumbnails.settings.is_image(abs_path.suffix):
            return ServedFile(
                path=abs_path,
                source=abs_path,
                transformed=False,
                mimetype=self.mime_type(abs_path),
            )
        resolved = self._thumbnails.resolve_result(abs_path, options)
        return ServedFile(
            path=resolved.path,
            source=abs_path,
            transformed=resolved.transformed,
            mimetype=self.mime_type(resolved.path),
            options=resolved.options,
        )

    def mime_type(self, path: Path) -> Optional[str]:
        mime, _ = mimetypes.guess_type(path.name)
        return mime
