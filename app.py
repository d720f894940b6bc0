import atexit
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, current_app, jsonify, request, send_file
from werkzeug.http import http_date

import config_manager
from cache_janitor import CacheJanitor
from media_manager import MediaManager, MediaManagerError
from thumbnail_cache import ThumbnailCache
from thumbnail_config import ThumbnailSettings, parse_transform_options
from thumbnail_manager import ThumbnailManager

logger = logging.getLogger(__name__)

THUMBNAIL_CACHE_CONTROL = "public, max-age=31536000"
ORIGINAL_CACHE_CONTROL = "public, max-age=3600"
THUMBNAIL_QUERY_KEYS = ("w", "width", "h", "height", "preset")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _media_error_response(exc: MediaManagerError):
    status = getattr(exc, "status", 400) or 400
    payload = {"error": exc.message, "code": exc.code}
    return jsonify(payload), status


def _media_manager() -> MediaManager:
    return current_app.extensions["media_manager"]


def _janitor() -> CacheJanitor:
    return current_app.extensions["cache_janitor"]


def _wants_thumbnail() -> bool:
    if _parse_truthy(request.args.get("thumb")):
        return True
    return any(request.args.get(key) for key in THUMBNAIL_QUERY_KEYS)


def build_services(config: Dict[str, Any]) -> Dict[str, Any]:
    """Wire settings, cache, coordinator, janitor and media manager from config."""

    settings = ThumbnailSettings.from_config(config)
    cache = ThumbnailCache(Path(config.get("THUMB_CACHE_DIR") or "./cache/thumbnails"))
    cache.ensure_dir()
    thumbnails = ThumbnailManager(settings, cache)
    roots = config_manager.build_media_roots(config.get("MEDIA_ROOTS"), log_warnings=True)
    janitor = CacheJanitor(
        cache,
        max_age_days=settings.cache_days,
        interval=_as_int(config.get("THUMB_JANITOR_INTERVAL"), 0),
    )
    return {
        "settings": settings,
        "cache": cache,
        "thumbnails": thumbnails,
        "cache_janitor": janitor,
        "media_manager": MediaManager(roots, thumbnails),
    }


def create_app(config: Optional[Dict[str, Any]] = None) -> Flask:
    if config is None:
        config = config_manager.load_config()
    app = Flask(__name__)
    app.extensions.update(build_services(config))
    janitor: CacheJanitor = app.extensions["cache_janitor"]
    if janitor.start():
        atexit.register(janitor.stop)

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return jsonify(
            {
                "success": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "paths": _media_manager().list_roots(),
            }
        )

    @app.route("/api/config/paths", methods=["GET"])
    def api_config_paths():
        return jsonify({"success": True, "data": _media_manager().list_roots()})

    @app.route("/api/config/paths/<root_id>", methods=["GET"])
    def api_config_path(root_id: str):
        try:
            root = _media_manager().resolve_root(root_id)
        except MediaManagerError as exc:
            return _media_error_response(exc)
        return jsonify({"success": True, "data": root.to_dict()})

    @app.route("/api/files/<root_id>/<path:subpath>", methods=["GET"])
    def api_files(root_id: str, subpath: str):
        manager = _media_manager()
        options = None
        if _wants_thumbnail():
            try:
                options = parse_transform_options(request.args, settings=manager.thumbnails.settings)
            except ValueError as exc:
                return jsonify({"error": str(exc), "code": "invalid_request"}), 400
        try:
            served = manager.serve(root_id, subpath, options)
        except MediaManagerError as exc:
            return _media_error_response(exc)

        response = send_file(served.path, mimetype=served.mimetype, conditional=True)
        try:
            response.headers["Last-Modified"] = http_date(served.source.stat().st_mtime)
        except OSError:
            pass
        if served.transformed:
            response.headers["Cache-Control"] = THUMBNAIL_CACHE_CONTROL
            response.headers["X-Image-Type"] = "thumbnail"
            if served.options is not None:
                response.headers["X-Thumbnail-Quality"] = f"{served.options.quality}%"
                response.headers["X-Thumbnail-Dimensions"] = (
                    f"{served.options.width or 'auto'}x{served.options.height or 'auto'}"
                )
        else:
            response.headers["Cache-Control"] = ORIGINAL_CACHE_CONTROL
            if manager.thumbnails.settings.is_image(served.source.suffix):
                response.headers["X-Image-Type"] = "original"
        return response

    @app.route("/api/admin/cleanup-thumbnails", methods=["GET", "POST"])
    def api_cleanup_thumbnails():
        janitor = _janitor()
        days_raw = request.args.get("days")
        days = _as_int(days_raw, -1) if days_raw is not None else janitor.max_age_days
        if days < 0:
            return jsonify({"error": "days must be a non-negative integer", "code": "invalid_request"}), 400
        try:
            deleted = janitor.sweep(days)
        except OSError as exc:
            logger.warning("Thumbnail cleanup failed: %s", exc)
            return jsonify({"error": "Unable to clean thumbnail cache", "code": "cleanup_failed"}), 500
        logger.info("admin.cleanup_thumbnails days=%d deleted=%d", days, deleted)
        return jsonify({"success": True, "deleted_count": deleted, "days": days})

    @app.route("/api/admin/thumbnail-stats", methods=["GET"])
    def api_thumbnail_stats():
        thumbnails = _media_manager().thumbnails
        stats = thumbnails.cache.stats()
        return jsonify(
            {
                "success": True,
                "data": {
                    "cache_dir": str(stats.cache_dir),
                    "total_files": stats.total_files,
                    "total_bytes": stats.total_bytes,
                    "total_size": stats.size_text,
                    "processing_count": thumbnails.processing_count,
                },
            }
        )

    return app
