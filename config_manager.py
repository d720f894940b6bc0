import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.json")
DEFAULT_CONFIG_FILE = Path("config.default.json")
ENV_FILE = Path(".env")

MEDIA_ROOTS_ENV = "PICTOCACHE_MEDIA_ROOTS"

DEFAULT_ENV_PLACEHOLDERS: Dict[str, str] = {
    MEDIA_ROOTS_ENV: "",
}

DEFAULT_CONFIG_FALLBACK: Dict[str, Any] = {
    "MEDIA_ROOTS": [{"id": 0, "path": "./media", "origin": "media"}],
    "THUMB_CACHE_DIR": "./cache/thumbnails",
    "THUMB_MIN_FILE_SIZE": 300 * 1024,
    "THUMB_DEFAULT_WIDTH": 1920,
    "THUMB_DEFAULT_HEIGHT": 1920,
    "THUMB_DEFAULT_QUALITY": 95,
    "THUMB_MIN_QUALITY": 50,
    "THUMB_MAX_DIMENSION": 8192,
    "THUMB_ALWAYS_TRANSFORM_EXTS": [".tiff", ".tif"],
    "THUMB_EXTRA_EXTENSIONS": [],
    "THUMB_FORMAT_OVERRIDES": {},
    "THUMB_AUTO_SHARPEN": False,
    "THUMB_AUTO_NORMALIZE": False,
    "THUMB_MAX_CONCURRENT": 3,
    "THUMB_CACHE_DAYS": 60,
    "THUMB_JANITOR_INTERVAL": 0,
    "logging": {
        "level": "INFO",
    },
}


@dataclass(frozen=True)
class MediaRoot:
    root_id: int
    path: Path
    origin: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.root_id, "path": str(self.path), "origin": self.origin}


def ensure_env_file(env_path: Path = ENV_FILE, placeholders: Optional[Dict[str, str]] = None) -> None:
    """Ensure a .env file exists and includes placeholders for known keys."""

    placeholders = placeholders or DEFAULT_ENV_PLACEHOLDERS
    env_path = Path(env_path)
    existing_lines: List[str]

    if env_path.exists():
        existing_lines = env_path.read_text(encoding="utf-8").splitlines()
    else:
        existing_lines = ["# Auto-generated .env"]

    existing_keys = _extract_env_keys(existing_lines)
    missing = [key for key in placeholders if key not in existing_keys]

    if not missing and env_path.exists():
        return

    if missing:
        for key in missing:
            existing_lines.append(f"{key}={placeholders[key]}")

    env_path.write_text("\n".join(existing_lines) + "\n", encoding="utf-8")


def _extract_env_keys(lines: Sequence[str]) -> List[str]:
    keys: List[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key = stripped.split("=", 1)[0].strip()
        if key:
            keys.append(key)
    return keys


def load_env_file(env_path: Path = ENV_FILE) -> Dict[str, str]:
    """Populate os.environ with values from a .env file without overriding existing env vars."""

    env_path = Path(env_path)
    if not env_path.is_file():
        return {}
    loaded: Dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, raw_value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = raw_value.strip().strip('"').strip("'")
        if os.environ.get(key) not in (None, ""):
            continue
        os.environ[key] = value
        loaded[key] = value
    return loaded


def ensure_config_file(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    default_fallback: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Ensure config.json exists and contains all keys from config.default.json."""

    default_data = _load_json(default_path)
    if not default_data:
        default_data = dict(default_fallback or DEFAULT_CONFIG_FALLBACK)

    config_path = Path(config_path)
    if config_path.exists():
        config_data = _load_json(config_path)
        if not config_data:
            config_data = {}
    else:
        config_data = {}

    merged = dict(config_data)
    if _merge_defaults(merged, default_data):
        _write_json(config_path, merged)
    elif not config_path.exists():
        _write_json(config_path, merged)

    return merged


def load_config(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    env_path: Path = ENV_FILE,
) -> Dict[str, Any]:
    """Return the merged configuration with environment overrides applied."""

    ensure_env_file(env_path)
    load_env_file(env_path)
    ensure_config_file(config_path, default_path)

    default_data = _load_json(default_path) or dict(DEFAULT_CONFIG_FALLBACK)
    config_data = _load_json(config_path) or {}

    merged = _deep_merge(default_data, config_data)

    env_overrides = _collect_environment_overrides(merged)
    for key, value in env_overrides.items():
        merged[key] = value

    merged["MEDIA_ROOTS"] = _normalize_media_roots(merged.get("MEDIA_ROOTS"))
    return merged


def build_media_roots(entries: Any, *, log_warnings: bool = False) -> List[MediaRoot]:
    """Create the immutable root table, dropping duplicate paths and ids."""

    roots: List[MediaRoot] = []
    seen_ids: set[int] = set()
    seen_paths: set[str] = set()

    for index, entry in enumerate(_normalize_media_roots(entries)):
        path = Path(entry["path"]).expanduser()
        try:
            resolved = path.resolve(strict=False)
        except OSError:
            resolved = path.absolute()
        resolved_key = resolved.as_posix()
        if resolved_key in seen_paths:
            if log_warnings:
                logger.warning("Duplicate media path '%s' skipped", path)
            continue
        root_id = entry.get("id")
        if not isinstance(root_id, int) or root_id in seen_ids:
            root_id = index
            while root_id in seen_ids:
                root_id += 1
        seen_paths.add(resolved_key)
        seen_ids.add(root_id)
        origin = entry.get("origin") or _derive_origin(path, index)
        if log_warnings:
            if not path.exists():
                logger.warning("Media path '%s' does not exist", path)
            elif not path.is_dir():
                logger.warning("Media path '%s' is not a directory", path)
            elif not os.access(path, os.R_OK):
                logger.warning("Media path '%s' is not readable", path)
        roots.append(MediaRoot(root_id=root_id, path=resolved, origin=origin))
    return roots


def resolve_root(roots: Iterable[MediaRoot], root_id: Any) -> Optional[MediaRoot]:
    """Return the root registered under ``root_id`` or None."""

    try:
        wanted = int(root_id)
    except (TypeError, ValueError):
        return None
    for root in roots:
        if root.root_id == wanted:
            return root
    return None


def roots_by_origin(roots: Iterable[MediaRoot], origin: str) -> List[MediaRoot]:
    return [root for root in roots if root.origin == origin]


def _derive_origin(path: Path, index: int) -> str:
    base_name = path.name.strip() or f"path{index + 1}"
    return re.sub(r"[^a-z0-9]+", "-", base_name.lower()).strip("-") or f"path{index + 1}"


def _collect_environment_overrides(base: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key, current in base.items():
        if isinstance(current, dict) and not key.isupper():
            continue
        env_value = os.getenv(key)
        if env_value is None or env_value == "":
            continue
        if isinstance(current, (list, dict)):
            try:
                overrides[key] = json.loads(env_value)
            except json.JSONDecodeError:
                if key == "MEDIA_ROOTS" or isinstance(current, list):
                    overrides[key] = env_value
                else:
                    logger.warning("Ignoring %s from environment: expected JSON", key)
        else:
            overrides[key] = env_value
    media_env = os.getenv(MEDIA_ROOTS_ENV)
    if media_env:
        overrides["MEDIA_ROOTS"] = media_env
    return overrides


def _normalize_media_roots(value: Any) -> List[Dict[str, Any]]:
    """Accept a list of dicts/strings, a JSON string or ``path[=origin]`` entries."""

    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                value = [text]
        else:
            sep = ";" if ";" in text and os.pathsep != ";" else os.pathsep
            value = [segment.strip() for segment in text.split(sep)]
    if not isinstance(value, (list, tuple)):
        value = []

    cleaned: List[Dict[str, Any]] = []
    for item in value:
        if isinstance(item, Mapping):
            raw_path = str(item.get("path") or "").strip()
            entry: Dict[str, Any] = {"path": raw_path}
            if item.get("id") is not None:
                try:
                    entry["id"] = int(item["id"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring non-numeric media root id %r", item.get("id"))
            if item.get("origin"):
                entry["origin"] = str(item["origin"]).strip()
        else:
            text = str(item).strip()
            raw_path, _, origin = text.partition("=")
            entry = {"path": raw_path.strip()}
            if origin.strip():
                entry["origin"] = origin.strip()
        if not entry["path"]:
            continue
        entry["path"] = os.path.abspath(os.path.expanduser(entry["path"]))
        cleaned.append(entry)
    if not cleaned:
        cleaned = [{"id": 0, "path": os.path.abspath("./media"), "origin": "media"}]
    return cleaned


def _deep_merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in defaults.keys() | overrides.keys():
        default_value = defaults.get(key)
        override_value = overrides.get(key)
        if isinstance(default_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(default_value, override_value)
        elif override_value is not None:
            result[key] = override_value
        else:
            result[key] = default_value
    return result


def _merge_defaults(target: Dict[str, Any], defaults: Dict[str, Any]) -> bool:
    changed = False
    for key, value in defaults.items():
        if key not in target:
            target[key] = value
            changed = True
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            if _merge_defaults(target[key], value):
                changed = True
    return changed


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    try:
        if not path.is_file():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load JSON config '%s': %s", path, exc)
        return None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path = Path(path)
    try:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
    except OSError as exc:
        logger.warning("Failed to write JSON config '%s': %s", path, exc)
