import json
import os

import pytest

import config_manager
from config_manager import MEDIA_ROOTS_ENV, build_media_roots, load_config, resolve_root, roots_by_origin


@pytest.fixture
def config_paths(tmp_path, monkeypatch):
    monkeypatch.setenv(MEDIA_ROOTS_ENV, "")
    for key in config_manager.DEFAULT_CONFIG_FALLBACK:
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "config.json", tmp_path / "config.default.json", tmp_path / ".env"


class TestLoadConfig:
    def test_creates_files_from_fallback(self, config_paths):
        config_path, default_path, env_path = config_paths

        config = load_config(config_path, default_path, env_path)

        assert config_path.is_file()
        assert MEDIA_ROOTS_ENV in env_path.read_text(encoding="utf-8")
        assert config["THUMB_MIN_FILE_SIZE"] == 300 * 1024
        assert config["MEDIA_ROOTS"][0]["origin"] == "media"

    def test_user_values_override_defaults(self, config_paths):
        config_path, default_path, env_path = config_paths
        default_path.write_text(json.dumps({"THUMB_CACHE_DAYS": 60, "logging": {"level": "INFO"}}))
        config_path.write_text(json.dumps({"THUMB_CACHE_DAYS": 7, "logging": {"level": "DEBUG"}}))

        config = load_config(config_path, default_path, env_path)

        assert config["THUMB_CACHE_DAYS"] == 7
        assert config["logging"]["level"] == "DEBUG"

    def test_environment_overrides(self, config_paths, monkeypatch, tmp_path):
        config_path, default_path, env_path = config_paths
        photos = tmp_path / "photos"
        monkeypatch.setenv("THUMB_MIN_FILE_SIZE", "2048")
        monkeypatch.setenv("THUMB_ALWAYS_TRANSFORM_EXTS", '[".bmp"]')
        monkeypatch.setenv(MEDIA_ROOTS_ENV, f"{photos}=photos")

        config = load_config(config_path, default_path, env_path)

        assert config["THUMB_MIN_FILE_SIZE"] == "2048"
        assert config["THUMB_ALWAYS_TRANSFORM_EXTS"] == [".bmp"]
        assert config["MEDIA_ROOTS"] == [{"path": os.path.abspath(photos), "origin": "photos"}]

    def test_env_file_values_are_loaded(self, config_paths, tmp_path):
        config_path, default_path, env_path = config_paths
        archive = tmp_path / "archive"
        env_path.write_text(f'{MEDIA_ROOTS_ENV}="{archive}"\n', encoding="utf-8")

        config = load_config(config_path, default_path, env_path)

        assert config["MEDIA_ROOTS"][0]["path"] == os.path.abspath(archive)


class TestMediaRoots:
    def test_json_string_and_duplicates(self, tmp_path):
        first = tmp_path / "first"
        second = tmp_path / "Second Library"
        entries = json.dumps(
            [
                {"id": 3, "path": str(first)},
                {"id": 3, "path": str(second)},
                {"path": str(first), "origin": "dupe"},
            ]
        )

        roots = build_media_roots(entries)

        assert [root.root_id for root in roots] == [3, 1]
        assert roots[0].origin == "first"
        assert roots[1].origin == "second-library"

    def test_default_root_when_empty(self):
        roots = build_media_roots(None)
        assert len(roots) == 1
        assert roots[0].root_id == 0
        assert roots[0].origin == "media"

    def test_lookup_helpers(self, tmp_path):
        roots = build_media_roots([{"id": 0, "path": str(tmp_path / "a"), "origin": "media"}])
        assert resolve_root(roots, "0") is roots[0]
        assert resolve_root(roots, 5) is None
        assert resolve_root(roots, "abc") is None
        assert roots_by_origin(roots, "media") == roots
        assert roots[0].to_dict() == {"id": 0, "path": str(roots[0].path), "origin": "media"}
