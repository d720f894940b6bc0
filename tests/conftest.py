"""Shared fixtures: generated images, an isolated cache and a coordinator."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Tuple

import pytest
from PIL import Image

from image_transform import ImageTransformer
from thumbnail_cache import ThumbnailCache
from thumbnail_config import ThumbnailSettings
from thumbnail_manager import ThumbnailManager


class CountingTransformer(ImageTransformer):
    """Transformer that records calls and can hold generation open."""

    def __init__(self, settings: ThumbnailSettings) -> None:
        super().__init__(settings)
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self._calls_lock = threading.Lock()

    def transform(self, source_path, options):
        with self._calls_lock:
            self.calls += 1
        self.entered.set()
        self.release.wait(10)
        return super().transform(source_path, options)


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def make_image(media_dir: Path) -> Callable[..., Path]:
    def _make(
        name: str,
        size: Tuple[int, int] = (800, 600),
        color=(180, 60, 40),
        mode: str = "RGB",
        noise: bool = False,
        **save_kwargs,
    ) -> Path:
        path = media_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if noise:
            image = Image.effect_noise(size, 80).convert(mode)
        else:
            image = Image.new(mode, size, color)
        image.save(path, **save_kwargs)
        return path

    return _make


@pytest.fixture
def settings() -> ThumbnailSettings:
    return ThumbnailSettings(min_file_size=0, max_concurrent=4)


@pytest.fixture
def cache(tmp_path: Path) -> ThumbnailCache:
    return ThumbnailCache(tmp_path / "cache")


@pytest.fixture
def transformer(settings: ThumbnailSettings) -> CountingTransformer:
    return CountingTransformer(settings)


@pytest.fixture
def manager(settings, cache, transformer) -> ThumbnailManager:
    return ThumbnailManager(settings, cache, transformer)
