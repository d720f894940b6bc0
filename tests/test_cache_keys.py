import os

import pytest

from cache_keys import (
    FIT_COVER,
    CacheKey,
    SourceFile,
    TransformOptions,
    canonical_options,
    derive_key,
)
from thumbnail_errors import SourceNotFound


SOURCE = SourceFile(path="/library/2024/holiday.JPG", mtime_ms=1_700_000_000_123, size=2_400_000)
OPTIONS = TransformOptions(width=400, height=400, quality=85)


class TestTransformOptions:
    def test_defaults_leave_dimensions_unset(self):
        options = TransformOptions()
        assert options.width is None
        assert options.height is None
        assert options.quality is None
        assert options.fit == "inside"
        assert options.allow_upscale is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"width": 0},
            {"height": -5},
            {"width": "400"},
            {"width": 12.5},
            {"quality": 0},
            {"quality": 101},
            {"fit": "stretch"},
            {"format_overrides": {1: "x"}},
        ],
    )
    def test_invalid_values_are_rejected(self, kwargs):
        with pytest.raises(ValueError):
            TransformOptions(**kwargs)

    def test_format_overrides_are_read_only(self):
        options = TransformOptions(format_overrides={"progressive": False})
        with pytest.raises(TypeError):
            options.format_overrides["progressive"] = True

    def test_canonical_form_sorts_keys(self):
        text = canonical_options(TransformOptions(width=10, format_overrides={"b": 1, "a": 2}))
        assert text.index('"allow_upscale"') < text.index('"width"')
        assert '"format_overrides":{"a":2,"b":1}' in text
        assert " " not in text


class TestSourceFile:
    def test_from_path_uses_stat(self, tmp_path):
        target = tmp_path / "photo.jpg"
        target.write_bytes(b"x" * 42)
        source = SourceFile.from_path(target)
        assert source.size == 42
        assert source.path == os.path.abspath(target)
        assert source.mtime_ms == os.stat(target).st_mtime_ns // 1_000_000

    def test_missing_source_raises(self, tmp_path):
        with pytest.raises(SourceNotFound) as excinfo:
            SourceFile.from_path(tmp_path / "gone.jpg")
        assert excinfo.value.code == "source_not_found"


class TestDeriveKey:
    def test_same_inputs_give_same_key(self):
        first = derive_key(SOURCE, OPTIONS)
        second = derive_key(
            SourceFile(path="/library/2024/holiday.JPG", mtime_ms=1_700_000_000_123, size=2_400_000),
            TransformOptions(quality=85, height=400, width=400),
        )
        assert first == second
        assert len(first.digest) == 64
        int(first.digest, 16)

    def test_extension_is_lowercased_source_extension(self):
        key = derive_key(SOURCE, OPTIONS)
        assert key.extension == ".jpg"
        assert key.filename == f"{key.digest}.jpg"
        assert str(key) == key.filename

    def test_shard_is_digest_prefix(self):
        key = CacheKey(digest="ab" + "0" * 62, extension=".png")
        assert key.shard == "ab"

    @pytest.mark.parametrize(
        "changed",
        [
            TransformOptions(width=401, height=400, quality=85),
            TransformOptions(width=400, height=401, quality=85),
            TransformOptions(width=400, height=400, quality=86),
            TransformOptions(width=400, height=400, quality=85, fit=FIT_COVER),
            TransformOptions(width=400, height=400, quality=85, allow_upscale=True),
            TransformOptions(width=400, height=400, quality=85, sharpen=True),
            TransformOptions(width=400, height=400, quality=85, format_overrides={"progressive": False}),
            TransformOptions(width=400, quality=85),
        ],
    )
    def test_any_option_change_changes_key(self, changed):
        assert derive_key(SOURCE, changed) != derive_key(SOURCE, OPTIONS)

    @pytest.mark.parametrize(
        "changed",
        [
            SourceFile(path="/library/2024/holiday.JPG", mtime_ms=1_700_000_000_124, size=2_400_000),
            SourceFile(path="/library/2024/holiday.JPG", mtime_ms=1_700_000_000_123, size=2_400_001),
            SourceFile(path="/library/2025/holiday.JPG", mtime_ms=1_700_000_000_123, size=2_400_000),
        ],
    )
    def test_source_change_changes_key(self, changed):
        assert derive_key(changed, OPTIONS).digest != derive_key(SOURCE, OPTIONS).digest

    def test_override_order_does_not_matter(self):
        forward = TransformOptions(width=10, format_overrides={"optimize": True, "progressive": False})
        backward = TransformOptions(width=10, format_overrides={"progressive": False, "optimize": True})
        assert derive_key(SOURCE, forward) == derive_key(SOURCE, backward)

    def test_unserializable_override_is_rejected(self):
        options = TransformOptions(width=10, format_overrides={"icc_profile": object()})
        with pytest.raises(ValueError):
            derive_key(SOURCE, options)
