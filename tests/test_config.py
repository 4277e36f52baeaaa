"""Tests for environment-driven settings."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mediaclassify.config import Settings, get_settings
from mediaclassify.media.acquisition import IoMode
from mediaclassify.pipeline.requests import ClassifyOptions


class TestSettings:
    def test_reads_prefixed_environment(self) -> None:
        env = {"MEDIACLASSIFY_FRAMES": "12", "MEDIACLASSIFY_IO_MODE": "disk", "MEDIACLASSIFY_API_KEY": "k"}
        with patch.dict(os.environ, env):
            settings = get_settings()

        assert settings.frames == 12
        assert settings.api_key == "k"
        options = ClassifyOptions.from_settings(settings)
        assert options.frames == 12
        assert options.io_mode is IoMode.DISK

    def test_rejects_out_of_range_values(self) -> None:
        with pytest.raises(ValidationError):
            Settings(frames=0)

    def test_only_runtime_fields(self) -> None:
        fields = set(Settings.model_fields)
        assert {"host", "port"}.isdisjoint(fields)
        assert {"api_key", "max_file_size", "ffmpeg_path"} <= fields
