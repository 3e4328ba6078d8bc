"""
Tests for configuration loading and the verification threshold.

Run with: pytest tests/test_config.py -v
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceauth import config as config_module
from faceauth.config import (
    DEFAULT_THRESHOLD,
    get_config,
    get_enrollment_config,
    get_project_root,
    get_section,
    get_threshold,
    get_verification_config,
    load_config,
)
from faceauth.similarity import SimilarityCalibration
from faceauth.stability import StabilityConfig


class TestProjectConfig:
    """The shipped config.yaml."""

    def test_project_root_has_config(self):
        assert (get_project_root() / "config.yaml").exists()

    def test_default_sections(self, config_override):
        config_override(None)
        config = get_config(reload=True)

        for section in ("detector", "similarity", "enrollment", "verification", "storage", "camera"):
            assert section in config

    def test_enrollment_defaults(self, config_override):
        config_override(None)
        stability = StabilityConfig.from_config(get_enrollment_config())

        assert stability.required_stable_frames == 15
        assert stability.quality_target == 85
        assert stability.fallback_floor == 70
        assert stability.timeout_ms == 45000

    def test_verification_defaults(self, config_override):
        config_override(None)
        verification = get_verification_config()

        assert verification["threshold"] == 80
        assert verification["required_stable_frames"] == 10
        assert verification["timeout_ms"] == 20000

    def test_similarity_knots_are_valid(self, config_override):
        config_override(None)
        calibration = SimilarityCalibration.from_config(get_section("similarity"))
        assert calibration(0.0) == 100
        assert calibration(0.6) == 70

    def test_missing_section(self, config_override):
        config_override({})
        with pytest.raises(KeyError):
            get_section("enrollment")


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("verification:\n  threshold: 75\n", encoding="utf-8")

        assert load_config(str(path)) == {"verification": {"threshold": 75}}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_environment_override(self, tmp_path, monkeypatch):
        path = tmp_path / "site.yaml"
        path.write_text("verification:\n  threshold: 90\n", encoding="utf-8")
        monkeypatch.setenv("FACEAUTH_CONFIG", str(path))

        assert load_config() == {"verification": {"threshold": 90}}

    def test_explicit_path_beats_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("camera:\n  device_id: 1\n", encoding="utf-8")
        monkeypatch.setenv("FACEAUTH_CONFIG", str(tmp_path / "absent.yaml"))

        assert load_config(str(path)) == {"camera": {"device_id": 1}}

    def test_environment_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FACEAUTH_CONFIG", str(tmp_path / "absent.yaml"))
        with pytest.raises(FileNotFoundError):
            load_config()

    def test_singleton(self, config_override):
        config_override({"verification": {"threshold": 70}})
        assert get_config() is get_config()
        assert config_module._config_instance == {"verification": {"threshold": 70}}


class TestThreshold:
    """Tests for get_threshold()."""

    @pytest.mark.parametrize("raw,expected", [
        (80, 80),
        (50, 50),
        (100, 100),
        ("85", 85),
        (30, 50),
        (150, 100),
        (90.0, 90),
        (82.5, DEFAULT_THRESHOLD),
        ("high", DEFAULT_THRESHOLD),
        (None, DEFAULT_THRESHOLD),
    ])
    def test_threshold_values(self, config_override, raw, expected):
        config_override({"verification": {"threshold": raw}})
        assert get_threshold() == expected

    def test_missing_threshold(self, config_override):
        config_override({"verification": {}})
        assert get_threshold() == DEFAULT_THRESHOLD

    def test_missing_section(self, config_override):
        config_override({})
        assert get_threshold() == DEFAULT_THRESHOLD
