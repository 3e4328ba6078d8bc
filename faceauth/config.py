"""
Configuration Management Module

Calibration for the engine lives in config.yaml: detector backend settings,
the distance-to-similarity knots, the enrollment and verification stability
parameters, storage and camera. The file is parsed once and shared by every
controller in the process; set FACEAUTH_CONFIG to load a different file.

get_threshold() is the configuration collaborator of verification: each
session reads it exactly once, when it starts.

Usage:
    from faceauth.config import get_config, get_threshold
    config = get_config()
    enrollment_config = config["enrollment"]
    threshold = get_threshold()
"""

import logging
import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FACEAUTH_CONFIG"

DEFAULT_THRESHOLD = 80
MIN_THRESHOLD = 50
MAX_THRESHOLD = 100

# Process-wide configuration, loaded on first use
_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Locate the directory holding config.yaml, searching upwards from the package.

    Raises:
        FileNotFoundError: If no parent directory has a config.yaml.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / "config.yaml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "No config.yaml found above the faceauth package. "
        f"Set {CONFIG_ENV_VAR} to the calibration file to use."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a calibration file.

    Args:
        config_path: File to read. Defaults to $FACEAUTH_CONFIG, then to the
                     project's config.yaml.

    Returns:
        The parsed mapping; an empty file yields {}.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR) or get_project_root() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    logger.debug(f"Loaded configuration from {config_path}")
    return config or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Return the shared configuration, loading it on first call.

    Args:
        reload: Re-read the file even if a configuration is already loaded.

    Example:
        timeout_ms = get_config()["enrollment"]["timeout_ms"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def set_config(config: Optional[Dict[str, Any]]) -> None:
    """Replace the configuration singleton (None clears it)."""
    global _config_instance
    _config_instance = config


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Return one top-level section ("enrollment", "verification", ...).

    Raises:
        KeyError: If the section is missing; the message lists the ones present.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


# Per-section accessors
def get_detector_config() -> Dict[str, Any]:
    """Get face detector backend configuration."""
    return get_section("detector")


def get_similarity_config() -> Dict[str, Any]:
    """Get distance -> similarity calibration configuration."""
    return get_section("similarity")


def get_enrollment_config() -> Dict[str, Any]:
    """Get enrollment stability configuration."""
    return get_section("enrollment")


def get_verification_config() -> Dict[str, Any]:
    """Get verification stability configuration."""
    return get_section("verification")


def get_storage_config() -> Dict[str, Any]:
    """Get storage configuration."""
    return get_section("storage")


def get_camera_config() -> Dict[str, Any]:
    """Get camera configuration."""
    return get_section("camera")


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration (optional section)."""
    return get_config().get("logging", {})


def get_threshold() -> int:
    """
    Get the verification similarity threshold as an integer percentage.

    Non-integer values fall back to the default of 80. Values outside the
    accepted 50..100 range are clamped into it. Both cases log a warning.

    Returns:
        Threshold percentage in [50, 100].
    """
    raw = get_config().get("verification", {}).get("threshold", DEFAULT_THRESHOLD)

    try:
        if isinstance(raw, float) and not raw.is_integer():
            raise ValueError(raw)
        threshold = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid verification threshold {raw!r}, using {DEFAULT_THRESHOLD}")
        return DEFAULT_THRESHOLD

    if threshold < MIN_THRESHOLD or threshold > MAX_THRESHOLD:
        clamped = max(MIN_THRESHOLD, min(MAX_THRESHOLD, threshold))
        logger.warning(
            f"Verification threshold {threshold} outside "
            f"[{MIN_THRESHOLD}, {MAX_THRESHOLD}], clamped to {clamped}"
        )
        return clamped

    return threshold
