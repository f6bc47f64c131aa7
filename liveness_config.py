"""
FaceMesh Liveness - Configuration
=================================
Loads config.yaml, merges it over DEFAULT_CONFIG section by section, and
validates every detector option before a landmarker is ever built.

Also provides setup_logger(), the one place console logging is formatted.
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, Optional

import yaml

from liveness_types import ConfigError

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

RUNNING_MODES = ("image", "video", "live_stream")
DELEGATES = ("cpu", "gpu")

DEFAULT_CONFIG: dict[str, dict[str, Any]] = {
    "detector": {
        "model_path": "face_landmarker.task",
        "max_faces": 1,
        "min_face_detection_confidence": 0.5,
        "min_face_presence_confidence": 0.5,
        "min_tracking_confidence": 0.5,
        "delegate": "cpu",
        "running_mode": "image",
        "output_blendshapes": True,
        "max_in_flight": 4,
        "drain_timeout_s": 1.0,
    },
    "logging": {
        "level": "INFO",
        "audit_log_dir": None,
    },
}


# ===================================================================
# Logging
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured console logger for FaceMesh Liveness modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def resolve_log_level(value: Any) -> int:
    """'DEBUG' / 'info' / 10 -> logging level int."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    level = logging.getLevelName(str(value).upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {value!r}")
    return level


# ===================================================================
# Loading & validation
# ===================================================================

def merge_config(overrides: Optional[dict] = None) -> dict[str, dict[str, Any]]:
    """Return DEFAULT_CONFIG with `overrides` applied per section."""
    merged = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in (overrides or {}).items():
        if section not in merged:
            raise ConfigError(f"Unknown config section: {section!r}")
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Config section {section!r} must be a mapping")
        unknown = set(values) - set(merged[section])
        if unknown:
            raise ConfigError(
                f"Unknown keys in section {section!r}: {', '.join(sorted(unknown))}"
            )
        merged[section] = {**merged[section], **values}
    return merged


def _check_probability(cfg: dict, key: str) -> None:
    value = cfg[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        raise ConfigError(f"detector.{key} must be a number in [0, 1], got {value!r}")


def _check_positive_int(cfg: dict, key: str) -> None:
    value = cfg[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"detector.{key} must be a positive integer, got {value!r}")


def validate_detector_config(cfg: dict[str, Any]) -> dict[str, Any]:
    """Validate (and normalize case of) a merged `detector` section."""
    out = dict(cfg)

    if not isinstance(out["model_path"], str) or not out["model_path"]:
        raise ConfigError("detector.model_path must be a non-empty string")

    _check_positive_int(out, "max_faces")
    _check_positive_int(out, "max_in_flight")
    for key in (
        "min_face_detection_confidence",
        "min_face_presence_confidence",
        "min_tracking_confidence",
    ):
        _check_probability(out, key)

    delegate = str(out["delegate"]).lower()
    if delegate not in DELEGATES:
        raise ConfigError(f"detector.delegate must be one of {DELEGATES}, got {out['delegate']!r}")
    out["delegate"] = delegate

    mode = str(out["running_mode"]).lower()
    if mode not in RUNNING_MODES:
        raise ConfigError(
            f"detector.running_mode must be one of {RUNNING_MODES}, got {out['running_mode']!r}"
        )
    out["running_mode"] = mode

    if not isinstance(out["output_blendshapes"], bool):
        raise ConfigError("detector.output_blendshapes must be true or false")

    timeout = out["drain_timeout_s"]
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
        raise ConfigError(f"detector.drain_timeout_s must be >= 0, got {timeout!r}")
    out["drain_timeout_s"] = float(timeout)

    return out


def validate_config(config: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
    out = dict(config)
    out["detector"] = validate_detector_config(config["detector"])
    logging_cfg = dict(config["logging"])
    resolve_log_level(logging_cfg["level"])
    audit_dir = logging_cfg["audit_log_dir"]
    if audit_dir is not None and not isinstance(audit_dir, str):
        raise ConfigError("logging.audit_log_dir must be a path string or null")
    out["logging"] = logging_cfg
    return out


def load_config(path: Optional[str] = None) -> dict[str, dict[str, Any]]:
    """Load configuration from config.yaml.

    Args:
        path: YAML file to read. None reads the config.yaml next to this
              module, falling back to DEFAULT_CONFIG if it is absent.

    Returns:
        Fully merged and validated configuration.

    Raises:
        ConfigError: Explicit path missing, unparsable YAML, or an
                     invalid value.
    """
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            raise ConfigError(f"Config file not found: {target}")
        return validate_config(merge_config())

    try:
        with open(target, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {target}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{target} must contain a mapping at top level")

    return validate_config(merge_config(raw))


def resolve_model_path(model_path: str, base_dir: Optional[str] = None) -> str:
    """Absolute model path.

    Relative paths that exist from the working directory are used as-is;
    otherwise they resolve against `base_dir` (default: this directory).
    """
    if os.path.isabs(model_path):
        return model_path
    if base_dir is None and os.path.exists(model_path):
        return os.path.abspath(model_path)
    return os.path.join(base_dir or _SCRIPT_DIR, model_path)
