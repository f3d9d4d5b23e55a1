"""
Veritas Liveness - Shared Utility Module
========================================
Configuration, logging and the small numeric helpers shared by every
Veritas module.

Contains:
  A) config.yaml loading into a validated LivenessConfig
  B) setup_logger for per-module console loggers
  C) RollingBuffer (fixed-capacity FIFO history)
  D) clamp

Configuration errors are fatal: LivenessConfig.validate() raises
ConfigurationError before an engine can be built from a bad config.
"""

from __future__ import annotations

import logging
import math
import os
from collections import deque
from dataclasses import dataclass, field, fields, replace
from typing import Optional

import yaml

from veritas_types import ConfigurationError, SIGNAL_NAMES


_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, 'config.yaml')

NEUTRAL_SCORE = 0.5


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for Veritas modules."""
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


_log = setup_logger('VeritasUtils')


# ===================================================================
# Configuration
# ===================================================================

DEFAULT_WEIGHTS = {
    "cnn": 0.40,
    "frequency": 0.15,
    "texture": 0.12,
    "motion": 0.10,
    "depth": 0.10,
    "color": 0.08,
    "sharpness": 0.05,
}

# YAML section -> {yaml key: LivenessConfig field}
_SECTIONS = {
    "passive": {
        "required_frames": "required_frames",
    },
    "fusion": {
        "pass_threshold": "pass_threshold",
        "fail_threshold": "fail_threshold",
        "weights": "weights",
    },
    "motion": {
        "history_size": "motion_history_size",
        "sample_step": "motion_sample_step",
    },
    "depth": {
        "history_size": "depth_history_size",
    },
    "blink": {
        "required_blinks": "required_blinks",
        "eye_closed_threshold": "eye_closed_threshold",
        "eye_open_threshold": "eye_open_threshold",
        "min_duration_ms": "blink_min_ms",
        "max_duration_ms": "blink_max_ms",
        "natural_std_min_ms": "natural_std_min_ms",
        "natural_std_max_ms": "natural_std_max_ms",
    },
    "engine": {
        "parallel_analyzers": "parallel_analyzers",
        "max_workers": "max_workers",
        "require_face_box": "require_face_box",
        "session_timeout_s": "session_timeout_s",
        "audit_log_path": "audit_log_path",
        "log_level": "log_level",
    },
}


@dataclass(frozen=True)
class LivenessConfig:
    """Every tunable of a liveness session. Defaults match config.yaml."""
    required_frames: int = 10
    required_blinks: int = 2
    pass_threshold: float = 0.60
    fail_threshold: float = 0.40
    weights: dict = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    motion_history_size: int = 10
    motion_sample_step: int = 4
    depth_history_size: int = 20
    eye_closed_threshold: float = 0.30
    eye_open_threshold: float = 0.70
    blink_min_ms: float = 50.0
    blink_max_ms: float = 500.0
    natural_std_min_ms: float = 5.0
    natural_std_max_ms: float = 200.0
    parallel_analyzers: bool = True
    max_workers: int = 4
    require_face_box: bool = False
    session_timeout_s: Optional[float] = None
    audit_log_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LivenessConfig":
        """Build from the nested config.yaml layout (or a flat dict of field names)."""
        if not data:
            return cls().validate()
        flat_names = {f.name for f in fields(cls)}
        kwargs: dict = {}
        for key, value in data.items():
            if key in _SECTIONS:
                if not isinstance(value, dict):
                    raise ConfigurationError(f"Section '{key}' must be a mapping")
                mapping = _SECTIONS[key]
                for sub_key, sub_value in value.items():
                    if sub_key not in mapping:
                        raise ConfigurationError(f"Unknown config key '{key}.{sub_key}'")
                    kwargs[mapping[sub_key]] = sub_value
            elif key in flat_names:
                kwargs[key] = value
            else:
                raise ConfigurationError(f"Unknown config key '{key}'")
        if "weights" in kwargs:
            if not isinstance(kwargs["weights"], dict):
                raise ConfigurationError("fusion.weights must be a mapping")
            kwargs["weights"] = dict(kwargs["weights"])
        return cls(**kwargs).validate()

    def override(self, **changes) -> "LivenessConfig":
        """Copy with some fields replaced, re-validated."""
        return replace(self, **changes).validate()

    def validate(self) -> "LivenessConfig":
        """Reject inconsistent settings. Returns self so calls can chain."""
        self._check_types()
        missing = set(SIGNAL_NAMES) - set(self.weights)
        extra = set(self.weights) - set(SIGNAL_NAMES)
        if missing or extra:
            raise ConfigurationError(
                f"Fusion weights must name exactly {SIGNAL_NAMES} "
                f"(missing={sorted(missing)}, unknown={sorted(extra)})"
            )
        for name, w in self.weights.items():
            if not 0.0 <= w <= 1.0:
                raise ConfigurationError(f"Weight for '{name}' is {w}, outside [0, 1]")
        total = sum(self.weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"Fusion weights sum to {total:.6f}, expected 1.0")

        if not 0.0 <= self.fail_threshold < self.pass_threshold <= 1.0:
            raise ConfigurationError(
                f"Thresholds must satisfy 0 <= fail ({self.fail_threshold}) "
                f"< pass ({self.pass_threshold}) <= 1"
            )
        for name in _COUNT_FIELDS:
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if not 0.0 <= self.eye_closed_threshold < self.eye_open_threshold <= 1.0:
            raise ConfigurationError("Eye thresholds must satisfy 0 <= closed < open <= 1")
        if not 0.0 <= self.blink_min_ms <= self.blink_max_ms:
            raise ConfigurationError("Blink duration window must satisfy 0 <= min <= max")
        if not 0.0 <= self.natural_std_min_ms <= self.natural_std_max_ms:
            raise ConfigurationError("Naturalness std window must satisfy 0 <= min <= max")
        if self.session_timeout_s is not None and self.session_timeout_s <= 0:
            raise ConfigurationError("session_timeout_s must be positive or null")
        if logging.getLevelName(str(self.log_level).upper()) not in (
                logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL):
            raise ConfigurationError(f"Unknown log_level '{self.log_level}'")
        return self

    def _check_types(self) -> None:
        # bool is an int subclass; YAML `yes`/`1.0`/"10" must not slip through
        for name in _COUNT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        for name in _FLAG_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigurationError(f"{name} must be true or false, got {value!r}")
        for name in _NUMBER_FIELDS:
            value = getattr(self, name)
            if name == "session_timeout_s" and value is None:
                continue
            if not _is_number(value):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if not isinstance(self.weights, dict):
            raise ConfigurationError("fusion.weights must be a mapping")
        for name, w in self.weights.items():
            if not _is_number(w):
                raise ConfigurationError(f"Weight for '{name}' must be a number, got {w!r}")
        if self.audit_log_path is not None and not isinstance(self.audit_log_path, str):
            raise ConfigurationError("audit_log_path must be a string or null")
        if not isinstance(self.log_level, str):
            raise ConfigurationError("log_level must be a string")


_COUNT_FIELDS = ("required_frames", "required_blinks", "motion_history_size",
                 "motion_sample_step", "depth_history_size", "max_workers")
_FLAG_FIELDS = ("parallel_analyzers", "require_face_box")
_NUMBER_FIELDS = ("pass_threshold", "fail_threshold", "eye_closed_threshold",
                  "eye_open_threshold", "blink_min_ms", "blink_max_ms",
                  "natural_std_min_ms", "natural_std_max_ms", "session_timeout_s")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def load_config(path: Optional[str] = None) -> LivenessConfig:
    """Load config.yaml (or `path`) into a validated LivenessConfig.

    A missing default config.yaml yields the built-in defaults; an explicit
    path that does not exist is an error.
    """
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            raise ConfigurationError(f"Config file not found: {path}")
        _log.debug("No config.yaml found, using defaults")
        return LivenessConfig().validate()
    with open(target, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{target} must contain a mapping")
    return LivenessConfig.from_dict(data)


# ===================================================================
# Rolling history
# ===================================================================

class RollingBuffer:
    """Fixed-capacity FIFO history; the oldest entry is evicted first."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque = deque(maxlen=capacity)

    def append(self, item) -> None:
        self._items.append(item)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> list:
        return list(self._items)

    @property
    def is_full(self) -> bool:
        return len(self._items) == self.capacity

    def __len__(self) -> int:
        return len(self._items)


# ===================================================================
# Numeric helpers
# ===================================================================

def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))
