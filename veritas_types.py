"""
Veritas Liveness - Shared Types
===============================
Value objects passed between the signal analyzers, the fusion scorer,
the blink verifier and the engine.

  FrameSignals      - one fused score set per processed frame
  BlinkVerification - snapshot of the active (blink) check
  LivenessResult    - terminal session outcome
  LivenessStage     - Initializing | FaceAlignment | PassiveAnalysis
                      | ActivePrompt | Completed
"""

from __future__ import annotations

import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Optional, Union

import numpy as np


class ConfigurationError(ValueError):
    """Raised when a LivenessConfig is rejected before any session starts."""


class AttackType(str, Enum):
    """Closed set of spoofing attack labels."""
    PRINTED_PHOTO = "PRINTED_PHOTO"
    SCREEN_REPLAY = "SCREEN_REPLAY"
    MASK_2D = "MASK_2D"
    MASK_3D = "MASK_3D"
    VIDEO_REPLAY = "VIDEO_REPLAY"
    DEEPFAKE = "DEEPFAKE"
    UNKNOWN = "UNKNOWN"


class Decision(str, Enum):
    """Outcome of the fusion threshold check."""
    PASS = "PASS"
    FAIL = "FAIL"
    UNCERTAIN = "UNCERTAIN"


SIGNAL_NAMES = ("cnn", "texture", "frequency", "color", "sharpness", "motion", "depth")


@dataclass(frozen=True)
class FaceBox:
    """Face bounding box in pixel coordinates (x, y, w, h)."""
    x: int
    y: int
    w: int
    h: int

    @classmethod
    def from_tuple(cls, box) -> Optional["FaceBox"]:
        if box is None:
            return None
        if isinstance(box, FaceBox):
            return box
        x, y, w, h = box
        return cls(int(x), int(y), int(w), int(h))

    @classmethod
    def center_square(cls, frame_w: int, frame_h: int) -> "FaceBox":
        """Centred square with side min(W, H) / 2, used when no face box is known."""
        size = min(frame_w, frame_h) // 2
        cx, cy = frame_w // 2, frame_h // 2
        return cls(cx - size // 2, cy - size // 2, size, size)

    def clip(self, frame_w: int, frame_h: int) -> "FaceBox":
        x1 = max(0, self.x)
        y1 = max(0, self.y)
        x2 = min(frame_w, self.x + self.w)
        y2 = min(frame_h, self.y + self.h)
        return FaceBox(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def crop(self, frame: np.ndarray) -> np.ndarray:
        h, w = frame.shape[:2]
        b = self.clip(w, h)
        return frame[b.y:b.y + b.h, b.x:b.x + b.w]


@dataclass(frozen=True)
class FrameSignals:
    """Per-signal confidences in [0, 1] plus their weighted fusion."""
    cnn: float
    texture: float
    frequency: float
    color: float
    sharpness: float
    motion: float
    depth: float
    final_score: float

    def __post_init__(self):
        for name in SIGNAL_NAMES + ("final_score",):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name}={value} outside [0, 1]")

    @classmethod
    def neutral(cls) -> "FrameSignals":
        return cls(0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5)

    def components(self) -> dict:
        """The seven analyzer scores, without the fused value."""
        return {name: getattr(self, name) for name in SIGNAL_NAMES}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class BlinkVerification:
    """State of the blink check after one frame."""
    blink_count: int
    is_complete: bool
    is_natural: bool
    current_openness: float
    blink_detected: bool = False
    blink_timings_ms: tuple[float, ...] = ()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["blink_timings_ms"] = list(self.blink_timings_ms)
        return d


@dataclass(frozen=True)
class LivenessResult:
    """Terminal outcome of one detection session."""
    passed: bool
    confidence: float
    passive_signals: FrameSignals
    active_result: Optional[BlinkVerification] = None
    attack_type: Optional[AttackType] = None
    abort_reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "confidence": round(self.confidence, 4),
            "passive_signals": self.passive_signals.to_dict(),
            "active_result": self.active_result.to_dict() if self.active_result else None,
            "attack_type": self.attack_type.value if self.attack_type else None,
            "abort_reason": self.abort_reason,
            "timestamp": self.timestamp,
        }


# ===================================================================
# Liveness stages
# ===================================================================

@dataclass(frozen=True)
class Initializing:
    name = "INITIALIZING"


@dataclass(frozen=True)
class FaceAlignment:
    name = "FACE_ALIGNMENT"


@dataclass(frozen=True)
class PassiveAnalysis:
    frame_count: int
    total_frames: int
    current_signals: Optional[FrameSignals] = None
    name = "PASSIVE_ANALYSIS"


@dataclass(frozen=True)
class ActivePrompt:
    blink_count: int
    required_blinks: int
    name = "ACTIVE_PROMPT"


@dataclass(frozen=True)
class Completed:
    result: LivenessResult
    name = "COMPLETED"


LivenessStage = Union[Initializing, FaceAlignment, PassiveAnalysis, ActivePrompt, Completed]


def describe_stage(stage: LivenessStage) -> dict:
    """Flatten a stage into a JSON-friendly dict for audit logs and the CLI."""
    if isinstance(stage, PassiveAnalysis):
        return {
            "stage": stage.name,
            "frame_count": stage.frame_count,
            "total_frames": stage.total_frames,
            "signals": stage.current_signals.to_dict() if stage.current_signals else None,
        }
    if isinstance(stage, ActivePrompt):
        return {
            "stage": stage.name,
            "blink_count": stage.blink_count,
            "required_blinks": stage.required_blinks,
        }
    if isinstance(stage, Completed):
        return {"stage": stage.name, "result": stage.result.to_dict()}
    return {"stage": stage.name}
