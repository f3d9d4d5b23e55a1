"""
Veritas Liveness - Per-Frame Signal Analyzers
=============================================
Six independent liveness signals, each mapped to a score in [0.0, 1.0]
(higher = more likely a live face, 0.5 = no opinion).

Stateless (one frame in, one score out):
  A) Texture   - Local Binary Pattern histogram entropy
  B) Frequency - gradient-magnitude high/low energy ratio (moire, blur)
  C) Color     - YCrCb skin-tone ratio in the central region
  D) Sharpness - standard deviation of the 4-neighbour Laplacian

Stateful (rolling history, strict frame order):
  E) MotionAnalyzer - variance of frame-difference magnitudes
  F) DepthAnalyzer  - head-pose (yaw, pitch, roll) variance

Frames are (H, W, 3) uint8 arrays in OpenCV BGR order. Buffers too small
to analyze return the neutral score instead of raising.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import cv2
import numpy as np

from veritas_utils_core import (
    NEUTRAL_SCORE,
    RollingBuffer,
    clamp,
    setup_logger,
)

_log = setup_logger('VeritasSignals')

_LN_256 = math.log(256.0)
_HIGH_FREQ_GRADIENT = 50.0


def to_grayscale(frame: np.ndarray) -> np.ndarray:
    """BGR / BGRA / single-channel frame -> 2-D uint8 luminance."""
    if frame is None or frame.size == 0:
        raise ValueError("empty frame")
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    if frame.ndim == 2:
        return frame
    if frame.ndim == 3 and frame.shape[2] == 1:
        return frame[:, :, 0]
    if frame.ndim == 3 and frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    if frame.ndim == 3 and frame.shape[2] == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    raise ValueError(f"unsupported frame shape {frame.shape}")


def _has_interior(gray: np.ndarray) -> bool:
    return gray.shape[0] >= 3 and gray.shape[1] >= 3


# ===================================================================
# A) TEXTURE: LOCAL BINARY PATTERN ENTROPY
# ===================================================================

def lbp_histogram(gray: np.ndarray) -> np.ndarray:
    """256-bin histogram of 8-neighbour LBP codes over interior pixels.

    Bit order runs clockwise from the top-left neighbour:
      top-left=1, top=2, top-right=4, right=8,
      bottom-right=16, bottom=32, bottom-left=64, left=128
    A bit is set when the neighbour is >= the centre pixel.
    """
    g = gray.astype(np.int16)
    center = g[1:-1, 1:-1]
    neighbours = (
        g[:-2, :-2],   # top-left
        g[:-2, 1:-1],  # top
        g[:-2, 2:],    # top-right
        g[1:-1, 2:],   # right
        g[2:, 2:],     # bottom-right
        g[2:, 1:-1],   # bottom
        g[2:, :-2],    # bottom-left
        g[1:-1, :-2],  # left
    )
    codes = np.zeros(center.shape, dtype=np.int32)
    for bit, n in enumerate(neighbours):
        codes |= (n >= center).astype(np.int32) << bit
    return np.bincount(codes.ravel(), minlength=256)


def lbp_entropy_to_score(normalized_entropy: float) -> float:
    if normalized_entropy < 0.3:
        score = 0.3 + normalized_entropy   # too uniform (print)
    elif normalized_entropy > 0.95:
        score = 0.7                        # too random (noise)
    else:
        score = 0.5 + normalized_entropy * 0.4
    return clamp(score)


def compute_lbp_score(frame: np.ndarray) -> float:
    """Texture score from the Shannon entropy of the LBP histogram."""
    gray = to_grayscale(frame)
    if not _has_interior(gray):
        return NEUTRAL_SCORE

    hist = lbp_histogram(gray)
    total = hist.sum()
    p = hist[hist > 0] / total
    entropy = float(-(p * np.log(p)).sum())
    normalized = entropy / _LN_256

    score = lbp_entropy_to_score(normalized)
    _log.debug("LBP score: %.3f (entropy: %.3f)", score, normalized)
    return score


# ===================================================================
# B) FREQUENCY: GRADIENT ENERGY RATIO
# ===================================================================

def high_frequency_ratio(gray: np.ndarray) -> float:
    """Share of gradient energy carried by magnitudes above 50.

    Central differences at interior pixels; 0.5 when the image is flat.
    """
    g = gray.astype(np.float64)
    dx = np.abs(g[1:-1, 2:] - g[1:-1, :-2])
    dy = np.abs(g[2:, 1:-1] - g[:-2, 1:-1])
    magnitude = np.sqrt(dx * dx + dy * dy)

    high_mask = magnitude > _HIGH_FREQ_GRADIENT
    high = float(magnitude[high_mask].sum())
    low = float(magnitude[~high_mask].sum())
    total = high + low
    if total <= 0:
        return 0.5
    return high / total


def frequency_ratio_to_score(ratio: float) -> float:
    if ratio < 0.05:
        score = 0.4   # too smooth (blurry photo)
    elif ratio > 0.4:
        score = 0.5   # too much high frequency (moire / noise)
    else:
        score = 0.6 + (1.0 - abs(ratio - 0.15) / 0.15) * 0.3
    return clamp(score)


def compute_frequency_score(frame: np.ndarray) -> float:
    """Screen replays concentrate gradient energy in a narrow high band."""
    gray = to_grayscale(frame)
    if not _has_interior(gray):
        return NEUTRAL_SCORE

    ratio = high_frequency_ratio(gray)
    score = frequency_ratio_to_score(ratio)
    _log.debug("Frequency score: %.3f (high_freq_ratio: %.3f)", score, ratio)
    return score


# ===================================================================
# C) COLOR: YCrCb SKIN RATIO
# ===================================================================

def skin_ratio(frame: np.ndarray) -> Optional[float]:
    """Fraction of skin-toned pixels in the central 50% x 50% region.

    Returns None when the region is empty (frame smaller than 2x2).
    """
    if frame.ndim != 3 or frame.shape[2] < 3:
        raise ValueError(f"color analysis needs a 3-channel frame, got {frame.shape}")
    h, w = frame.shape[:2]
    region = frame[h // 4:3 * h // 4, w // 4:3 * w // 4, :3].astype(np.float64)
    if region.size == 0:
        return None

    b, g, r = region[:, :, 0], region[:, :, 1], region[:, :, 2]
    cr = 128.0 + 0.5 * r - 0.418688 * g - 0.081312 * b
    cb = 128.0 - 0.168736 * r - 0.331264 * g + 0.5 * b
    skin = (cr >= 133.0) & (cr <= 173.0) & (cb >= 77.0) & (cb <= 127.0)
    return float(skin.sum()) / float(skin.size)


def skin_ratio_to_score(ratio: float) -> float:
    if ratio < 0.25:
        score = 0.4    # too few skin pixels (mask / odd lighting)
    elif ratio > 0.85:
        score = 0.5    # suspiciously uniform
    elif 0.35 <= ratio <= 0.75:
        score = 0.7 + (1.0 - abs(ratio - 0.55) / 0.2) * 0.25
    else:
        score = 0.55
    return clamp(score)


def compute_color_score(frame: np.ndarray) -> float:
    if frame.shape[0] < 3 or frame.shape[1] < 3:
        return NEUTRAL_SCORE
    ratio = skin_ratio(frame)
    if ratio is None:
        return NEUTRAL_SCORE
    score = skin_ratio_to_score(ratio)
    _log.debug("Color score: %.3f (skin ratio: %.3f)", score, ratio)
    return score


# ===================================================================
# D) SHARPNESS: LAPLACIAN STANDARD DEVIATION
# ===================================================================

def laplacian_std(gray: np.ndarray) -> float:
    """Population std of the [0,1,0; 1,-4,1; 0,1,0] response at interior pixels."""
    # ksize=1 is exactly the 4-neighbour kernel; the border rows/cols are discarded
    lap = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[1:-1, 1:-1]
    return float(lap.std())


def sharpness_to_score(normalized: float) -> float:
    if normalized < 0.2:
        score = 0.4    # too blurry
    elif normalized > 1.5:
        score = 0.6    # artificially sharp
    else:
        score = 0.55 + normalized * 0.35
    return clamp(score)


def compute_sharpness_score(frame: np.ndarray) -> float:
    gray = to_grayscale(frame)
    if not _has_interior(gray):
        return NEUTRAL_SCORE

    std = laplacian_std(gray)
    normalized = clamp(std / 50.0, 0.0, 2.0)
    score = sharpness_to_score(normalized)
    _log.debug("Sharpness score: %.3f (laplacian std: %.2f)", score, std)
    return score


# ===================================================================
# E) MOTION: FRAME-DIFFERENCE VARIANCE OVER HISTORY
# ===================================================================

class MotionAnalyzer:
    """Frame differencing against the previous frame of the same session.

    Live faces move a little and irregularly; photos barely move and
    replayed video moves too smoothly.
    """

    FIRST_FRAME_MAGNITUDE = 10.0
    MIN_HISTORY = 3

    def __init__(self, history_size: int = 10, sample_step: int = 4):
        self.sample_step = sample_step
        self.history = RollingBuffer(history_size)
        self._previous: Optional[np.ndarray] = None

    def analyze(self, frame: np.ndarray) -> float:
        gray = to_grayscale(frame).astype(np.int16)

        if self._previous is not None and self._previous.shape == gray.shape:
            step = self.sample_step
            diff = np.abs(gray[::step, ::step] - self._previous[::step, ::step]).astype(np.float64)
            magnitude = float(np.sqrt(diff.var()))
        else:
            magnitude = self.FIRST_FRAME_MAGNITUDE

        self._previous = gray
        self.history.append(magnitude)
        return self.score()

    def score(self) -> float:
        """Score the current history; neutral until MIN_HISTORY entries exist."""
        if len(self.history) < self.MIN_HISTORY:
            return NEUTRAL_SCORE

        magnitudes = np.asarray(self.history.snapshot(), dtype=np.float64)
        mean, std = float(np.mean(magnitudes)), float(np.std(magnitudes))
        if mean < 2.0 and std < 1.0:
            score = 0.3    # too still (photo)
        elif mean > 50.0:
            score = 0.4    # too erratic (shaking device)
        elif std < 2.0 and mean > 5.0:
            score = 0.4    # too smooth (video)
        else:
            score = 0.6 + (clamp(std, 2.0, 15.0) - 2.0) / 13.0 * 0.3

        _log.debug("Motion score: %.3f (mean: %.2f, std: %.2f)", score, mean, std)
        return clamp(score)

    def reset(self) -> None:
        self.history.clear()
        self._previous = None


# ===================================================================
# F) DEPTH: HEAD-POSE VARIANCE OVER HISTORY
# ===================================================================

class DepthAnalyzer:
    """Flat attacks (photo, screen) show almost no natural head-pose drift."""

    MIN_HISTORY = 5

    def __init__(self, history_size: int = 20):
        self.history = RollingBuffer(history_size)

    def analyze(self, euler_angles: Sequence[float]) -> float:
        yaw, pitch, roll = (float(a) for a in euler_angles)
        if not all(math.isfinite(a) for a in (yaw, pitch, roll)):
            raise ValueError(f"non-finite head pose {euler_angles!r}")
        self.history.append((yaw, pitch, roll))
        return self.score()

    def total_variance(self) -> float:
        if not len(self.history):
            return 0.0
        poses = np.asarray(self.history.snapshot(), dtype=np.float64)
        return float(np.var(poses, axis=0).sum())

    def score(self) -> float:
        if len(self.history) < self.MIN_HISTORY:
            return NEUTRAL_SCORE

        total = self.total_variance()
        if total < 1.0:
            score = 0.3    # too still
        elif total > 500.0:
            score = 0.4    # too erratic
        else:
            score = 0.5 + (clamp(total, 1.0, 50.0) - 1.0) / 49.0 * 0.4

        _log.debug("Depth score: %.3f (variance: %.2f)", score, total)
        return clamp(score)

    def reset(self) -> None:
        self.history.clear()
