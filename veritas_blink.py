"""
Veritas Liveness - Blink Verifier
=================================
Active liveness check driven by per-eye open probabilities from the face
detector (1.0 = wide open, 0.0 = shut).

STATE MACHINE:

  EYES_OPEN --(avg < 0.30)--> EYES_CLOSED     record closure onset
  EYES_CLOSED --(avg > 0.70)--> EYES_OPEN     duration = now - onset
      50 ms <= duration <= 500 ms  -> blink counted, duration recorded
      otherwise                    -> cycle discarded (noise / deliberate)

Between the thresholds nothing changes (hysteresis). A missing eye
probability reads as 0.5 and therefore never causes a transition.

NATURALNESS: fewer than 3 recorded durations are accepted as natural;
from 3 on, the standard deviation of the durations must lie in
[5 ms, 200 ms]. Identical timings point to a looped video.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from veritas_types import BlinkVerification
from veritas_utils_core import LivenessConfig, NEUTRAL_SCORE, setup_logger

_log = setup_logger('VeritasBlink')

EYES_OPEN = "EYES_OPEN"
EYES_CLOSED = "EYES_CLOSED"


class BlinkVerifier:
    """Counts discrete natural blinks from eye-openness probabilities."""

    def __init__(self, config: Optional[LivenessConfig] = None):
        cfg = config or LivenessConfig()
        self.required_blinks = cfg.required_blinks
        self.closed_threshold = cfg.eye_closed_threshold
        self.open_threshold = cfg.eye_open_threshold
        self.min_duration_ms = cfg.blink_min_ms
        self.max_duration_ms = cfg.blink_max_ms
        self.natural_std_min_ms = cfg.natural_std_min_ms
        self.natural_std_max_ms = cfg.natural_std_max_ms

        self.state = EYES_OPEN
        self.blink_count = 0
        self.blink_timings_ms: list[float] = []
        self._closed_at = 0.0

    @staticmethod
    def average_openness(left: Optional[float], right: Optional[float]) -> float:
        """Mean of both eyes; an unavailable eye reads as neutral 0.5."""
        l = NEUTRAL_SCORE if left is None else float(left)
        r = NEUTRAL_SCORE if right is None else float(right)
        return (l + r) / 2.0

    def update(
        self,
        left_open: Optional[float],
        right_open: Optional[float],
        timestamp: float,
    ) -> BlinkVerification:
        """Advance the state machine by one frame.

        Args:
            left_open: Left-eye open probability in [0, 1], or None.
            right_open: Right-eye open probability in [0, 1], or None.
            timestamp: Monotonic time in seconds.
        """
        avg = self.average_openness(left_open, right_open)
        detected = False

        if self.is_complete:
            # Required count reached; further frames do not change the verdict
            return self._snapshot(avg, detected)

        if self.state == EYES_OPEN and avg < self.closed_threshold:
            self.state = EYES_CLOSED
            self._closed_at = timestamp
            _log.debug("Eyes CLOSED (avg=%.2f)", avg)

        elif self.state == EYES_CLOSED and avg > self.open_threshold:
            self.state = EYES_OPEN
            duration_ms = round((timestamp - self._closed_at) * 1000.0, 3)
            if self.min_duration_ms <= duration_ms <= self.max_duration_ms:
                self.blink_count += 1
                self.blink_timings_ms.append(duration_ms)
                detected = True
                _log.debug("Blink %d detected (%.0f ms)", self.blink_count, duration_ms)
            else:
                kind = "short" if duration_ms < self.min_duration_ms else "long"
                _log.debug("Eye closure too %s: %.0f ms", kind, duration_ms)

        snapshot = self._snapshot(avg, detected)
        if snapshot.is_complete:
            _log.info("Required blinks completed (natural=%s)", snapshot.is_natural)
        return snapshot

    @property
    def is_complete(self) -> bool:
        return self.blink_count >= self.required_blinks

    def is_natural(self) -> bool:
        if len(self.blink_timings_ms) < 3:
            return True
        timings = np.asarray(self.blink_timings_ms, dtype=np.float64)
        mean, std = float(np.mean(timings)), float(np.std(timings))
        natural = self.natural_std_min_ms <= std <= self.natural_std_max_ms
        _log.debug("Blink timing: avg=%.1f ms, std=%.1f ms, natural=%s", mean, std, natural)
        return natural

    def _snapshot(self, avg: float, detected: bool) -> BlinkVerification:
        return BlinkVerification(
            blink_count=self.blink_count,
            is_complete=self.is_complete,
            is_natural=self.is_natural(),
            current_openness=avg,
            blink_detected=detected,
            blink_timings_ms=tuple(self.blink_timings_ms),
        )

    def reset(self) -> None:
        self.state = EYES_OPEN
        self.blink_count = 0
        self.blink_timings_ms.clear()
        self._closed_at = 0.0
