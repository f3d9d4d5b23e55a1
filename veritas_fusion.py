"""
Veritas Liveness - Fusion Scorer
================================
Combines the seven per-frame signals into one weighted score, maps it to
PASS / FAIL / UNCERTAIN and labels the most likely attack.

DECISION BANDS (defaults):

  final_score >= 0.60  -> PASS       (live)
  final_score <= 0.40  -> FAIL       (spoof, attack type inferred)
  otherwise            -> UNCERTAIN  (escalate to the blink check)

ATTACK INFERENCE (first matching rule wins):

  1. cnn < 0.3                       -> SCREEN_REPLAY if frequency < 0.5
                                        else PRINTED_PHOTO
  2. frequency < 0.4                 -> SCREEN_REPLAY
  3. texture < 0.4 and motion < 0.4  -> PRINTED_PHOTO
  4. depth < 0.35                    -> MASK_2D
  5. motion < 0.4                    -> VIDEO_REPLAY
  6. color < 0.45 and sharpness < 0.45 -> MASK_3D
  7. otherwise                       -> UNKNOWN

The scorer holds no session state; temporal aggregation works on a
history owned by the caller.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from veritas_types import AttackType, Decision, FrameSignals, SIGNAL_NAMES
from veritas_utils_core import LivenessConfig, NEUTRAL_SCORE, clamp, setup_logger

_log = setup_logger('VeritasFusion')


class FusionScorer:
    """Weighted fusion, threshold decision and attack labelling."""

    def __init__(self, config: Optional[LivenessConfig] = None):
        self.config = (config or LivenessConfig()).validate()
        self.weights = dict(self.config.weights)
        self.pass_threshold = self.config.pass_threshold
        self.fail_threshold = self.config.fail_threshold

    def calculate(
        self,
        cnn: float,
        texture: float,
        frequency: float,
        color: float,
        sharpness: float,
        motion: float,
        depth: float,
    ) -> FrameSignals:
        """Fuse one frame's signal scores into FrameSignals."""
        scores = {
            "cnn": _signal_score(cnn),
            "texture": _signal_score(texture),
            "frequency": _signal_score(frequency),
            "color": _signal_score(color),
            "sharpness": _signal_score(sharpness),
            "motion": _signal_score(motion),
            "depth": _signal_score(depth),
        }
        final = clamp(sum(self.weights[name] * scores[name] for name in SIGNAL_NAMES))

        _log.debug(
            "Score breakdown: %s -> final %.3f (pass>=%.2f, fail<=%.2f)",
            " ".join(f"{n}={scores[n]:.3f}x{self.weights[n]:.2f}" for n in SIGNAL_NAMES),
            final, self.pass_threshold, self.fail_threshold,
        )
        return FrameSignals(final_score=final, **scores)

    def decide(self, final_score: float) -> Decision:
        if final_score >= self.pass_threshold:
            decision = Decision.PASS
        elif final_score <= self.fail_threshold:
            decision = Decision.FAIL
        else:
            decision = Decision.UNCERTAIN
        _log.debug("Decision: %s (score: %.3f)", decision.value, final_score)
        return decision

    @staticmethod
    def detect_attack_type(signals: FrameSignals) -> AttackType:
        s = signals
        if s.cnn < 0.3:
            attack = AttackType.SCREEN_REPLAY if s.frequency < 0.5 else AttackType.PRINTED_PHOTO
        elif s.frequency < 0.4:
            attack = AttackType.SCREEN_REPLAY
        elif s.texture < 0.4 and s.motion < 0.4:
            attack = AttackType.PRINTED_PHOTO
        elif s.depth < 0.35:
            attack = AttackType.MASK_2D
        elif s.motion < 0.4:
            attack = AttackType.VIDEO_REPLAY
        elif s.color < 0.45 and s.sharpness < 0.45:
            attack = AttackType.MASK_3D
        else:
            attack = AttackType.UNKNOWN
        _log.debug("Detected attack type: %s", attack.value)
        return attack

    @staticmethod
    def aggregate(history: Sequence[FrameSignals]) -> FrameSignals:
        """Per-component median across the history.

        The median (not the mean) keeps one outlier frame from moving the
        session verdict. An empty history aggregates to all zeros.
        """
        if not history:
            return FrameSignals(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
        fields = SIGNAL_NAMES + ("final_score",)
        values = np.array([[getattr(s, f) for f in fields] for s in history], dtype=np.float64)
        medians = np.median(values, axis=0)
        return FrameSignals(**{f: float(m) for f, m in zip(fields, medians)})


def _signal_score(value: float) -> float:
    """Clamp to [0, 1]; NaN and infinities carry no opinion."""
    value = float(value)
    if not math.isfinite(value):
        return NEUTRAL_SCORE
    return clamp(value)
