"""
Veritas Liveness - LivenessEngine (Session Orchestrator)
========================================================
Sequences one liveness session:

  INITIALIZING / FACE_ALIGNMENT
        | first frame
        v
  PASSIVE_ANALYSIS(k, N)    all analyzers + CNN per frame, fused, kept in
        |                   a bounded history; at k == N the history is
        |                   median-aggregated and thresholded
        |-- PASS ------------------------------> COMPLETED(passed)
        |-- FAIL ------------------------------> COMPLETED(failed, attack)
        v UNCERTAIN
  ACTIVE_PROMPT(b, 2)       blink verifier per frame
        | required blinks seen
        v
  COMPLETED(natural blinks -> passed 0.90, else failed 0.85 + attack)

COMPLETED is terminal until reset(). Each engine owns all of its session
state, so concurrent sessions need separate engines.

Frames are processed one at a time: a frame that arrives while another is
still in flight is dropped and the current stage returned. Within a frame
the analyzers fan out on a thread pool and are joined before fusion. A
failing analyzer contributes the neutral 0.5 for that frame only.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

import numpy as np
import psutil

from veritas_blink import BlinkVerifier
from veritas_fusion import FusionScorer
from veritas_logger import AuditLogger, get_logger
from veritas_scorer import CNNScoreAdapter
from veritas_signals import (
    DepthAnalyzer,
    MotionAnalyzer,
    compute_color_score,
    compute_frequency_score,
    compute_lbp_score,
    compute_sharpness_score,
)
from veritas_types import (
    ActivePrompt,
    BlinkVerification,
    Completed,
    Decision,
    FaceAlignment,
    FaceBox,
    FrameSignals,
    Initializing,
    LivenessResult,
    LivenessStage,
    PassiveAnalysis,
    describe_stage,
)
from veritas_utils_core import (
    LivenessConfig,
    NEUTRAL_SCORE,
    RollingBuffer,
    load_config,
    setup_logger,
)

ACTIVE_PASS_CONFIDENCE = 0.90
ACTIVE_FAIL_CONFIDENCE = 0.85


class LivenessEngine:
    """Passive -> active liveness decision for one detection session."""

    def __init__(
        self,
        config: Optional[LivenessConfig] = None,
        scorer=None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Args:
            config: Validated settings; defaults to config.yaml.
            scorer: External CNN scorer (callable or `.predict(frame, box)`).
                    None reports the neutral 0.5 for the CNN signal.
            audit_logger: JSONL audit trail; defaults to config.audit_log_path.
        """
        self.config = (config or load_config()).validate()
        self._log = setup_logger('VeritasEngine', self.config.log_level.upper())
        self.audit = audit_logger or get_logger(self.config.audit_log_path, self._log)

        self.fusion = FusionScorer(self.config)
        self.blink = BlinkVerifier(self.config)
        self.motion = MotionAnalyzer(self.config.motion_history_size, self.config.motion_sample_step)
        self.depth = DepthAnalyzer(self.config.depth_history_size)
        self.cnn = CNNScoreAdapter(scorer)

        self.history = RollingBuffer(self.config.required_frames)
        self.stage: LivenessStage = Initializing()
        self._session_started: Optional[float] = None
        self._last_verification: Optional[BlinkVerification] = None

        self._busy = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.config.parallel_analyzers:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="veritas-signal",
            )

        # Monitoring
        self._process = psutil.Process()
        self._frame_times: deque = deque(maxlen=120)
        self.frames_processed = 0
        self.dropped_frames = 0
        self.signal_faults: dict[str, int] = {}

        self.audit.log({
            "event": "engine_init",
            "required_frames": self.config.required_frames,
            "required_blinks": self.config.required_blinks,
            "thresholds": [self.config.pass_threshold, self.config.fail_threshold],
            "weights": self.config.weights,
            "cnn_enabled": self.cnn.enabled,
        })

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_frame(
        self,
        frame: np.ndarray,
        eye_openness: Optional[Sequence[Optional[float]]] = None,
        euler_angles: Optional[Sequence[float]] = None,
        face_box=None,
        timestamp: Optional[float] = None,
    ) -> LivenessStage:
        """Feed one frame; returns the stage after processing it.

        Args:
            frame: (H, W, 3) uint8 BGR frame.
            eye_openness: (left, right) open probabilities; either may be None.
            euler_angles: (yaw, pitch, roll) head pose in degrees.
            face_box: (x, y, w, h) or FaceBox; None means centre crop.
            timestamp: Monotonic seconds; defaults to time.monotonic().
        """
        if not self._busy.acquire(blocking=False):
            self.dropped_frames += 1
            self._log.debug("Frame dropped: previous frame still in flight")
            return self.stage
        try:
            ts = time.monotonic() if timestamp is None else timestamp
            return self._advance(frame, eye_openness, euler_angles, face_box, ts)
        finally:
            self._busy.release()

    def reset(self) -> None:
        """Clear all session state and return to INITIALIZING."""
        with self._busy:
            self.history.clear()
            self.motion.reset()
            self.depth.reset()
            self.blink.reset()
            self.stage = Initializing()
            self._session_started = None
            self._last_verification = None
            self.audit.log({"event": "session_reset"})
            self._log.info("Liveness engine reset")

    def abort(self, reason: str = "aborted") -> LivenessStage:
        """Force-complete the current session as failed."""
        with self._busy:
            if isinstance(self.stage, Completed):
                return self.stage
            return self._force_fail(reason)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.audit.close()

    def __enter__(self) -> "LivenessEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_completed(self) -> bool:
        return isinstance(self.stage, Completed)

    def get_summary(self) -> dict:
        fps = len(self._frame_times) / sum(self._frame_times) if sum(self._frame_times) > 0 else 0.0
        return {
            **describe_stage(self.stage),
            "frames_processed": self.frames_processed,
            "dropped_frames": self.dropped_frames,
            "history_length": len(self.history),
            "signal_faults": dict(self.signal_faults),
            "cnn_failures": self.cnn.failures,
            "fps": round(fps, 1),
            "memory_mb": round(self._process.memory_info().rss / 1e6, 1),
        }

    # ------------------------------------------------------------------
    # Stage machine
    # ------------------------------------------------------------------

    def _advance(self, frame, eye_openness, euler_angles, face_box, ts) -> LivenessStage:
        stage = self.stage
        if isinstance(stage, Completed):
            return stage

        if self._session_started is not None and self.config.session_timeout_s is not None:
            if ts - self._session_started > self.config.session_timeout_s:
                self._log.warning("Session exceeded %.1fs, forcing FAIL", self.config.session_timeout_s)
                return self._force_fail("timeout")

        if isinstance(stage, (Initializing, FaceAlignment)):
            if self.config.require_face_box and face_box is None:
                self.stage = FaceAlignment()
                return self.stage
            self.stage = PassiveAnalysis(0, self.config.required_frames)
            self._session_started = ts
            self._log.debug("Starting passive analysis")
            return self.stage

        if isinstance(stage, PassiveAnalysis):
            return self._process_passive_frame(frame, euler_angles, face_box)

        if isinstance(stage, ActivePrompt):
            return self._process_active_frame(eye_openness, ts)

        return stage

    def _process_passive_frame(self, frame, euler_angles, face_box) -> LivenessStage:
        t_start = time.monotonic()
        signals = self._compute_signals(frame, euler_angles, face_box)
        self.history.append(signals)
        elapsed = time.monotonic() - t_start
        self._frame_times.append(elapsed)
        self.frames_processed += 1

        self.stage = PassiveAnalysis(len(self.history), self.config.required_frames, signals)
        self._log.debug("Processed frame %d/%d, score: %.3f",
                        len(self.history), self.config.required_frames, signals.final_score)
        if self.audit.enabled:
            self.audit.log_frame({
                **describe_stage(self.stage),
                "timing_ms": round(elapsed * 1000, 2),
                "memory_mb": round(self._process.memory_info().rss / 1e6, 1),
            })

        if self.history.is_full:
            return self._make_passive_decision()
        return self.stage

    def _make_passive_decision(self) -> LivenessStage:
        aggregated = self.fusion.aggregate(self.history.snapshot())
        decision = self.fusion.decide(aggregated.final_score)
        self._log.info("Passive decision: %s (final score: %.3f)", decision.value, aggregated.final_score)

        if decision == Decision.PASS:
            return self._complete(LivenessResult(
                passed=True,
                confidence=aggregated.final_score,
                passive_signals=aggregated,
            ))

        if decision == Decision.FAIL:
            return self._complete(LivenessResult(
                passed=False,
                confidence=1.0 - aggregated.final_score,
                passive_signals=aggregated,
                attack_type=self.fusion.detect_attack_type(aggregated),
            ))

        self._log.info("Passive uncertain, requesting %d blinks", self.config.required_blinks)
        self.blink.reset()
        self.stage = ActivePrompt(0, self.config.required_blinks)
        self.audit.log({"event": "active_prompt", "passive_signals": aggregated.to_dict()})
        return self.stage

    def _process_active_frame(self, eye_openness, ts) -> LivenessStage:
        left, right = _split_eyes(eye_openness)
        verification = self.blink.update(left, right, ts)
        self._last_verification = verification
        self.frames_processed += 1

        self.stage = ActivePrompt(verification.blink_count, self.config.required_blinks)
        if verification.is_complete:
            return self._make_active_decision(verification)
        return self.stage

    def _make_active_decision(self, verification: BlinkVerification) -> LivenessStage:
        aggregated = self._aggregated_or_neutral()
        passed = verification.is_natural and verification.is_complete
        self._log.info("Active decision: passed=%s, natural=%s", passed, verification.is_natural)
        return self._complete(LivenessResult(
            passed=passed,
            confidence=ACTIVE_PASS_CONFIDENCE if passed else ACTIVE_FAIL_CONFIDENCE,
            passive_signals=aggregated,
            active_result=verification,
            attack_type=None if passed else self.fusion.detect_attack_type(aggregated),
        ))

    def _force_fail(self, reason: str) -> LivenessStage:
        aggregated = self._aggregated_or_neutral()
        confidence = 1.0 - aggregated.final_score if len(self.history) else NEUTRAL_SCORE
        return self._complete(LivenessResult(
            passed=False,
            confidence=confidence,
            passive_signals=aggregated,
            active_result=self._last_verification,
            attack_type=self.fusion.detect_attack_type(aggregated),
            abort_reason=reason,
        ))

    def _complete(self, result: LivenessResult) -> LivenessStage:
        self.stage = Completed(result)
        self.audit.log({"event": "session_completed", **result.to_dict()})
        return self.stage

    def _aggregated_or_neutral(self) -> FrameSignals:
        if len(self.history):
            return self.fusion.aggregate(self.history.snapshot())
        return FrameSignals.neutral()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _compute_signals(self, frame, euler_angles, face_box) -> FrameSignals:
        """Run every analyzer for one frame and fuse the results."""
        face = self._face_region(frame, face_box)
        tasks: dict[str, Callable[[], float]] = {
            "cnn": lambda: self.cnn.predict(frame, face_box),
            "texture": lambda: compute_lbp_score(face),
            "frequency": lambda: compute_frequency_score(face),
            "color": lambda: compute_color_score(face),
            "sharpness": lambda: compute_sharpness_score(face),
            "motion": lambda: self.motion.analyze(frame),
            "depth": lambda: self.depth.analyze(euler_angles),
        }

        if self._executor is not None:
            futures = {name: self._executor.submit(self._safe_signal, name, fn)
                       for name, fn in tasks.items()}
            scores = {name: f.result() for name, f in futures.items()}
        else:
            scores = {name: self._safe_signal(name, fn) for name, fn in tasks.items()}

        return self.fusion.calculate(**scores)

    def _safe_signal(self, name: str, fn: Callable[[], float]) -> float:
        try:
            score = float(fn())
        except Exception as e:
            self.signal_faults[name] = self.signal_faults.get(name, 0) + 1
            self.audit.warn(f"Signal '{name}' failed, using neutral score: {e}")
            return NEUTRAL_SCORE
        if not 0.0 <= score <= 1.0:
            # NaN also lands here
            self.signal_faults[name] = self.signal_faults.get(name, 0) + 1
            self.audit.warn(f"Signal '{name}' out of range ({score!r}), using neutral score")
            return NEUTRAL_SCORE
        return score

    @staticmethod
    def _face_region(frame, face_box) -> np.ndarray:
        """Face crop for the texture / frequency / color / sharpness analyzers."""
        if frame is None or not hasattr(frame, "shape") or frame.ndim < 2:
            return frame
        h, w = frame.shape[:2]
        try:
            box = FaceBox.from_tuple(face_box)
        except (TypeError, ValueError):
            box = None
        crop = (box or FaceBox.center_square(w, h)).crop(frame)
        return crop if crop.size else frame


def _split_eyes(eye_openness) -> tuple[Optional[float], Optional[float]]:
    """(left, right) open probabilities; anything unreadable is treated as unavailable."""
    if eye_openness is None:
        return None, None
    try:
        left, right = eye_openness
    except (TypeError, ValueError):
        return None, None
    return _probability(left), _probability(right)


def _probability(value) -> Optional[float]:
    if value is None:
        return None
    try:
        p = float(value)
    except (TypeError, ValueError):
        return None
    return p if math.isfinite(p) else None
