"""
Veritas Liveness - CNN Score Adapter
====================================
The CNN is an external collaborator. This module gives it the same
contract as the hand-crafted analyzers: one real-face probability in
[0.0, 1.0] per frame, and the neutral 0.5 whenever inference fails.

  CNNScoreAdapter      - wraps any scorer callable / object, clamps output,
                         swallows inference errors into 0.5, falls back to a
                         centre crop when the face box is missing
  OnnxFaceScorer       - ONNX Runtime multi-scale anti-spoof scorer
                         (MiniFASNet-style: scaled crop -> resize -> logits)
  ConfidenceCalibrator - temperature scaling of the model's softmax

No model files ship with this repository; OnnxFaceScorer takes model
paths (or ready sessions) from the caller.
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import cv2
import numpy as np
import onnxruntime as ort

from veritas_types import FaceBox
from veritas_utils_core import NEUTRAL_SCORE, clamp, setup_logger

_log = setup_logger('VeritasScorer')

# Ryzen AI NPU first, then DirectML, CUDA, CPU
DEFAULT_PROVIDERS = [
    "VitisAIExecutionProvider",
    "DmlExecutionProvider",
    "CUDAExecutionProvider",
    "CPUExecutionProvider",
]


# ===================================================================
# Confidence Calibration (Temperature Scaling)
# ===================================================================

class ConfidenceCalibrator:
    """Temperature-scaled softmax for overconfident anti-spoof logits.

    temperature > 1.0 = softer, < 1.0 = sharper, 1.0 = plain softmax.
    The temperature is fitted offline on held-out sessions and stored as
    {"temperature": T} next to the models.
    """

    def __init__(self, temperature: float = 1.0):
        if temperature <= 0:
            raise ValueError("temperature must be positive")
        self.temperature = temperature

    def from_logits(self, logits: np.ndarray) -> np.ndarray:
        """Temperature-scaled softmax of raw logits."""
        scaled = np.asarray(logits, dtype=np.float64).ravel() / self.temperature
        exp_scaled = np.exp(scaled - scaled.max())
        return exp_scaled / exp_scaled.sum()

    @classmethod
    def from_file(cls, path: str) -> "ConfidenceCalibrator":
        with open(path, 'r', encoding='utf-8') as f:
            params = json.load(f)
        if not isinstance(params, dict) or "temperature" not in params:
            raise ValueError(f"{path}: expected an object with a 'temperature' key")
        return cls(temperature=float(params["temperature"]))


# ===================================================================
# Adapter
# ===================================================================

class CNNScoreAdapter:
    """Gives any external real-face scorer the analyzer contract.

    `scorer` is either a callable `(frame, face_box) -> float` or an object
    with `predict(frame, face_box) -> float`. With no scorer the adapter
    always reports the neutral score.
    """

    def __init__(self, scorer: Optional[Any] = None):
        if scorer is None:
            self._predict: Optional[Callable] = None
        elif hasattr(scorer, "predict"):
            self._predict = scorer.predict
        elif callable(scorer):
            self._predict = scorer
        else:
            raise TypeError("scorer must be callable or expose predict(frame, face_box)")
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._predict is not None

    def predict(self, frame: np.ndarray, face_box=None) -> float:
        if self._predict is None:
            return NEUTRAL_SCORE

        try:
            try:
                box = FaceBox.from_tuple(face_box)
            except (TypeError, ValueError):
                _log.debug("Unusable face box %r, using centre crop", face_box)
                box = None
            if box is None:
                h, w = frame.shape[:2]
                box = FaceBox.center_square(w, h)
                _log.debug("No face box available, using centre crop %s", box)
            score = float(self._predict(frame, box))
        except Exception as e:
            self.failures += 1
            _log.warning("CNN prediction failed, using neutral score: %s", e)
            return NEUTRAL_SCORE

        if not math.isfinite(score):
            self.failures += 1
            _log.warning("CNN returned non-finite score %r, using neutral score", score)
            return NEUTRAL_SCORE
        return clamp(score)


# ===================================================================
# ONNX multi-scale scorer
# ===================================================================

@dataclass
class ScaleModel:
    """One anti-spoof model and the crop it expects."""
    scale: float
    input_size: tuple[int, int] = (80, 80)   # (width, height)
    path: Optional[str] = None
    session: Any = None


def scaled_crop(frame: np.ndarray, box: FaceBox, scale: float) -> np.ndarray:
    """Crop `box` enlarged by `scale` about its centre, kept inside the frame.

    The scale is reduced when the enlarged box would not fit; the box is
    then shifted (not clipped) back inside the image.
    """
    src_h, src_w = frame.shape[:2]
    bw, bh = max(1, box.w), max(1, box.h)
    scale = min((src_h - 1) / bh, (src_w - 1) / bw, scale)
    new_w, new_h = bw * scale, bh * scale
    cx, cy = box.x + bw / 2.0, box.y + bh / 2.0

    x1 = cx - new_w / 2.0
    y1 = cy - new_h / 2.0
    x2 = cx + new_w / 2.0
    y2 = cy + new_h / 2.0
    if x1 < 0:
        x2 -= x1
        x1 = 0
    if y1 < 0:
        y2 -= y1
        y1 = 0
    if x2 > src_w - 1:
        x1 -= x2 - src_w + 1
        x2 = src_w - 1
    if y2 > src_h - 1:
        y1 -= y2 - src_h + 1
        y2 = src_h - 1

    x1, y1 = max(0, int(x1)), max(0, int(y1))
    x2, y2 = int(x2), int(y2)
    return frame[y1:y2 + 1, x1:x2 + 1]


class OnnxFaceScorer:
    """Real-face probability averaged across one or more scaled-crop models.

    Each model sees the face box enlarged by its own scale factor, resized
    to its input size, as float32 NCHW in BGR order. The model's logits go
    through temperature-scaled softmax and the `real_index` class is taken.
    """

    def __init__(
        self,
        models: Sequence[ScaleModel],
        temperature: float = 1.0,
        real_index: int = 1,
        providers: Optional[list[str]] = None,
    ):
        if not models:
            raise ValueError("at least one ScaleModel is required")
        self.models = list(models)
        self.real_index = real_index
        self.calibrator = ConfidenceCalibrator(temperature)

        wanted = providers or DEFAULT_PROVIDERS
        for m in self.models:
            if m.session is None:
                if not m.path:
                    raise ValueError("ScaleModel needs a path or a session")
                available = set(ort.get_available_providers())
                chosen = [p for p in wanted if p in available] or ["CPUExecutionProvider"]
                m.session = ort.InferenceSession(m.path, providers=chosen)
                _log.info("Loaded %s (scale %.1f) on %s",
                          os.path.basename(m.path), m.scale, m.session.get_providers())
        self._input_names = [m.session.get_inputs()[0].name for m in self.models]

    @staticmethod
    def preprocess(crop: np.ndarray, input_size: tuple[int, int]) -> np.ndarray:
        resized = cv2.resize(crop, input_size)
        chw = np.transpose(resized.astype(np.float32), (2, 0, 1))
        return np.expand_dims(chw, axis=0)

    def predict(self, frame: np.ndarray, face_box: FaceBox) -> float:
        real_probs = []
        for model, input_name in zip(self.models, self._input_names):
            crop = scaled_crop(frame, face_box, model.scale)
            if crop.size == 0:
                raise ValueError(f"empty crop for box {face_box} at scale {model.scale}")
            tensor = self.preprocess(crop, model.input_size)
            logits = model.session.run(None, {input_name: tensor})[0]
            probs = self.calibrator.from_logits(logits)
            real_probs.append(float(probs[self.real_index]))

        score = sum(real_probs) / len(real_probs)
        _log.debug("ONNX real probability %.3f (per-scale: %s)",
                   score, ", ".join(f"{p:.3f}" for p in real_probs))
        return score
