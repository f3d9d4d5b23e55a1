import json
import math
from types import SimpleNamespace

import numpy as np
import pytest

from veritas_scorer import (
    CNNScoreAdapter,
    ConfidenceCalibrator,
    OnnxFaceScorer,
    ScaleModel,
    scaled_crop,
)
from veritas_types import FaceBox


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(self, logits):
        self.logits = np.asarray([logits], dtype=np.float32)
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input")]

    def get_providers(self):
        return ["CPUExecutionProvider"]

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return [self.logits]


class TestCNNScoreAdapter:

    def test_no_scorer_is_neutral(self):
        adapter = CNNScoreAdapter(None)
        assert not adapter.enabled
        assert adapter.predict(np.zeros((10, 10, 3), dtype=np.uint8)) == 0.5

    def test_callable_scorer(self):
        adapter = CNNScoreAdapter(lambda frame, box: 0.8)
        assert adapter.enabled
        assert adapter.predict(np.zeros((10, 10, 3), dtype=np.uint8), (0, 0, 5, 5)) == 0.8

    def test_predict_object_scorer(self):
        scorer = SimpleNamespace(predict=lambda frame, box: 0.3)
        assert CNNScoreAdapter(scorer).predict(np.zeros((10, 10, 3), dtype=np.uint8)) == 0.3

    def test_output_clamped(self):
        adapter = CNNScoreAdapter(lambda frame, box: 1.7)
        assert adapter.predict(np.zeros((10, 10, 3), dtype=np.uint8)) == 1.0

    def test_missing_box_uses_centre_square(self):
        seen = []
        adapter = CNNScoreAdapter(lambda frame, box: seen.append(box) or 0.6)
        adapter.predict(np.zeros((100, 200, 3), dtype=np.uint8))
        assert seen == [FaceBox(75, 25, 50, 50)]

    def test_failure_is_neutral(self):
        def boom(frame, box):
            raise RuntimeError("model crashed")
        adapter = CNNScoreAdapter(boom)
        assert adapter.predict(np.zeros((10, 10, 3), dtype=np.uint8)) == 0.5
        assert adapter.failures == 1

    def test_nan_is_neutral(self):
        adapter = CNNScoreAdapter(lambda frame, box: math.nan)
        assert adapter.predict(np.zeros((10, 10, 3), dtype=np.uint8)) == 0.5
        assert adapter.failures == 1

    @pytest.mark.parametrize("bad_box", [(1, 2), ("x", 0, 10, 10), 7])
    def test_malformed_box_uses_centre_square(self, bad_box):
        seen = []
        adapter = CNNScoreAdapter(lambda frame, box: seen.append(box) or 0.9)
        assert adapter.predict(np.zeros((48, 48, 3), dtype=np.uint8), bad_box) == 0.9
        assert seen == [FaceBox(12, 12, 24, 24)]
        assert adapter.failures == 0

    def test_missing_frame_is_neutral(self):
        adapter = CNNScoreAdapter(lambda frame, box: 0.9)
        assert adapter.predict(None, None) == 0.5
        assert adapter.failures == 1

    def test_non_callable_rejected(self):
        with pytest.raises(TypeError):
            CNNScoreAdapter(42)


class TestConfidenceCalibrator:

    def test_plain_softmax_at_unit_temperature(self):
        logits = np.log(np.array([0.2, 0.8]))
        assert ConfidenceCalibrator(1.0).from_logits(logits) == pytest.approx([0.2, 0.8])

    def test_high_temperature_softens(self):
        probs = ConfidenceCalibrator(2.0).from_logits(np.log(np.array([0.2, 0.8])))
        assert 0.5 < probs[1] < 0.8
        assert probs.sum() == pytest.approx(1.0)

    def test_from_logits_flattens_batch(self):
        probs = ConfidenceCalibrator().from_logits(np.array([[0.0, 0.0]]))
        assert probs == pytest.approx([0.5, 0.5])

    def test_invalid_temperature(self):
        with pytest.raises(ValueError):
            ConfidenceCalibrator(0.0)

    def test_from_file(self, tmp_path):
        path = tmp_path / "calibration.json"
        path.write_text(json.dumps({"temperature": 1.7}))
        assert ConfidenceCalibrator.from_file(str(path)).temperature == pytest.approx(1.7)

    def test_from_file_without_temperature(self, tmp_path):
        path = tmp_path / "calibration.json"
        path.write_text(json.dumps({"scale": 2.0}))
        with pytest.raises(ValueError):
            ConfidenceCalibrator.from_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfidenceCalibrator.from_file(str(tmp_path / "none.json"))


class TestScaledCrop:

    def test_unit_scale_covers_box(self):
        frame = np.zeros((100, 100, 3), dtype=np.uint8)
        assert scaled_crop(frame, FaceBox(40, 40, 20, 20), 1.0).shape == (21, 21, 3)

    def test_oversized_scale_shrinks_to_frame(self):
        frame = np.zeros((100, 100, 3), dtype=np.uint8)
        assert scaled_crop(frame, FaceBox(40, 40, 20, 20), 10.0).shape == (100, 100, 3)

    def test_box_near_edge_is_shifted_inside(self):
        frame = np.zeros((100, 100, 3), dtype=np.uint8)
        crop = scaled_crop(frame, FaceBox(0, 0, 20, 20), 2.0)
        assert crop.shape == (41, 41, 3)


class TestOnnxFaceScorer:

    def test_single_model_real_probability(self):
        session = FakeSession([0.0, 2.0, 0.0])
        scorer = OnnxFaceScorer([ScaleModel(scale=2.7, session=session)])
        frame = np.full((120, 160, 3), 100, dtype=np.uint8)
        score = scorer.predict(frame, FaceBox(60, 40, 40, 40))

        assert score == pytest.approx(math.exp(2) / (math.exp(2) + 2))
        tensor = session.feeds[0]["input"]
        assert tensor.shape == (1, 3, 80, 80)
        assert tensor.dtype == np.float32

    def test_scores_averaged_across_models(self):
        models = [
            ScaleModel(scale=2.7, session=FakeSession([0.0, 10.0, 0.0])),
            ScaleModel(scale=4.0, session=FakeSession([10.0, 0.0, 0.0])),
        ]
        scorer = OnnxFaceScorer(models)
        frame = np.zeros((120, 160, 3), dtype=np.uint8)
        assert scorer.predict(frame, FaceBox(60, 40, 40, 40)) == pytest.approx(0.5, abs=1e-3)

    def test_works_through_adapter(self):
        scorer = OnnxFaceScorer([ScaleModel(scale=2.7, session=FakeSession([0.0, 0.0, 0.0]))])
        adapter = CNNScoreAdapter(scorer)
        assert adapter.predict(np.zeros((64, 64, 3), dtype=np.uint8)) == pytest.approx(1 / 3)

    def test_requires_models(self):
        with pytest.raises(ValueError):
            OnnxFaceScorer([])

    def test_requires_path_or_session(self):
        with pytest.raises(ValueError):
            OnnxFaceScorer([ScaleModel(scale=2.7)])
