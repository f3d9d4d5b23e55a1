import math

import numpy as np
import pytest

from conftest import SKIN_BGR, make_face_frame
from veritas_signals import (
    DepthAnalyzer,
    MotionAnalyzer,
    compute_color_score,
    compute_frequency_score,
    compute_lbp_score,
    compute_sharpness_score,
    frequency_ratio_to_score,
    high_frequency_ratio,
    laplacian_std,
    lbp_entropy_to_score,
    lbp_histogram,
    sharpness_to_score,
    skin_ratio,
    skin_ratio_to_score,
    to_grayscale,
)

STATELESS = [
    compute_lbp_score,
    compute_frequency_score,
    compute_color_score,
    compute_sharpness_score,
]


class TestScoreRange:
    """Every stateless analyzer stays inside [0, 1] whatever it is fed."""

    @pytest.mark.parametrize("analyzer", STATELESS)
    @pytest.mark.parametrize("seed", range(8))
    def test_random_frames(self, analyzer, seed):
        rs = np.random.RandomState(seed)
        h, w = rs.randint(3, 96, size=2)
        frame = rs.randint(0, 256, (h, w, 3), dtype=np.uint8)
        score = analyzer(frame)
        assert 0.0 <= score <= 1.0

    @pytest.mark.parametrize("analyzer", STATELESS)
    @pytest.mark.parametrize("value", [0, 255])
    def test_constant_frames(self, analyzer, value):
        frame = np.full((48, 48, 3), value, dtype=np.uint8)
        assert 0.0 <= analyzer(frame) <= 1.0

    @pytest.mark.parametrize("analyzer", STATELESS)
    @pytest.mark.parametrize("shape", [(1, 1, 3), (2, 2, 3), (2, 5, 3)])
    def test_tiny_frames_are_neutral(self, analyzer, shape):
        frame = np.full(shape, 128, dtype=np.uint8)
        assert analyzer(frame) == 0.5

    @pytest.mark.parametrize("analyzer", STATELESS)
    @pytest.mark.parametrize("row, col", [(0, 0), (16, 16), (31, 5)])
    def test_single_pixel_noise(self, analyzer, row, col):
        frame = np.full((32, 32, 3), 100, dtype=np.uint8)
        frame[row, col] = 255
        score = analyzer(frame)
        assert math.isfinite(score)
        assert 0.0 <= score <= 1.0

    def test_empty_frame_raises(self):
        with pytest.raises(ValueError):
            to_grayscale(np.zeros((0, 0, 3), dtype=np.uint8))


class TestTexture:

    @pytest.mark.parametrize("position, code", [
        ((0, 0), 1),     # top-left
        ((0, 1), 2),     # top
        ((0, 2), 4),     # top-right
        ((1, 2), 8),     # right
        ((2, 2), 16),    # bottom-right
        ((2, 1), 32),    # bottom
        ((2, 0), 64),    # bottom-left
        ((1, 0), 128),   # left
    ])
    def test_bit_order(self, position, code):
        gray = np.zeros((3, 3), dtype=np.uint8)
        gray[1, 1] = 100
        gray[position] = 200
        hist = lbp_histogram(gray)
        assert hist.sum() == 1
        assert hist[code] == 1

    def test_equal_neighbour_sets_bit(self):
        gray = np.full((3, 3), 50, dtype=np.uint8)
        assert lbp_histogram(gray)[255] == 1

    def test_flat_image_scores_as_print(self):
        frame = np.zeros((32, 32, 3), dtype=np.uint8)
        assert compute_lbp_score(frame) == pytest.approx(0.3)

    @pytest.mark.parametrize("entropy, expected", [
        (0.0, 0.3),
        (0.2, 0.5),
        (0.5, 0.7),
        (0.95, 0.88),
        (0.99, 0.7),
    ])
    def test_entropy_mapping(self, entropy, expected):
        assert lbp_entropy_to_score(entropy) == pytest.approx(expected)


class TestFrequency:

    def test_flat_image_ratio_is_half(self):
        gray = np.full((16, 16), 90, dtype=np.uint8)
        assert high_frequency_ratio(gray) == 0.5
        assert compute_frequency_score(np.zeros((16, 16, 3), dtype=np.uint8)) == 0.5

    def test_hard_edge_is_all_high_frequency(self):
        gray = np.zeros((10, 10), dtype=np.uint8)
        gray[:, 5:] = 255
        assert high_frequency_ratio(gray) == pytest.approx(1.0)

    @pytest.mark.parametrize("ratio, expected", [
        (0.01, 0.4),
        (0.15, 0.9),
        (0.30, 0.6),
        (0.10, 0.8),
        (0.45, 0.5),
    ])
    def test_ratio_mapping(self, ratio, expected):
        assert frequency_ratio_to_score(ratio) == pytest.approx(expected)


class TestColor:

    def test_uniform_skin_is_suspicious(self):
        frame = np.empty((40, 40, 3), dtype=np.uint8)
        frame[:, :] = SKIN_BGR
        assert skin_ratio(frame) == pytest.approx(1.0)
        assert compute_color_score(frame) == pytest.approx(0.5)

    def test_half_skin_region(self):
        frame = np.zeros((40, 40, 3), dtype=np.uint8)
        # central region is rows/cols 10:30; fill its left half
        frame[10:30, 10:20] = SKIN_BGR
        assert skin_ratio(frame) == pytest.approx(0.5)
        assert compute_color_score(frame) == pytest.approx(0.8875)

    def test_black_frame_has_no_skin(self):
        frame = np.zeros((40, 40, 3), dtype=np.uint8)
        assert skin_ratio(frame) == 0.0
        assert compute_color_score(frame) == pytest.approx(0.4)

    @pytest.mark.parametrize("ratio, expected", [
        (0.20, 0.4),
        (0.30, 0.55),
        (0.55, 0.95),
        (0.80, 0.55),
        (0.90, 0.5),
    ])
    def test_ratio_mapping(self, ratio, expected):
        assert skin_ratio_to_score(ratio) == pytest.approx(expected)

    def test_single_channel_rejected(self):
        with pytest.raises(ValueError):
            skin_ratio(np.zeros((10, 10), dtype=np.uint8))


class TestSharpness:

    def test_matches_four_neighbour_kernel(self, rng):
        gray = rng.randint(0, 256, (20, 24)).astype(np.uint8)
        g = gray.astype(np.float64)
        manual = (g[:-2, 1:-1] + g[2:, 1:-1] + g[1:-1, :-2] + g[1:-1, 2:]
                  - 4.0 * g[1:-1, 1:-1])
        assert laplacian_std(gray) == pytest.approx(float(manual.std()))

    def test_flat_image_is_blurry(self):
        assert compute_sharpness_score(np.full((16, 16, 3), 77, dtype=np.uint8)) == pytest.approx(0.4)

    def test_checkerboard_is_artificially_sharp(self):
        gray = (np.indices((16, 16)).sum(axis=0) % 2 * 255).astype(np.uint8)
        frame = np.dstack([gray] * 3)
        assert compute_sharpness_score(frame) == pytest.approx(0.6)

    @pytest.mark.parametrize("normalized, expected", [
        (0.1, 0.4),
        (1.0, 0.9),
        (1.6, 0.6),
    ])
    def test_mapping(self, normalized, expected):
        assert sharpness_to_score(normalized) == pytest.approx(expected)


class TestMotionAnalyzer:

    def test_neutral_until_three_entries(self, rng):
        motion = MotionAnalyzer()
        frame = make_face_frame(rng)
        assert motion.analyze(frame) == 0.5
        assert motion.analyze(frame) == 0.5

    def test_static_photo_scores_low(self, rng):
        motion = MotionAnalyzer(history_size=10)
        frame = make_face_frame(rng)
        for _ in range(11):
            score = motion.analyze(frame)
        # the first-frame magnitude has been evicted, leaving ten zeros
        assert score == pytest.approx(0.3)

    def test_first_frame_and_size_change_use_fixed_magnitude(self):
        motion = MotionAnalyzer()
        motion.analyze(np.zeros((32, 32, 3), dtype=np.uint8))
        motion.analyze(np.zeros((16, 16, 3), dtype=np.uint8))
        assert motion.history.snapshot() == [10.0, 10.0]

    def test_magnitude_is_std_of_sampled_difference(self):
        motion = MotionAnalyzer(sample_step=4)
        motion.analyze(np.zeros((16, 16, 3), dtype=np.uint8))
        uniform = np.full((16, 16, 3), 50, dtype=np.uint8)
        motion.analyze(uniform)
        striped = np.full((16, 16, 3), 50, dtype=np.uint8)
        # sampled rows 0, 4, 8, 12: rows 0 and 8 change by 40, rows 4 and 12 do not
        striped[::8] = 90
        motion.analyze(striped)
        assert motion.history.snapshot()[1:] == [pytest.approx(0.0), pytest.approx(20.0)]

    def test_history_is_bounded(self, rng):
        motion = MotionAnalyzer(history_size=10)
        for _ in range(15):
            motion.analyze(make_face_frame(rng))
        assert len(motion.history) == 10

    def test_reset(self, rng):
        motion = MotionAnalyzer()
        for _ in range(4):
            motion.analyze(make_face_frame(rng))
        motion.reset()
        assert len(motion.history) == 0
        assert motion.analyze(make_face_frame(rng)) == 0.5
        assert motion.history.snapshot() == [10.0]

    def test_single_pixel_flicker_stays_in_range(self):
        motion = MotionAnalyzer(sample_step=1)
        flat = np.full((32, 32, 3), 100, dtype=np.uint8)
        speck = flat.copy()
        speck[16, 16] = 255
        for i in range(8):
            score = motion.analyze(speck if i % 2 else flat)
            assert math.isfinite(score)
            assert 0.0 <= score <= 1.0


class TestDepthAnalyzer:

    def test_neutral_until_five_entries(self):
        depth = DepthAnalyzer()
        for _ in range(4):
            assert depth.analyze((1.0, 2.0, 3.0)) == 0.5

    def test_frozen_pose_scores_low(self):
        depth = DepthAnalyzer()
        for _ in range(5):
            score = depth.analyze((0.0, 0.0, 0.0))
        assert score == pytest.approx(0.3)

    def test_natural_sway(self):
        depth = DepthAnalyzer()
        for yaw in (5.0, -5.0, 5.0, -5.0, 5.0):
            score = depth.analyze((yaw, 0.0, 0.0))
        assert depth.total_variance() == pytest.approx(24.0)
        assert score == pytest.approx(0.5 + 23.0 / 49.0 * 0.4)

    def test_erratic_pose(self):
        depth = DepthAnalyzer()
        for yaw in (30.0, -30.0, 30.0, -30.0, 30.0):
            score = depth.analyze((yaw, 0.0, 0.0))
        assert score == pytest.approx(0.4)

    def test_history_is_bounded(self):
        depth = DepthAnalyzer(history_size=20)
        for i in range(30):
            depth.analyze((float(i), 0.0, 0.0))
        assert len(depth.history) == 20

    @pytest.mark.parametrize("bad", [math.nan, math.inf])
    def test_non_finite_pose_rejected(self, bad):
        with pytest.raises(ValueError):
            DepthAnalyzer().analyze((0.0, bad, 0.0))
