import numpy as np
import pytest

from veritas_utils_core import LivenessConfig

# BGR pixel that falls inside the YCrCb skin box (Cr ~155, Cb ~105)
SKIN_BGR = (120, 150, 200)


@pytest.fixture
def rng():
    return np.random.RandomState(42)


@pytest.fixture
def serial_config():
    """Default settings without the analyzer thread pool."""
    return LivenessConfig(parallel_analyzers=False)


def make_face_frame(rng, size: int = 64) -> np.ndarray:
    """Skin-toned frame with mild per-pixel noise."""
    frame = np.empty((size, size, 3), dtype=np.uint8)
    frame[:, :] = SKIN_BGR
    noise = rng.randint(-12, 13, (size, size, 3))
    return np.clip(frame.astype(np.int16) + noise, 0, 255).astype(np.uint8)
