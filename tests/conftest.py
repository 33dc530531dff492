from typing import List, Optional

import numpy as np
import pytest

from muzzle_backend.face_landmarker import DetectorInitError


def make_landmarks(
    center=(0.5, 0.5, 0.0),
    n_points: int = 468,
    visibility: float = 0.9,
) -> np.ndarray:
    """Face landmarks with the muzzle anchors placed around `center`."""
    cx, cy, cz = center
    pts = np.zeros((n_points, 4), dtype=np.float64)
    pts[:, 0] = cx
    pts[:, 1] = cy
    pts[:, 2] = cz
    pts[:, 3] = visibility
    pts[4, :3] = (cx, cy, cz)
    pts[6, :3] = (cx, cy - 0.1, cz)
    pts[13, :3] = (cx, cy + 0.1, cz)
    pts[132, :3] = (cx - 0.1, cy, cz)
    pts[361, :3] = (cx + 0.1, cy, cz)
    pts[234, :3] = (cx - 0.2, cy, cz)
    pts[454, :3] = (cx + 0.2, cy, cz)
    return pts


def make_texture(width: int = 64, height: int = 64, color=(0, 0, 255)) -> np.ndarray:
    tex = np.zeros((height, width, 4), dtype=np.uint8)
    tex[..., :3] = color
    tex[..., 3] = 255
    return tex


class FakeDetector:
    def __init__(self, faces: Optional[List[np.ndarray]] = None, frames: Optional[List[List[np.ndarray]]] = None):
        self.faces = faces if faces is not None else [make_landmarks()]
        self.frames = frames
        self.config = None
        self.image_calls = 0
        self.video_timestamps: List[int] = []
        self.closed = False

    def initialize(self, config) -> None:
        self.config = config

    def detect(self, image):
        self.image_calls += 1
        return list(self.faces)

    def detect_for_video(self, frame, timestamp_ms):
        self.video_timestamps.append(timestamp_ms)
        if self.frames is not None:
            return list(self.frames[min(len(self.video_timestamps), len(self.frames)) - 1])
        return list(self.faces)

    def close(self) -> None:
        self.closed = True


class FailingDetector(FakeDetector):
    def initialize(self, config) -> None:
        raise DetectorInitError("model could not be loaded")


@pytest.fixture
def texture():
    return make_texture()


@pytest.fixture
def detector():
    return FakeDetector()
