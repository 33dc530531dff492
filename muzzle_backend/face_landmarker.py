"""
MediaPipe FaceLandmarker wrapper returning landmark arrays.

Each detected face becomes a float64 array of shape (N, 4) holding normalized
x, y, detector z and visibility, in MediaPipe's canonical landmark order.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import List, Optional, Protocol, Sequence

import cv2
import numpy as np

from .models import DetectorConfig

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - optional dependency
    mp = None

logger = logging.getLogger(__name__)


class DetectorInitError(RuntimeError):
    """The landmark detector could not be created; the session cannot proceed."""


class LandmarkDetector(Protocol):
    def initialize(self, config: DetectorConfig) -> None: ...

    def detect(self, image: np.ndarray) -> List[np.ndarray]: ...

    def detect_for_video(self, frame: np.ndarray, timestamp_ms: int) -> List[np.ndarray]: ...


def landmarks_to_array(face: Sequence) -> np.ndarray:
    """Convert a sequence of landmark objects (x, y, z, visibility) to (N, 4)."""
    return np.array(
        [
            [lm.x, lm.y, lm.z, lm.visibility if getattr(lm, "visibility", None) is not None else 0.0]
            for lm in face
        ],
        dtype=np.float64,
    )


class FaceLandmarkDetector:
    """MediaPipe Tasks FaceLandmarker with thread safety."""

    def __init__(self, model_path: str) -> None:
        self.model_path = model_path
        self.config: Optional[DetectorConfig] = None
        self._landmarker = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._landmarker is not None

    def initialize(self, config: DetectorConfig) -> None:
        if mp is None:
            raise DetectorInitError("mediapipe is not installed")
        if not os.path.exists(self.model_path):
            raise DetectorInitError(f"Face landmarker model not found: {self.model_path}")

        vision = mp.tasks.vision
        running_mode = vision.RunningMode.VIDEO if config.mode == "video" else vision.RunningMode.IMAGE
        options = vision.FaceLandmarkerOptions(
            base_options=mp.tasks.BaseOptions(model_asset_path=self.model_path),
            running_mode=running_mode,
            num_faces=config.maxFaces,
            min_face_detection_confidence=config.minDetectionConfidence,
            output_facial_transformation_matrixes=config.outputTransform,
        )
        try:
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as exc:
            raise DetectorInitError(f"Failed to create face landmarker: {exc}") from exc
        self.config = config
        logger.info(f"Face landmarker ready ({config.mode} mode, up to {config.maxFaces} faces)")

    def detect(self, image: np.ndarray) -> List[np.ndarray]:
        mp_image = self._to_mp_image(image)
        with self._lock:
            result = self._require().detect(mp_image)
        return [landmarks_to_array(face) for face in result.face_landmarks]

    def detect_for_video(self, frame: np.ndarray, timestamp_ms: int) -> List[np.ndarray]:
        mp_image = self._to_mp_image(frame)
        with self._lock:
            result = self._require().detect_for_video(mp_image, int(timestamp_ms))
        return [landmarks_to_array(face) for face in result.face_landmarks]

    def close(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None

    def _require(self):
        if self._landmarker is None:
            raise DetectorInitError("Face landmarker used before initialization")
        return self._landmarker

    @staticmethod
    def _to_mp_image(image: np.ndarray):
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb))
