from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Protocol, Tuple

import numpy as np

from .face_landmarker import DetectorInitError, LandmarkDetector
from .models import DetectorConfig, MuzzleConfig
from .muzzle_pipeline import LandmarkSmoother, Surface, TextureMapper, render_face
from .video_io import PlaybackError, fit_processing_size

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RENDERING = "rendering"
    DONE = "done"
    FAILED = "failed"


class UnsupportedInputError(ValueError):
    pass


class SessionFailedError(RuntimeError):
    pass


class VideoSource(Protocol):
    fps: float
    size: Tuple[int, int]
    ended: bool
    paused: bool

    def open(self) -> None: ...

    def read(self) -> Optional[Tuple[np.ndarray, float]]: ...

    def close(self) -> None: ...


class Recorder(Protocol):
    async def start(self, fps: float, size: Tuple[int, int]) -> None: ...

    def push(self, frame: np.ndarray) -> None: ...

    async def stop(self) -> None: ...


def classify_media(content_type: Optional[str]) -> str:
    """Return "image" or "video" for a MIME type, else raise UnsupportedInputError."""
    kind = (content_type or "").split("/")[0].strip().lower()
    if kind not in ("image", "video"):
        raise UnsupportedInputError(f"Unsupported file type: {content_type or 'unknown'}")
    return kind


class FrameGate:
    """Tells whether a frame timestamp differs from the last processed one."""

    def __init__(self) -> None:
        self._last: Optional[float] = None

    def has_new_input(self, timestamp: float) -> bool:
        if self._last is not None and timestamp == self._last:
            return False
        self._last = timestamp
        return True

    def reset(self) -> None:
        self._last = None


class MuzzleSession:
    """One processing session: a still image or a video clip.

    Owns the track slots and the destination surface. Every face returned by
    the detector, up to `maxFaces`, goes through mesh building, projection and
    texture mapping in detection order.
    """

    def __init__(
        self,
        detector: LandmarkDetector,
        texture: Optional[np.ndarray],
        config: Optional[MuzzleConfig] = None,
        frame_interval: float = 0.0,
    ) -> None:
        self.detector = detector
        self.texture = texture
        self.config = config or MuzzleConfig()
        self.frame_interval = frame_interval
        self.smoother = LandmarkSmoother(self.config.maxFaces, self.config.smoothingFactor)
        self.mapper = TextureMapper()
        self.gate = FrameGate()
        self.state = SessionState.IDLE
        self.surface: Optional[Surface] = None
        self.cycles = 0
        self.faces_drawn = 0
        self._paused = False
        self._task: Optional[asyncio.Task] = None

    async def initialize_detector(self, config: DetectorConfig) -> None:
        try:
            await asyncio.to_thread(self.detector.initialize, config)
        except DetectorInitError:
            self.state = SessionState.FAILED
            raise

    def pause(self) -> None:
        self._paused = True

    def reset(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.smoother.reset()
        self.gate.reset()
        self._paused = False
        self.surface = None
        self.cycles = 0
        self.faces_drawn = 0
        if self.state != SessionState.FAILED:
            self.state = SessionState.IDLE

    def process_image(self, image: np.ndarray) -> np.ndarray:
        self._begin()
        self.state = SessionState.RENDERING
        try:
            self.surface = Surface.from_image(image)
            detections = self.detector.detect(image)
            self._draw_faces(detections, smooth=False)
        except Exception:
            self.state = SessionState.FAILED
            raise
        self.cycles += 1
        self.state = SessionState.DONE
        return self.surface.pixels

    async def process_video(self, source: VideoSource, recorder: Recorder) -> None:
        self._begin()
        started = False
        try:
            source.open()
            size = fit_processing_size(source.size[0], source.size[1], self.config.maxProcessingWidth)
            self.surface = Surface(*size)
            await recorder.start(source.fps, size)
            started = True
        except (PlaybackError, asyncio.CancelledError):
            self.reset()
            raise
        except Exception:
            self.state = SessionState.FAILED
            raise
        finally:
            if not started:
                source.close()

        self.state = SessionState.RENDERING
        self._task = asyncio.create_task(self._render_loop(source, recorder))
        try:
            await self._task
        except asyncio.CancelledError:
            if self._task is None:
                # Cancelled by reset().
                return
            # Cancelled by the caller; the loop has already stopped the recorder.
            self.reset()
            raise
        except Exception:
            self.state = SessionState.FAILED
            raise
        finally:
            source.close()
        self._task = None
        self.state = SessionState.DONE
        logger.info(f"Video session done: {self.cycles} frames rendered, {self.faces_drawn} overlays")

    async def _render_loop(self, source: VideoSource, recorder: Recorder) -> None:
        try:
            while not (source.ended or source.paused or self._paused):
                if self.render_next_frame(source, recorder) is None:
                    break
                await asyncio.sleep(self.frame_interval)
        finally:
            await recorder.stop()

    def render_next_frame(self, source: VideoSource, recorder: Recorder) -> Optional[bool]:
        """Run one video cycle; None at end of stream, False when the frame was a repeat."""
        item = source.read()
        if item is None:
            return None
        frame, timestamp_ms = item
        if not self.gate.has_new_input(timestamp_ms):
            logger.debug(f"Skipping repeated frame at {timestamp_ms} ms")
            return False

        self.surface.clear()
        self.surface.draw_image(frame)
        detections = self.detector.detect_for_video(frame, int(timestamp_ms))
        self._draw_faces(detections, smooth=True)
        recorder.push(self.surface.pixels)
        self.cycles += 1
        return True

    def _begin(self) -> None:
        if self.state == SessionState.FAILED:
            raise SessionFailedError("Session is unusable after a detector failure")
        self.state = SessionState.LOADING

    def _draw_faces(self, detections: List[np.ndarray], smooth: bool) -> None:
        limit = self.config.maxFaces
        if len(detections) > limit:
            logger.debug(f"Ignoring {len(detections) - limit} faces beyond capacity {limit}")
        for i, landmarks in enumerate(detections[:limit]):
            if smooth:
                landmarks = self.smoother.smooth(landmarks, i)
            drawn = render_face(
                self.surface,
                landmarks,
                self.texture,
                self.mapper,
                mesh_scale=self.config.meshScale,
                focal_length=self.config.focalLength,
                z_scale=self.config.zScaleFactor,
            )
            if drawn:
                self.faces_drawn += 1
