from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_FPS = 30.0

# Output file extension and MIME type per encoder fourcc.
CONTAINERS = {
    "mp4v": (".mp4", "video/mp4"),
    "avc1": (".mp4", "video/mp4"),
    "h264": (".mp4", "video/mp4"),
    "mjpg": (".avi", "video/x-msvideo"),
    "xvid": (".avi", "video/x-msvideo"),
    "divx": (".avi", "video/x-msvideo"),
    "vp80": (".webm", "video/webm"),
    "vp90": (".webm", "video/webm"),
}


class PlaybackError(RuntimeError):
    """The video source could not be opened or the encoder could not start."""


def container_for(fourcc: str) -> Tuple[str, str]:
    """Return (extension, media type) of the container that holds `fourcc` output."""
    try:
        return CONTAINERS[fourcc.lower()]
    except KeyError:
        raise ValueError(f"Unsupported video fourcc: {fourcc!r}") from None


def fit_processing_size(width: int, height: int, max_width: int) -> Tuple[int, int]:
    """Downscale (width, height) to at most max_width, keeping the aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid source size {width}x{height}")
    out_w = min(width, max_width)
    out_h = max(1, int(round(out_w * height / width)))
    return out_w, out_h


def open_video_capture(path: str, retries: int = 5, delay_sec: float = 0.05) -> cv2.VideoCapture:
    """Open a VideoCapture, trying the FFMPEG backend first and retrying briefly."""
    backends = [getattr(cv2, "CAP_FFMPEG", None), None]
    for _ in range(max(1, retries)):
        for backend in backends:
            cap = cv2.VideoCapture(path) if backend is None else cv2.VideoCapture(path, backend)
            if cap.isOpened():
                ok, _ = cap.read()
                if ok:
                    cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                    return cap
            cap.release()
        time.sleep(delay_sec)
    raise PlaybackError(f"Failed to open video: {path}")


class VideoFileSource:
    """Decoded video frames with per-frame timestamps in milliseconds."""

    def __init__(self, path: str, retries: int = 5) -> None:
        self.path = path
        self.retries = retries
        self.ended = False
        self.paused = False
        self.fps = DEFAULT_FPS
        self.size: Tuple[int, int] = (0, 0)
        self._cap: Optional[cv2.VideoCapture] = None
        self._index = 0

    def open(self) -> None:
        self._cap = open_video_capture(self.path, retries=self.retries)
        w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        if w <= 0 or h <= 0:
            self.close()
            raise PlaybackError(f"Video has no usable dimensions: {self.path}")
        fps = float(self._cap.get(cv2.CAP_PROP_FPS) or 0)
        self.fps = fps if fps > 0 else DEFAULT_FPS
        self.size = (w, h)

    def read(self) -> Optional[Tuple[np.ndarray, float]]:
        if self._cap is None or self.ended:
            return None
        ok, frame = self._cap.read()
        if not ok:
            self.ended = True
            return None
        timestamp_ms = self._index * 1000.0 / self.fps
        self._index += 1
        return frame, timestamp_ms

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class FrameRecorder:
    """Encodes finished surface frames without holding up the render loop.

    Frames are copied into a queue and written by a consumer task. `stop()`
    drains the queue and releases the writer exactly once.
    """

    def __init__(self, path: str, fourcc: str = "mp4v") -> None:
        self.path = path
        self.fourcc = fourcc
        self.frames_written = 0
        self._writer: Optional[cv2.VideoWriter] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def finalized(self) -> bool:
        return self._stopped

    async def start(self, fps: float, size: Tuple[int, int]) -> None:
        writer = cv2.VideoWriter(self.path, cv2.VideoWriter_fourcc(*self.fourcc), fps, size)
        if not writer.isOpened():
            raise PlaybackError(f"Failed to start video encoder ({self.fourcc}) for {self.path}")
        self._writer = writer
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._consume())

    def push(self, frame: np.ndarray) -> None:
        if self._queue is None or self._stopped:
            return
        self._queue.put_nowait(frame.copy())

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._queue is not None and self._task is not None:
            self._queue.put_nowait(None)
            await self._task
        if self._writer is not None:
            self._writer.release()
            self._writer = None
        logger.info(f"Encoded {self.frames_written} frames to {self.path}")

    async def _consume(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            await asyncio.to_thread(self._writer.write, frame)
            self.frames_written += 1
