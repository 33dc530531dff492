from __future__ import annotations

import asyncio
import base64
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Callable, Optional

import cv2
import numpy as np
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from .config import Settings, get_settings
from .face_landmarker import DetectorInitError, FaceLandmarkDetector, LandmarkDetector
from .models import DetectorConfig, HealthResponse, MuzzleConfig, MuzzleImageResponse
from .muzzle_pipeline import is_drawable, load_texture
from .session import MuzzleSession, UnsupportedInputError, classify_media
from .video_io import FrameRecorder, PlaybackError, VideoFileSource, container_for

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

IMAGE_FILENAME = "synthesized_image.png"
# Extension follows the container of the configured fourcc.
VIDEO_BASENAME = "synthesized_video"


def encode_image(image: np.ndarray) -> str:
    success, buffer = cv2.imencode(".png", image)
    if not success:
        raise ValueError("Failed to encode image")
    return "data:image/png;base64," + base64.b64encode(buffer).decode("utf-8")


def _parse_config(raw: Optional[str], settings: Settings) -> MuzzleConfig:
    if not raw:
        return settings.muzzle_config()
    try:
        return MuzzleConfig.model_validate_json(raw)
    except ValidationError as exc:
        logger.error(f"Invalid muzzleConfig: {exc}")
        raise HTTPException(status_code=400, detail=f"Invalid muzzleConfig: {exc.errors()}") from exc


def _require_kind(upload: UploadFile, expected: str) -> None:
    try:
        kind = classify_media(upload.content_type)
    except UnsupportedInputError as exc:
        raise HTTPException(status_code=415, detail=str(exc)) from exc
    if kind != expected:
        raise HTTPException(status_code=415, detail=f"Expected {expected} upload, got {upload.content_type}")


async def _read_upload(upload: UploadFile) -> bytes:
    data = await upload.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload payload")
    return data


def _decode_image(data: bytes) -> np.ndarray:
    image = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise HTTPException(status_code=400, detail="Unsupported image format")
    return image


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _detector_config(settings: Settings, mode: str, max_faces: int) -> DetectorConfig:
    return DetectorConfig(
        maxFaces=max_faces,
        minDetectionConfidence=settings.min_detection_confidence,
        outputTransform=True,
        mode=mode,
    )


def get_texture(request: Request) -> Optional[np.ndarray]:
    return request.app.state.texture


def get_image_detector(request: Request) -> Optional[LandmarkDetector]:
    """The shared IMAGE-mode detector, or None when it failed to initialize."""
    return request.app.state.detector


def get_video_detector_factory(settings: Settings = Depends(get_settings)) -> Callable[[], LandmarkDetector]:
    def factory() -> LandmarkDetector:
        return FaceLandmarkDetector(settings.landmarker_path)

    return factory


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.dependency_overrides.get(get_settings, get_settings)()
    app.state.texture = load_texture(settings.texture_path)
    app.state.detector = None
    app.state.detector_error = None
    detector = FaceLandmarkDetector(settings.landmarker_path)
    try:
        await asyncio.to_thread(detector.initialize, _detector_config(settings, "image", settings.max_faces))
        app.state.detector = detector
    except DetectorInitError as exc:
        logger.error(f"Face landmarker initialization failed: {exc}")
        app.state.detector_error = str(exc)
    yield
    detector.close()
    app.state.detector = None


app = FastAPI(title="Muzzle Overlay Backend", version="1.0.0", lifespan=lifespan)

# Configure CORS
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    detector: Optional[LandmarkDetector] = Depends(get_image_detector),
    texture: Optional[np.ndarray] = Depends(get_texture),
) -> HealthResponse:
    error = request.app.state.detector_error
    if detector is not None:
        status = "ready"
    elif error:
        status = "failed"
    else:
        status = "pending"
    return HealthResponse(detector=status, texture=is_drawable(texture), detail=error)


async def _render_image(
    request: Request,
    image: UploadFile,
    raw_config: Optional[str],
    settings: Settings,
    detector: Optional[LandmarkDetector],
    texture: Optional[np.ndarray],
) -> MuzzleImageResponse:
    _require_kind(image, "image")
    config = _parse_config(raw_config, settings)
    # The shared detector was created with num_faces = settings.max_faces.
    if config.maxFaces > settings.max_faces:
        raise HTTPException(
            status_code=400,
            detail=f"maxFaces {config.maxFaces} exceeds the image detector limit of {settings.max_faces}",
        )
    if detector is None:
        raise HTTPException(
            status_code=503,
            detail=f"Face detector unavailable: {request.app.state.detector_error}",
        )
    img = _decode_image(await _read_upload(image))
    try:
        session = MuzzleSession(detector, texture, config)
        result = session.process_image(img)
        return MuzzleImageResponse(
            image=encode_image(result),
            faces=session.faces_drawn,
            filename=IMAGE_FILENAME,
        )
    except Exception as exc:
        logger.error(f"Error rendering muzzle on image: {exc}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to render image: {str(exc)}") from exc


async def _render_video(
    video: UploadFile,
    raw_config: Optional[str],
    settings: Settings,
    detector_factory: Callable[[], LandmarkDetector],
    texture: Optional[np.ndarray],
) -> FileResponse:
    _require_kind(video, "video")
    config = _parse_config(raw_config, settings)
    data = await _read_upload(video)
    extension, media_type = container_for(settings.video_fourcc)

    suffix = os.path.splitext(video.filename or "")[1] or ".mp4"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as src:
        src.write(data)
        src_path = src.name
    fd, out_path = tempfile.mkstemp(suffix=extension)
    os.close(fd)

    session = MuzzleSession(detector_factory(), texture, config, frame_interval=settings.frame_interval)
    try:
        await session.initialize_detector(_detector_config(settings, "video", config.maxFaces))
        await session.process_video(
            VideoFileSource(src_path),
            FrameRecorder(out_path, settings.video_fourcc),
        )
    except DetectorInitError as exc:
        _remove(out_path)
        logger.error(f"Face landmarker initialization failed: {exc}")
        raise HTTPException(status_code=503, detail=f"Face detector unavailable: {exc}") from exc
    except PlaybackError as exc:
        _remove(out_path)
        logger.error(f"Video playback failed: {exc}")
        raise HTTPException(status_code=422, detail=f"Could not play video: {exc}") from exc
    except Exception as exc:
        _remove(out_path)
        logger.error(f"Error rendering muzzle on video: {exc}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to render video: {str(exc)}") from exc
    finally:
        _remove(src_path)
        close = getattr(session.detector, "close", None)
        if close is not None:
            close()

    return FileResponse(
        out_path,
        media_type=media_type,
        filename=VIDEO_BASENAME + extension,
        background=BackgroundTask(_remove, out_path),
    )


@app.post("/api/muzzle/image", response_model=MuzzleImageResponse)
async def muzzle_image(
    request: Request,
    image: UploadFile = File(...),
    muzzleConfig: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
    detector: Optional[LandmarkDetector] = Depends(get_image_detector),
    texture: Optional[np.ndarray] = Depends(get_texture),
) -> MuzzleImageResponse:
    """Overlay the muzzle on every detected face of a still image."""
    return await _render_image(request, image, muzzleConfig, settings, detector, texture)


@app.post("/api/muzzle/video")
async def muzzle_video(
    video: UploadFile = File(...),
    muzzleConfig: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
    detector_factory: Callable[[], LandmarkDetector] = Depends(get_video_detector_factory),
    texture: Optional[np.ndarray] = Depends(get_texture),
) -> FileResponse:
    """Overlay the muzzle on a video clip and return the re-encoded file."""
    return await _render_video(video, muzzleConfig, settings, detector_factory, texture)


@app.post("/api/muzzle")
async def muzzle_any(
    request: Request,
    file: UploadFile = File(...),
    muzzleConfig: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
    detector: Optional[LandmarkDetector] = Depends(get_image_detector),
    detector_factory: Callable[[], LandmarkDetector] = Depends(get_video_detector_factory),
    texture: Optional[np.ndarray] = Depends(get_texture),
):
    try:
        kind = classify_media(file.content_type)
    except UnsupportedInputError as exc:
        raise HTTPException(status_code=415, detail=str(exc)) from exc
    if kind == "image":
        return await _render_image(request, file, muzzleConfig, settings, detector, texture)
    return await _render_video(file, muzzleConfig, settings, detector_factory, texture)
