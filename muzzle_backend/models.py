from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class DetectorConfig(BaseModel):
    maxFaces: int = Field(default=2, ge=1)
    minDetectionConfidence: float = Field(default=0.3, ge=0, le=1)
    outputTransform: bool = True
    mode: Literal["image", "video"] = "image"


class MuzzleConfig(BaseModel):
    smoothingFactor: float = Field(default=0.6, gt=0, le=1)
    focalLength: float = Field(default=1500.0, gt=0)
    zScaleFactor: float = 800.0
    meshScale: float = 1.5
    maxFaces: int = Field(default=2, ge=1)
    maxProcessingWidth: int = Field(default=1280, ge=1)


class MuzzleImageResponse(BaseModel):
    image: str
    faces: int = 0
    filename: str = "synthesized_image.png"


class HealthResponse(BaseModel):
    status: str = "ok"
    detector: Literal["ready", "failed", "pending"] = "pending"
    texture: bool = False
    detail: Optional[str] = None
