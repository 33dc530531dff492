from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import MuzzleConfig
from .video_io import container_for


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MUZZLE_", env_file=".env", extra="ignore")

    allowed_origins: List[str] = ["*"]
    landmarker_path: str = "face_landmarker.task"
    texture_path: str = "cat_muzzle.png"
    video_fourcc: str = "mp4v"
    # Seconds to wait between render cycles; 0 only yields to the event loop.
    frame_interval: float = 0.0

    smoothing_factor: float = 0.6
    focal_length: float = 1500.0
    z_scale_factor: float = 800.0
    mesh_scale: float = 1.5
    max_faces: int = 2
    max_processing_width: int = 1280
    min_detection_confidence: float = 0.3

    @field_validator("video_fourcc")
    @classmethod
    def _known_container(cls, value: str) -> str:
        container_for(value)
        return value

    def muzzle_config(self) -> MuzzleConfig:
        return MuzzleConfig(
            smoothingFactor=self.smoothing_factor,
            focalLength=self.focal_length,
            zScaleFactor=self.z_scale_factor,
            meshScale=self.mesh_scale,
            maxFaces=self.max_faces,
            maxProcessingWidth=self.max_processing_width,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
