"""
Muzzle overlay backend: warps a texture onto detected faces in images and video.
"""

__all__ = [
    "config",
    "face_landmarker",
    "main",
    "models",
    "muzzle_pipeline",
    "session",
    "video_io",
]
