from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

SMOOTHING_FACTOR = 0.6
FOCAL_LENGTH = 1500.0
Z_SCALE_FACTOR = 800.0
MESH_SCALE = 1.5
MAX_TRACKED_FACES = 2
DEGENERATE_EPSILON = 1e-6

# MediaPipe face mesh indices used as mesh anchors.
NOSE_TIP = 4
NOSE_BRIDGE = 6
PHILTRUM = 13
LEFT_NOSTRIL = 132
RIGHT_NOSTRIL = 361
FACE_WIDTH_LEFT = 234
FACE_WIDTH_RIGHT = 454
MIN_LANDMARKS = max(NOSE_TIP, NOSE_BRIDGE, PHILTRUM, LEFT_NOSTRIL, RIGHT_NOSTRIL, FACE_WIDTH_LEFT, FACE_WIDTH_RIGHT) + 1

# Two triangles per quad: top-left, top-right, bottom-left, bottom-right.
TRIANGLES: Tuple[Tuple[int, int, int], ...] = (
    (0, 1, 3), (1, 4, 3),
    (1, 2, 4), (2, 5, 4),
    (3, 4, 6), (4, 7, 6),
    (4, 5, 7), (5, 8, 7),
)

UV_COORDS: Tuple[Tuple[float, float], ...] = (
    (0.0, 0.0), (0.5, 0.0), (1.0, 0.0),
    (0.0, 0.5), (0.5, 0.5), (1.0, 0.5),
    (0.0, 1.0), (0.5, 1.0), (1.0, 1.0),
)

Affine = Tuple[float, float, float, float, float, float]


class LandmarkSmoother:
    """Exponential smoothing of landmark coordinates, one slot per tracked face.

    Faces are matched to slots by their position in the detection result, so a
    change in face count can swap which slot a face is smoothed against.
    """

    def __init__(self, capacity: int = MAX_TRACKED_FACES, alpha: float = SMOOTHING_FACTOR) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"Smoothing factor must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self._slots: List[Optional[np.ndarray]] = [None] * capacity

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def slot(self, index: int) -> Optional[np.ndarray]:
        self._check_index(index)
        return self._slots[index]

    def smooth(self, current: np.ndarray, index: int) -> np.ndarray:
        self._check_index(index)
        previous = self._slots[index]
        if previous is None:
            self._slots[index] = current
            return current

        smoothed = np.array(current, dtype=np.float64, copy=True)
        smoothed[:, :3] = self.alpha * current[:, :3] + (1.0 - self.alpha) * previous[:, :3]
        self._slots[index] = smoothed
        return smoothed

    def reset(self) -> None:
        self._slots = [None] * len(self._slots)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._slots):
            raise IndexError(f"Track slot {index} out of range (capacity {len(self._slots)})")


def grid_from_basis(
    center: np.ndarray,
    vec_up: np.ndarray,
    vec_down: np.ndarray,
    vec_left: np.ndarray,
    vec_right: np.ndarray,
    scale: float,
) -> np.ndarray:
    left = vec_left * scale
    right = vec_right * scale
    return np.stack(
        [
            center + vec_up + left,
            center + vec_up,
            center + vec_up + right,
            center + left,
            center,
            center + right,
            center + vec_down + left,
            center + vec_down,
            center + vec_down + right,
        ]
    ).astype(np.float64)


def build_control_grid(landmarks: np.ndarray, mesh_scale: float = MESH_SCALE) -> np.ndarray:
    """Build the (9, 3) muzzle control grid from one face's landmarks.

    The grid follows head rotation through four anchor-relative vectors and
    follows face size through the cheek-to-cheek width.
    """
    pts = np.asarray(landmarks, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] < MIN_LANDMARKS or pts.shape[1] < 3:
        raise ValueError(f"Expected at least {MIN_LANDMARKS} landmarks with x, y, z; got shape {pts.shape}")

    xyz = pts[:, :3]
    center = xyz[NOSE_TIP]
    vec_up = xyz[NOSE_BRIDGE] - center
    vec_down = xyz[PHILTRUM] - center
    vec_left = xyz[LEFT_NOSTRIL] - center
    vec_right = xyz[RIGHT_NOSTRIL] - center
    face_width = float(np.hypot(*(xyz[FACE_WIDTH_RIGHT, :2] - xyz[FACE_WIDTH_LEFT, :2])))
    return grid_from_basis(center, vec_up, vec_down, vec_left, vec_right, face_width * mesh_scale)


def project_grid(
    grid: np.ndarray,
    width: int,
    height: int,
    focal_length: float = FOCAL_LENGTH,
    z_scale: float = Z_SCALE_FACTOR,
) -> np.ndarray:
    # Scales the normalized coordinate about the surface origin, not about the point.
    grid = np.asarray(grid, dtype=np.float64)
    perspective = focal_length / (focal_length + grid[:, 2] * z_scale)
    return np.stack(
        [grid[:, 0] * width * perspective, grid[:, 1] * height * perspective],
        axis=1,
    )


def triangle_area2(tri: np.ndarray) -> float:
    """Signed double area of a triangle given as (3, 2)."""
    (x0, y0), (x1, y1), (x2, y2) = np.asarray(tri, dtype=np.float64)
    return (x1 - x0) * (y2 - y0) - (x2 - x0) * (y1 - y0)


def compute_affine(src_tri: np.ndarray, dst_tri: np.ndarray) -> Optional[Affine]:
    """Return (a, b, c, d, e, f) with x' = a*x + c*y + e and y' = b*x + d*y + f.

    The transform maps each source corner onto the matching destination corner.
    Returns None when the source triangle is degenerate.
    """
    src = np.asarray(src_tri, dtype=np.float64)
    dst = np.asarray(dst_tri, dtype=np.float64)
    delta = triangle_area2(src)
    if abs(delta) < DEGENERATE_EPSILON:
        return None

    u1, u2 = src[1] - src[0], src[2] - src[0]
    q1, q2 = dst[1] - dst[0], dst[2] - dst[0]
    a = (q1[0] * u2[1] - q2[0] * u1[1]) / delta
    b = (q1[1] * u2[1] - q2[1] * u1[1]) / delta
    c = (q2[0] * u1[0] - q1[0] * u2[0]) / delta
    d = (q2[1] * u1[0] - q1[1] * u2[0]) / delta
    e = dst[0, 0] - a * src[0, 0] - c * src[0, 1]
    f = dst[0, 1] - b * src[0, 0] - d * src[0, 1]
    return float(a), float(b), float(c), float(d), float(e), float(f)


def affine_matrix(affine: Affine) -> np.ndarray:
    a, b, c, d, e, f = affine
    return np.array([[a, c, e], [b, d, f]], dtype=np.float64)


def load_texture(path: str) -> Optional[np.ndarray]:
    """Load the overlay texture as BGRA, or None when it cannot be read."""
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None:
        logger.warning(f"Overlay texture not found or unreadable: {path}")
        return None
    return to_bgra(img)


def to_bgra(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    if img.shape[2] == 4:
        return img
    return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)


def is_drawable(texture: Optional[np.ndarray]) -> bool:
    return texture is not None and texture.ndim >= 2 and texture.shape[0] > 0 and texture.shape[1] > 0


class Surface:
    """Mutable BGR raster with the drawing primitives used by the mapper."""

    def __init__(self, width: int, height: int) -> None:
        self.pixels = np.zeros((height, width, 3), dtype=np.uint8)

    @classmethod
    def from_image(cls, image: np.ndarray) -> "Surface":
        h, w = image.shape[:2]
        surface = cls(w, h)
        surface.draw_image(image)
        return surface

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def clear(self) -> None:
        self.pixels[:] = 0

    def draw_image(self, image: np.ndarray) -> None:
        if image.ndim == 3 and image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        if image.shape[:2] != self.pixels.shape[:2]:
            image = cv2.resize(image, (self.width, self.height), interpolation=cv2.INTER_AREA)
        self.pixels[:] = image

    def draw_clipped(self, image: np.ndarray, matrix: np.ndarray, polygon: np.ndarray) -> None:
        """Draw the whole image through `matrix`, visible only inside `polygon`."""
        pts = np.round(np.asarray(polygon, dtype=np.float64)).astype(np.int32)
        bx, by, bw, bh = cv2.boundingRect(pts)
        x0, y0 = max(bx, 0), max(by, 0)
        x1, y1 = min(bx + bw, self.width), min(by + bh, self.height)
        if x0 >= x1 or y0 >= y1:
            return

        local = np.array(matrix, dtype=np.float64, copy=True)
        local[0, 2] -= x0
        local[1, 2] -= y0
        src = to_bgra(image)
        warped = cv2.warpAffine(
            src,
            local,
            (x1 - x0, y1 - y0),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0, 0),
        )

        clip = np.zeros((y1 - y0, x1 - x0), dtype=np.uint8)
        cv2.fillConvexPoly(clip, pts - np.array([x0, y0], dtype=np.int32), 255)
        alpha = (clip.astype(np.float32) / 255.0) * (warped[..., 3].astype(np.float32) / 255.0)
        alpha = alpha[..., None]

        roi = self.pixels[y0:y1, x0:x1]
        out = warped[..., :3].astype(np.float32) * alpha + roi.astype(np.float32) * (1.0 - alpha)
        roi[:] = np.clip(out + 0.5, 0, 255).astype(np.uint8)


class TextureMapper:
    """Maps the texture onto a projected grid, one affine per triangle."""

    def __init__(
        self,
        uv: Sequence[Tuple[float, float]] = UV_COORDS,
        triangles: Sequence[Tuple[int, int, int]] = TRIANGLES,
    ) -> None:
        self.uv = np.asarray(uv, dtype=np.float64)
        self.triangles = tuple(tuple(t) for t in triangles)

    def draw(self, surface: Surface, projected: np.ndarray, texture: Optional[np.ndarray]) -> int:
        if not is_drawable(texture):
            return 0
        th, tw = texture.shape[:2]
        tex_px = self.uv * np.array([tw, th], dtype=np.float64)
        projected = np.asarray(projected, dtype=np.float64)

        drawn = 0
        for tri in self.triangles:
            idx = list(tri)
            dst = projected[idx]
            affine = compute_affine(tex_px[idx], dst)
            if affine is None:
                logger.debug(f"Skipping degenerate texture triangle {tri}")
                continue
            surface.draw_clipped(texture, affine_matrix(affine), dst)
            drawn += 1
        return drawn


def render_face(
    surface: Surface,
    landmarks: np.ndarray,
    texture: Optional[np.ndarray],
    mapper: TextureMapper,
    mesh_scale: float = MESH_SCALE,
    focal_length: float = FOCAL_LENGTH,
    z_scale: float = Z_SCALE_FACTOR,
) -> int:
    if not is_drawable(texture):
        return 0
    grid = build_control_grid(landmarks, mesh_scale)
    projected = project_grid(grid, surface.width, surface.height, focal_length, z_scale)
    return mapper.draw(surface, projected, texture)
