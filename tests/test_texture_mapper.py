import cv2
import numpy as np
import pytest

from muzzle_backend.muzzle_pipeline import (
    TRIANGLES,
    UV_COORDS,
    Surface,
    TextureMapper,
    affine_matrix,
    build_control_grid,
    compute_affine,
    project_grid,
    render_face,
)

from conftest import make_landmarks, make_texture


class RecordingSurface(Surface):
    def __init__(self, width, height):
        super().__init__(width, height)
        self.polygons = []

    def draw_clipped(self, image, matrix, polygon):
        self.polygons.append(np.asarray(polygon).copy())
        super().draw_clipped(image, matrix, polygon)


def _apply(affine, pts):
    m = affine_matrix(affine)
    pts = np.asarray(pts, dtype=np.float64)
    return pts @ m[:, :2].T + m[:, 2]


def test_affine_reproduces_destination_corners_for_random_triangles():
    rng = np.random.default_rng(1234)
    checked = 0
    for _ in range(300):
        src = rng.uniform(-500, 500, size=(3, 2))
        dst = rng.uniform(-500, 500, size=(3, 2))
        area = (src[1, 0] - src[0, 0]) * (src[2, 1] - src[0, 1]) - (src[2, 0] - src[0, 0]) * (src[1, 1] - src[0, 1])
        if abs(area) < 1.0:
            continue
        affine = compute_affine(src, dst)
        assert affine is not None
        assert np.allclose(_apply(affine, src), dst, atol=1e-6)
        checked += 1
    assert checked > 250


def test_affine_identity_and_translation():
    tri = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    assert compute_affine(tri, tri) == pytest.approx((1.0, 0.0, 0.0, 1.0, 0.0, 0.0))
    shifted = compute_affine(tri, tri + [3.0, -2.0])
    assert shifted == pytest.approx((1.0, 0.0, 0.0, 1.0, 3.0, -2.0))


def test_affine_rejects_collinear_source():
    src = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
    dst = np.array([[0.0, 0.0], [5.0, 0.0], [0.0, 5.0]])
    assert compute_affine(src, dst) is None
    dup = np.array([[3.0, 4.0], [3.0, 4.0], [7.0, 1.0]])
    assert compute_affine(dup, dst) is None


def test_triangle_with_repeated_uv_is_skipped():
    uv = list(UV_COORDS)
    uv[1] = uv[0]
    mapper = TextureMapper(uv=uv)
    surface = RecordingSurface(200, 200)
    projected = project_grid(build_control_grid(make_landmarks()), 200, 200)
    drawn = mapper.draw(surface, projected, make_texture())
    # Only (0, 1, 3) uses both index 0 and index 1.
    assert drawn == 7
    assert len(surface.polygons) == 7
    assert np.allclose(surface.polygons[0], projected[[1, 4, 3]])


def test_fully_degenerate_uv_table_draws_nothing():
    mapper = TextureMapper(uv=[(0.5, 0.5)] * 9)
    surface = RecordingSurface(100, 100)
    before = surface.pixels.copy()
    projected = project_grid(build_control_grid(make_landmarks()), 100, 100)
    assert mapper.draw(surface, projected, make_texture()) == 0
    assert surface.polygons == []
    assert np.array_equal(surface.pixels, before)


def test_one_face_draws_eight_triangles_in_table_order():
    surface = RecordingSurface(200, 200)
    lm = make_landmarks()
    drawn = render_face(surface, lm, make_texture(), TextureMapper())
    projected = project_grid(build_control_grid(lm), 200, 200)
    assert drawn == 8
    assert len(surface.polygons) == 8
    for polygon, tri in zip(surface.polygons, TRIANGLES):
        assert np.allclose(polygon, projected[list(tri)])


def test_changes_stay_inside_triangle_union():
    base = np.full((200, 200, 3), 128, dtype=np.uint8)
    surface = Surface.from_image(base)
    lm = make_landmarks()
    render_face(surface, lm, make_texture(color=(0, 0, 255)), TextureMapper())

    projected = project_grid(build_control_grid(lm), 200, 200)
    union = np.zeros((200, 200), dtype=np.uint8)
    for tri in TRIANGLES:
        cv2.fillConvexPoly(union, np.round(projected[list(tri)]).astype(np.int32), 255)
    union = cv2.dilate(union, np.ones((3, 3), np.uint8), iterations=2)

    changed = np.any(surface.pixels != base, axis=2)
    assert changed.any()
    assert not np.any(changed & (union == 0))
    # The muzzle center is covered by the texture color.
    cx, cy = np.round(projected[4]).astype(int)
    assert tuple(surface.pixels[cy, cx]) == (0, 0, 255)


def test_texture_alpha_is_respected():
    base = np.full((200, 200, 3), 50, dtype=np.uint8)
    surface = Surface.from_image(base)
    tex = make_texture()
    tex[..., 3] = 0
    assert render_face(surface, make_landmarks(), tex, TextureMapper()) == 8
    assert np.array_equal(surface.pixels, base)


def test_missing_or_empty_texture_is_a_no_op():
    base = np.full((120, 120, 3), 10, dtype=np.uint8)
    surface = Surface.from_image(base)
    projected = project_grid(build_control_grid(make_landmarks()), 120, 120)
    mapper = TextureMapper()
    assert mapper.draw(surface, projected, None) == 0
    assert mapper.draw(surface, projected, np.zeros((0, 0, 4), dtype=np.uint8)) == 0
    assert render_face(surface, make_landmarks(), None, mapper) == 0
    assert np.array_equal(surface.pixels, base)


def test_offscreen_triangles_are_clipped_by_the_surface():
    surface = Surface(50, 50)
    lm = make_landmarks(center=(3.0, 3.0, 0.0))
    assert render_face(surface, lm, make_texture(), TextureMapper()) == 8
    assert not surface.pixels.any()


def test_surface_primitives():
    surface = Surface(40, 30)
    assert (surface.width, surface.height) == (40, 30)
    frame = np.full((60, 80, 3), 200, dtype=np.uint8)
    surface.draw_image(frame)
    assert surface.pixels.shape == (30, 40, 3)
    assert np.all(surface.pixels == 200)
    surface.clear()
    assert not surface.pixels.any()
