"""
FaceMesh Liveness - Geometric Feature Tests
===========================================
EAR / MAR / gaze / centers / eye widths on synthetic 478-point faces.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveness_features import (
    compute_face_features,
    eye_aspect_ratio,
    eye_pixel_width,
    gaze_offset,
    landmark_center,
    mouth_aspect_ratio,
)
from liveness_topology import (
    LEFT_EYE_INDICES,
    LEFT_IRIS_INDICES,
    MOUTH_CORNERS,
    MOUTH_VERTICAL_PAIRS,
    REQUIRED_LANDMARKS,
    RIGHT_EYE_INDICES,
    RIGHT_IRIS_INDICES,
)
from liveness_types import FaceFeatures, Landmark


# ── Helpers ───────────────────────────────────────────────────

class _MockLandmark:
    """Simulate MediaPipe landmark with .x, .y attributes."""
    def __init__(self, x: float, y: float):
        self.x = x
        self.y = y


def _hexagon(cx: float, cy: float, half_width: float = 0.05, gap: float = 0.02) -> np.ndarray:
    """Symmetric open-eye hexagon in EAR order; EAR = gap / (2 * half_width)."""
    return np.array([
        [cx - half_width, cy],               # p0 corner
        [cx - half_width / 3, cy - gap / 2],  # p1 upper
        [cx + half_width / 3, cy - gap / 2],  # p2 upper
        [cx + half_width, cy],               # p3 corner
        [cx + half_width / 3, cy + gap / 2],  # p4 lower
        [cx - half_width / 3, cy + gap / 2],  # p5 lower
    ])


def _make_face(seed: int = 7) -> np.ndarray:
    """478 (x, y) points with known eye, iris and mouth geometry."""
    rng = np.random.RandomState(seed)
    pts = np.column_stack([
        rng.uniform(0.4, 0.6, REQUIRED_LANDMARKS),
        rng.uniform(0.3, 0.5, REQUIRED_LANDMARKS),
    ])

    # Eyes: EAR 0.2 on both sides
    pts[list(LEFT_EYE_INDICES)] = _hexagon(0.45, 0.38)
    pts[list(RIGHT_EYE_INDICES)] = _hexagon(0.55, 0.38)

    # Irises centered on their eyes
    pts[list(LEFT_IRIS_INDICES)] = [[0.45, 0.375], [0.455, 0.38], [0.45, 0.385], [0.445, 0.38]]
    pts[list(RIGHT_IRIS_INDICES)] = [[0.55, 0.375], [0.555, 0.38], [0.55, 0.385], [0.545, 0.38]]

    # Mouth: all vertical gaps 0.02, corner distance 0.1 -> MAR 0.2
    for i, (a, b) in enumerate(MOUTH_VERTICAL_PAIRS):
        x = 0.47 + 0.03 * i
        pts[a] = [x, 0.46]
        pts[b] = [x, 0.48]
    pts[MOUTH_CORNERS[0]] = [0.45, 0.47]
    pts[MOUTH_CORNERS[1]] = [0.55, 0.47]
    return pts


# ═══════════════════════════════════════════════════════════════
# Eye Aspect Ratio
# ═══════════════════════════════════════════════════════════════

def test_ear_open_eye_hexagon_is_point_two():
    """Vertical gaps 0.02, horizontal gap 0.10 -> (0.02 + 0.02) / (2 * 0.10)."""
    assert eye_aspect_ratio(_hexagon(0.5, 0.5)) == pytest.approx(0.2)


def test_ear_accepts_landmark_objects():
    eye = [_MockLandmark(x, y) for x, y in _hexagon(0.3, 0.6)]
    assert eye_aspect_ratio(eye) == pytest.approx(0.2)


def test_ear_zero_when_corners_coincide():
    eye = _hexagon(0.5, 0.5)
    eye[3] = eye[0]
    assert eye_aspect_ratio(eye) == 0.0


def test_ear_zero_for_wrong_point_count():
    assert eye_aspect_ratio(_hexagon(0.5, 0.5)[:5]) == 0.0
    assert eye_aspect_ratio([]) == 0.0


def test_ear_scale_invariant():
    eye = _hexagon(0.5, 0.5)
    scaled = (eye - 0.5) * 0.37 + 0.5
    assert eye_aspect_ratio(scaled) == pytest.approx(eye_aspect_ratio(eye))


# ═══════════════════════════════════════════════════════════════
# Mouth, gaze, centers
# ═══════════════════════════════════════════════════════════════

def test_mar_known_value():
    assert mouth_aspect_ratio(_make_face()) == pytest.approx(0.2)


def test_mar_zero_when_mouth_corners_coincide():
    pts = _make_face()
    pts[MOUTH_CORNERS[1]] = pts[MOUTH_CORNERS[0]]
    assert mouth_aspect_ratio(pts) == 0.0


def test_gaze_centered_iris_is_zero():
    assert gaze_offset((0.5, 0.4), (0.45, 0.4), (0.55, 0.4)) == pytest.approx(0.0)


def test_gaze_sign_and_scale():
    # Iris shifted a quarter eye-width toward corner_b
    assert gaze_offset((0.525, 0.4), (0.45, 0.4), (0.55, 0.4)) == pytest.approx(0.25)
    assert gaze_offset((0.475, 0.4), (0.45, 0.4), (0.55, 0.4)) == pytest.approx(-0.25)


def test_gaze_zero_when_eye_has_no_width():
    assert gaze_offset((0.6, 0.4), (0.5, 0.3), (0.5, 0.5)) == 0.0


def test_landmark_center_empty_set():
    assert landmark_center([]) == (0.0, 0.0)


def test_eye_pixel_width_scales_each_axis():
    # 0.1 wide in x on a 640 frame, 0.1 tall in y on a 480 frame
    assert eye_pixel_width((0.4, 0.5), (0.5, 0.5), 640, 480) == pytest.approx(64.0)
    assert eye_pixel_width((0.5, 0.4), (0.5, 0.5), 640, 480) == pytest.approx(48.0)


# ═══════════════════════════════════════════════════════════════
# Full feature vector
# ═══════════════════════════════════════════════════════════════

def test_features_on_synthetic_face():
    features = compute_face_features(_make_face(), 640, 480)

    assert features.ear_left == pytest.approx(0.2)
    assert features.ear_right == pytest.approx(0.2)
    assert features.ear_avg == pytest.approx(0.2)
    assert features.mar == pytest.approx(0.2)
    assert features.gaze_left == pytest.approx(0.0, abs=1e-9)
    assert features.gaze_right == pytest.approx(0.0, abs=1e-9)

    assert features.left_eye_x == pytest.approx(0.45 * 640)
    assert features.left_eye_y == pytest.approx(0.38 * 480)
    assert features.right_iris_x == pytest.approx(0.55 * 640)
    assert features.left_eye_width == pytest.approx(0.1 * 640)
    assert features.right_eye_width == pytest.approx(0.1 * 640)
    assert not features.is_zero()


def test_collapsed_left_eye_zeroes_left_ear_only():
    """All 6 left-eye points on one coordinate -> EAR_left 0, avg = right / 2."""
    pts = _make_face()
    pts[list(LEFT_EYE_INDICES)] = [0.45, 0.38]

    features = compute_face_features(pts, 640, 480)
    assert features.ear_left == 0.0
    assert features.ear_right == pytest.approx(0.2)
    assert features.ear_avg == pytest.approx(features.ear_right / 2.0)
    assert features.left_eye_width == 0.0
    assert features.gaze_left == 0.0


def test_fewer_than_478_landmarks_returns_zero_sentinel(caplog):
    pts = _make_face()[:468]  # mesh without refined irises

    with caplog.at_level(logging.WARNING, logger="LivenessFeatures"):
        features = compute_face_features(pts, 640, 480)

    assert features == FaceFeatures.zeros()
    assert features.is_zero()
    assert any("Not enough landmarks" in r.getMessage() for r in caplog.records)


def test_empty_landmark_set_returns_zero_sentinel():
    assert compute_face_features([], 640, 480).is_zero()


def test_translation_moves_centers_but_not_ratios():
    pts = _make_face()
    dx, dy = 0.05, -0.02
    base = compute_face_features(pts, 640, 480)
    moved = compute_face_features(pts + [dx, dy], 640, 480)

    assert moved.face_center_x == pytest.approx(base.face_center_x + dx * 640)
    assert moved.face_center_y == pytest.approx(base.face_center_y + dy * 480)
    assert moved.left_iris_x == pytest.approx(base.left_iris_x + dx * 640)
    assert moved.ear_avg == pytest.approx(base.ear_avg)
    assert moved.mar == pytest.approx(base.mar)
    assert moved.left_eye_width == pytest.approx(base.left_eye_width)


def test_uniform_scale_keeps_ear_and_mar():
    pts = _make_face()
    scaled = (pts - 0.5) * 0.5 + 0.5
    base = compute_face_features(pts, 640, 480)
    small = compute_face_features(scaled, 640, 480)

    assert small.ear_left == pytest.approx(base.ear_left)
    assert small.mar == pytest.approx(base.mar)
    assert small.left_eye_width == pytest.approx(base.left_eye_width * 0.5)


def test_landmark_objects_and_array_agree():
    pts = _make_face()
    as_objects = [Landmark(x=float(x), y=float(y), z=0.0) for x, y in pts]
    assert compute_face_features(as_objects, 320, 240) == compute_face_features(pts, 320, 240)


def test_feature_vector_order_and_dtype():
    features = compute_face_features(_make_face(), 640, 480)
    vec = features.as_array()

    assert vec.shape == (18,)
    assert vec.dtype == np.float32
    assert FaceFeatures.field_names()[0] == "ear_left"
    assert FaceFeatures.field_names()[-1] == "right_eye_width"
    assert vec[5] == pytest.approx(features.mar)
