"""
FaceMesh Liveness - Geometric Feature Extractor
===============================================
Pure functions: landmark set + frame size -> FaceFeatures (18 values).

Ratios are computed on normalized (x, y); only centers and eye widths are
scaled to pixels. Every guarded division returns exactly 0.0 instead of
raising, so degenerate geometry (collapsed eyes, zero-width mouth) never
produces NaN or an exception.

  EAR = (|p1-p5| + |p2-p4|) / (2 * |p0-p3|)
  MAR = mean(|13-14|, |78-95|, |308-324|) / |61-291|
  gaze = (iris_center.x - eye_center.x) / |corner_b.x - corner_a.x|
"""

from __future__ import annotations

import logging
import math
from typing import Any

from liveness_topology import (
    LEFT_EYE_CORNERS,
    LEFT_EYE_INDICES,
    LEFT_IRIS_INDICES,
    MOUTH_CORNERS,
    MOUTH_VERTICAL_PAIRS,
    REQUIRED_LANDMARKS,
    RIGHT_EYE_CORNERS,
    RIGHT_EYE_INDICES,
    RIGHT_IRIS_INDICES,
)
from liveness_types import FaceFeatures, landmarks_to_array

_log = logging.getLogger("LivenessFeatures")


def _xy(p) -> tuple[float, float]:
    if hasattr(p, "x") and hasattr(p, "y"):
        return float(p.x), float(p.y)
    return float(p[0]), float(p[1])


def _distance(a, b) -> float:
    ax, ay = _xy(a)
    bx, by = _xy(b)
    return math.hypot(ax - bx, ay - by)


def _safe_ratio(numerator: float, denominator: float) -> float:
    # `not >` also routes NaN denominators to 0.0
    if not denominator > 0.0:
        return 0.0
    return numerator / denominator


# ═══════════════════════════════════════════════════════════════
# Primitive measurements
# ═══════════════════════════════════════════════════════════════

def eye_aspect_ratio(eye_points: Any) -> float:
    """Eye Aspect Ratio from the 6 designated eye landmarks.

    Args:
        eye_points: 6 points [p0..p5] (objects with .x/.y, pairs, or an
                    (6, 2|3) array) in LEFT/RIGHT_EYE_INDICES order.

    Returns:
        EAR, or 0.0 when the horizontal corner distance is zero or the
        input does not hold exactly 6 points.
    """
    pts = landmarks_to_array(eye_points)
    if pts.shape[0] != 6:
        return 0.0

    vertical_1 = _distance(pts[1], pts[5])
    vertical_2 = _distance(pts[2], pts[4])
    horizontal = _distance(pts[0], pts[3])

    return _safe_ratio(vertical_1 + vertical_2, 2.0 * horizontal)


def mouth_aspect_ratio(landmarks: Any) -> float:
    """Mouth Aspect Ratio over the full landmark set (needs indices up to 324)."""
    pts = landmarks_to_array(landmarks)

    verticals = [_distance(pts[a], pts[b]) for a, b in MOUTH_VERTICAL_PAIRS]
    horizontal = _distance(pts[MOUTH_CORNERS[0]], pts[MOUTH_CORNERS[1]])

    return _safe_ratio(sum(verticals) / len(verticals), horizontal)


def landmark_center(points: Any) -> tuple[float, float]:
    """Arithmetic mean of x and of y. (0.0, 0.0) for an empty set."""
    pts = landmarks_to_array(points)
    if pts.shape[0] == 0:
        return 0.0, 0.0
    return float(pts[:, 0].mean()), float(pts[:, 1].mean())


def gaze_offset(iris_center: tuple[float, float], corner_a: Any, corner_b: Any) -> float:
    """Signed horizontal iris displacement from the eye center, in eye widths."""
    ax, _ = _xy(corner_a)
    bx, _ = _xy(corner_b)

    eye_center_x = (ax + bx) / 2.0
    eye_width = abs(bx - ax)
    return _safe_ratio(iris_center[0] - eye_center_x, eye_width)


def eye_pixel_width(corner_a, corner_b, image_width: int, image_height: int) -> float:
    """Corner-to-corner distance after scaling both corners to pixels."""
    ax, ay = _xy(corner_a)
    bx, by = _xy(corner_b)
    return _distance((ax * image_width, ay * image_height),
                     (bx * image_width, by * image_height))


# ═══════════════════════════════════════════════════════════════
# Full feature vector
# ═══════════════════════════════════════════════════════════════

def compute_face_features(
    landmarks: Any,
    image_width: int,
    image_height: int,
) -> FaceFeatures:
    """Compute all 18 features for one face.

    Args:
        landmarks: The face's landmark set (478 points when valid).
        image_width: Source frame width in pixels.
        image_height: Source frame height in pixels.

    Returns:
        Populated FaceFeatures, or FaceFeatures.zeros() when fewer than
        478 landmarks are supplied.
    """
    pts = landmarks_to_array(landmarks)

    if pts.shape[0] < REQUIRED_LANDMARKS:
        _log.warning(
            "Not enough landmarks to calculate features: got %d, need %d. "
            "Returning zeroed features.",
            pts.shape[0], REQUIRED_LANDMARKS,
        )
        return FaceFeatures.zeros()

    w = float(image_width)
    h = float(image_height)

    left_eye = pts[list(LEFT_EYE_INDICES)]
    right_eye = pts[list(RIGHT_EYE_INDICES)]
    left_iris = pts[list(LEFT_IRIS_INDICES)]
    right_iris = pts[list(RIGHT_IRIS_INDICES)]

    ear_left = eye_aspect_ratio(left_eye)
    ear_right = eye_aspect_ratio(right_eye)
    mar = mouth_aspect_ratio(pts)

    left_eye_center = landmark_center(left_eye)
    right_eye_center = landmark_center(right_eye)
    left_iris_center = landmark_center(left_iris)
    right_iris_center = landmark_center(right_iris)
    face_center = landmark_center(pts)

    l_a, l_b = pts[LEFT_EYE_CORNERS[0]], pts[LEFT_EYE_CORNERS[1]]
    r_a, r_b = pts[RIGHT_EYE_CORNERS[0]], pts[RIGHT_EYE_CORNERS[1]]

    return FaceFeatures(
        ear_left=ear_left,
        ear_right=ear_right,
        ear_avg=(ear_left + ear_right) / 2.0,
        gaze_left=gaze_offset(left_iris_center, l_a, l_b),
        gaze_right=gaze_offset(right_iris_center, r_a, r_b),
        mar=mar,
        left_eye_x=left_eye_center[0] * w,
        left_eye_y=left_eye_center[1] * h,
        right_eye_x=right_eye_center[0] * w,
        right_eye_y=right_eye_center[1] * h,
        left_iris_x=left_iris_center[0] * w,
        left_iris_y=left_iris_center[1] * h,
        right_iris_x=right_iris_center[0] * w,
        right_iris_y=right_iris_center[1] * h,
        face_center_x=face_center[0] * w,
        face_center_y=face_center[1] * h,
        left_eye_width=eye_pixel_width(l_a, l_b, image_width, image_height),
        right_eye_width=eye_pixel_width(r_a, r_b, image_width, image_height),
    )
