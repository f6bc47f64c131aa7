"""
FaceMesh Liveness - Face Region Locator Tests
=============================================
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveness_region import FACE_MARGIN, locate_face_region
from liveness_types import Landmark


def test_margin_expands_box_on_every_side():
    """x in [0.4, 0.6], y in [0.3, 0.5] + 0.1 -> x in [0.3, 0.7], y in [0.2, 0.6]."""
    pts = np.array([[0.4, 0.3], [0.6, 0.5], [0.5, 0.4]])
    box = locate_face_region(pts)

    assert box is not None
    assert box.min_x == pytest.approx(0.3)
    assert box.min_y == pytest.approx(0.2)
    assert box.max_x == pytest.approx(0.7)
    assert box.max_y == pytest.approx(0.6)
    assert box.width == pytest.approx(0.4)
    assert box.height == pytest.approx(0.4)


def test_default_margin_is_point_one():
    assert FACE_MARGIN == 0.1


def test_box_clamped_at_frame_edges():
    pts = [Landmark(0.02, 0.95), Landmark(0.3, 0.99)]
    box = locate_face_region(pts)

    assert box.min_x == 0.0
    assert box.max_y == 1.0
    assert box.max_x == pytest.approx(0.4)
    assert box.min_y == pytest.approx(0.85)


def test_points_outside_frame_are_clamped():
    box = locate_face_region(np.array([[-0.2, -0.1], [1.3, 1.2]]))
    assert (box.min_x, box.min_y, box.max_x, box.max_y) == (0.0, 0.0, 1.0, 1.0)


def test_empty_set_returns_none():
    assert locate_face_region([]) is None
    assert locate_face_region(np.empty((0, 3))) is None


def test_box_collapsing_after_clamp_returns_none():
    # Entirely right of the frame: min_x clamps above max_x
    assert locate_face_region(np.array([[1.5, 0.5], [1.6, 0.6]])) is None


def test_custom_margin():
    box = locate_face_region(np.array([[0.4, 0.4], [0.6, 0.6]]), margin=0.0)
    assert (box.min_x, box.max_x) == pytest.approx((0.4, 0.6))


def test_non_finite_coordinates_are_ignored():
    pts = np.array([[0.4, 0.3], [np.nan, 0.9], [0.6, np.inf], [0.6, 0.5]])
    box = locate_face_region(pts)
    assert box.max_y == pytest.approx(0.6)


def test_all_non_finite_returns_none():
    assert locate_face_region(np.full((5, 2), np.nan)) is None


def test_random_sets_always_within_unit_square():
    rng = np.random.RandomState(3)
    for _ in range(200):
        n = rng.randint(1, 50)
        pts = rng.uniform(-0.5, 1.5, size=(n, 2))
        box = locate_face_region(pts)
        if box is None:
            continue
        assert 0.0 <= box.min_x <= box.max_x <= 1.0
        assert 0.0 <= box.min_y <= box.max_y <= 1.0
