"""
FaceMesh Liveness - Face Region Locator
=======================================
Landmark set -> normalized bounding box with a fixed margin.

The box spans every landmark, grows by FACE_MARGIN (fraction of the unit
range, not of the face size) on each side, and is clamped to [0, 1].
Detectors can report points slightly outside the frame, so clamping is
what guarantees 0 <= min <= max <= 1.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np

from liveness_types import BoundingBox, landmarks_to_array

_log = logging.getLogger("LivenessRegion")

FACE_MARGIN = 0.1


def locate_face_region(landmarks: Any, margin: float = FACE_MARGIN) -> Optional[BoundingBox]:
    """Compute the clamped, margin-expanded box around a face.

    Args:
        landmarks: Landmark set of a single face (any count >= 1).
        margin: Expansion on every side, in normalized units.

    Returns:
        BoundingBox, or None if the set is empty, holds no finite
        coordinates, or collapses to zero width/height after clamping.
    """
    pts = landmarks_to_array(landmarks)
    if pts.shape[0] == 0:
        return None

    finite = np.isfinite(pts).all(axis=1)
    if not finite.any():
        _log.debug("No finite landmark coordinates; no face region")
        return None
    pts = pts[finite]

    min_x = max(0.0, float(pts[:, 0].min()) - margin)
    min_y = max(0.0, float(pts[:, 1].min()) - margin)
    max_x = min(1.0, float(pts[:, 0].max()) + margin)
    max_y = min(1.0, float(pts[:, 1].max()) + margin)

    if max_x - min_x <= 0.0 or max_y - min_y <= 0.0:
        _log.debug(
            "Degenerate face region x=[%.3f, %.3f] y=[%.3f, %.3f]",
            min_x, max_x, min_y, max_y,
        )
        return None

    return BoundingBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)
