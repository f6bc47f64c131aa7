"""
FaceMesh Liveness - Landmark Topology Map
=========================================
Index sets into the 478-point MediaPipe FaceMesh topology
(468 mesh points + 10 refined iris points).

Eye ordering follows the classic 6-point EAR convention:
    [corner, upper lid outer, upper lid inner, corner, lower lid inner, lower lid outer]
so that p1/p5 and p2/p4 are the vertical lid pairs and p0/p3 the corners.

"Left" is the 33/133 eye and "right" the 362/263 eye, i.e. image-left /
image-right for a non-mirrored camera. MediaPipe names these the other way
round (its FACE_LANDMARKS_LEFT_EYE is the 263/362 group), so the groups
returned by known_landmarks() keep MediaPipe's subject-relative naming.
"""

from __future__ import annotations

# Full refined mesh (FaceLandmarker with iris refinement)
REQUIRED_LANDMARKS = 478

# ─── Eyes ─────────────────────────────────────────────────────
LEFT_EYE_INDICES = (
    33,   # p0 outer corner
    160,  # p1 upper lid outer
    158,  # p2 upper lid inner
    133,  # p3 inner corner
    153,  # p4 lower lid inner
    144,  # p5 lower lid outer
)

RIGHT_EYE_INDICES = (
    362,  # p0 inner corner
    385,  # p1 upper lid inner
    387,  # p2 upper lid outer
    263,  # p3 outer corner
    373,  # p4 lower lid outer
    380,  # p5 lower lid inner
)

# Corner pairs used for gaze and eye pixel width
LEFT_EYE_CORNERS = (33, 133)
RIGHT_EYE_CORNERS = (362, 263)

# ─── Irises (refined points 468-477) ──────────────────────────
LEFT_IRIS_INDICES = (468, 469, 470, 471)
RIGHT_IRIS_INDICES = (473, 474, 475, 476)

# ─── Mouth ────────────────────────────────────────────────────
# Vertical inner-lip pairs: center, left, right
MOUTH_VERTICAL_PAIRS = (
    (13, 14),
    (78, 95),
    (308, 324),
)
MOUTH_CORNERS = (61, 291)


# ═══════════════════════════════════════════════════════════════
# Named connection groups
# ═══════════════════════════════════════════════════════════════

_CONNECTION_GROUPS = {
    "lips": "FACE_LANDMARKS_LIPS",
    "leftEye": "FACE_LANDMARKS_LEFT_EYE",
    "leftEyebrow": "FACE_LANDMARKS_LEFT_EYEBROW",
    "leftIris": "FACE_LANDMARKS_LEFT_IRIS",
    "rightEye": "FACE_LANDMARKS_RIGHT_EYE",
    "rightEyebrow": "FACE_LANDMARKS_RIGHT_EYEBROW",
    "rightIris": "FACE_LANDMARKS_RIGHT_IRIS",
    "faceOval": "FACE_LANDMARKS_FACE_OVAL",
    "contours": "FACE_LANDMARKS_CONTOURS",
    "tesselation": "FACE_LANDMARKS_TESSELATION",
}

_known_landmarks_cache: dict[str, list[tuple[int, int]]] | None = None


def known_landmarks() -> dict[str, list[tuple[int, int]]]:
    """Named (start, end) connection lists published by MediaPipe.

    Used by clients to draw eyes, lips, face oval, etc. Loaded lazily so
    the pure-geometry modules never import mediapipe.
    """
    global _known_landmarks_cache
    if _known_landmarks_cache is None:
        from mediapipe.tasks.python.vision.face_landmarker import (
            FaceLandmarksConnections,
        )

        groups: dict[str, list[tuple[int, int]]] = {}
        for name, attr in _CONNECTION_GROUPS.items():
            connections = getattr(FaceLandmarksConnections, attr, None)
            if connections is None:
                continue
            groups[name] = [(int(c.start), int(c.end)) for c in connections]
        _known_landmarks_cache = groups
    return _known_landmarks_cache
