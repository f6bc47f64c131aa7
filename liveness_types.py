"""
FaceMesh Liveness - Core Data Types
===================================
Immutable value types shared by every stage of the pipeline:

  - Landmark / BlendshapeCategory: one detector output point / score
  - BoundingBox: normalized face region
  - FaceFeatures: the 18-value geometric feature vector
  - SourceFrame: read-only pixel buffer handed in by the caller
  - ResultBundle: the per-frame output, built once and never mutated

Also holds the exception hierarchy and the converters from MediaPipe
Tasks result objects (NormalizedLandmark, Category) into these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Optional, Sequence

import cv2
import numpy as np


# ═══════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════

class LivenessError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(LivenessError):
    """Invalid or unreadable configuration."""


class DetectorInitializationError(LivenessError):
    """The landmark model or compute backend could not be loaded."""


class DetectorClosedError(LivenessError):
    """A frame was submitted to a detector that has been released."""


# ═══════════════════════════════════════════════════════════════
# Detector output
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Landmark:
    """One normalized landmark.

    Attributes:
        x, y: Image-relative coordinates, nominally in [0.0, 1.0].
        z: Relative depth (same scale as x, origin at the head center).
        visibility: Optional likelihood of being visible, [0.0, 1.0].
        presence: Optional likelihood of being present in frame, [0.0, 1.0].
    """
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None
    presence: Optional[float] = None


@dataclass(frozen=True)
class BlendshapeCategory:
    """A single blend-shape score (e.g. 'eyeBlinkLeft' -> 0.82)."""
    category_name: str
    score: float
    index: int = -1
    display_name: str = ""


def landmark_from_mediapipe(lm: Any) -> Landmark:
    """Convert a MediaPipe NormalizedLandmark into a Landmark."""
    visibility = getattr(lm, "visibility", None)
    presence = getattr(lm, "presence", None)
    return Landmark(
        x=float(lm.x),
        y=float(lm.y),
        z=float(getattr(lm, "z", 0.0) or 0.0),
        visibility=float(visibility) if visibility is not None else None,
        presence=float(presence) if presence is not None else None,
    )


def blendshape_from_mediapipe(category: Any) -> BlendshapeCategory:
    """Convert a MediaPipe Category into a BlendshapeCategory."""
    index = getattr(category, "index", None)
    return BlendshapeCategory(
        category_name=getattr(category, "category_name", None) or "",
        score=float(category.score),
        index=int(index) if index is not None else -1,
        display_name=getattr(category, "display_name", None) or "",
    )


def faces_from_mediapipe(result: Any) -> tuple[
    tuple[tuple[Landmark, ...], ...],
    tuple[tuple[BlendshapeCategory, ...], ...],
]:
    """Extract (landmarks, blendshapes) for every face in a FaceLandmarkerResult.

    A None result (detector produced nothing) maps to two empty tuples.
    """
    if result is None:
        return (), ()

    face_landmarks = getattr(result, "face_landmarks", None) or []
    face_blendshapes = getattr(result, "face_blendshapes", None) or []

    landmarks = tuple(
        tuple(landmark_from_mediapipe(lm) for lm in face)
        for face in face_landmarks
    )
    blendshapes = tuple(
        tuple(blendshape_from_mediapipe(c) for c in face)
        for face in face_blendshapes
    )
    return landmarks, blendshapes


def landmarks_to_array(landmarks: Any) -> np.ndarray:
    """Return an (N, 2) float64 array of (x, y) for any landmark container.

    Accepts a NumPy array of shape (N, >=2), or a sequence whose items
    expose `.x`/`.y` (Landmark, MediaPipe NormalizedLandmark) or are
    indexable pairs/triples.
    """
    if isinstance(landmarks, np.ndarray):
        if landmarks.size == 0:
            return np.empty((0, 2), dtype=np.float64)
        if landmarks.ndim != 2 or landmarks.shape[1] < 2:
            raise ValueError(
                f"Landmark array must have shape (N, 2) or (N, 3), got {landmarks.shape}"
            )
        return landmarks[:, :2].astype(np.float64)

    points = []
    for lm in landmarks:
        # Support both object (.x, .y) and array/tuple ([0], [1]) formats
        if hasattr(lm, "x") and hasattr(lm, "y"):
            points.append((float(lm.x), float(lm.y)))
        else:
            points.append((float(lm[0]), float(lm[1])))

    if not points:
        return np.empty((0, 2), dtype=np.float64)
    return np.asarray(points, dtype=np.float64)


# ═══════════════════════════════════════════════════════════════
# Geometry & features
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundingBox:
    """Normalized axis-aligned box; 0 <= min <= max <= 1 once clamped."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y


@dataclass(frozen=True)
class FaceFeatures:
    """Geometric liveness/attention features for one face.

    Ratios (EAR, MAR, gaze) are computed in normalized space; centers and
    eye widths are in pixels of the source frame.
    """
    ear_left: float
    ear_right: float
    ear_avg: float
    gaze_left: float
    gaze_right: float
    mar: float
    left_eye_x: float
    left_eye_y: float
    right_eye_x: float
    right_eye_y: float
    left_iris_x: float
    left_iris_y: float
    right_iris_x: float
    right_iris_y: float
    face_center_x: float
    face_center_y: float
    left_eye_width: float
    right_eye_width: float

    @classmethod
    def zeros(cls) -> "FaceFeatures":
        """The all-zero sentinel used when the landmark set is incomplete."""
        return cls(**{f.name: 0.0 for f in fields(cls)})

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def as_array(self) -> np.ndarray:
        """Feature vector as float32, in declaration order."""
        return np.array(
            [getattr(self, name) for name in self.field_names()],
            dtype=np.float32,
        )

    def is_zero(self) -> bool:
        return all(getattr(self, name) == 0.0 for name in self.field_names())


# ═══════════════════════════════════════════════════════════════
# Frames
# ═══════════════════════════════════════════════════════════════

_CHANNEL_COUNTS = {"BGR": 3, "RGB": 3, "BGRA": 4, "RGBA": 4}

_TO_BGR = {
    "RGB": cv2.COLOR_RGB2BGR,
    "BGRA": cv2.COLOR_BGRA2BGR,
    "RGBA": cv2.COLOR_RGBA2BGR,
}

_TO_RGB = {
    "BGR": cv2.COLOR_BGR2RGB,
    "BGRA": cv2.COLOR_BGRA2RGB,
    "RGBA": cv2.COLOR_RGBA2RGB,
}


@dataclass(frozen=True, eq=False)
class SourceFrame:
    """Caller-owned pixel buffer. Never written to by the pipeline.

    Attributes:
        pixels: (H, W, C) uint8 array.
        channel_order: 'BGR' (OpenCV default), 'RGB', 'BGRA' or 'RGBA'.
        rotation_degrees: Orientation metadata, passed through untouched.
    """
    pixels: np.ndarray
    channel_order: str = "BGR"
    rotation_degrees: int = 0

    def __post_init__(self) -> None:
        order = self.channel_order.upper()
        if order not in _CHANNEL_COUNTS:
            raise ValueError(f"Unsupported channel order: {self.channel_order!r}")
        object.__setattr__(self, "channel_order", order)

        pixels = self.pixels
        if not isinstance(pixels, np.ndarray) or pixels.ndim != 3:
            raise ValueError("SourceFrame pixels must be an (H, W, C) array")
        if pixels.dtype != np.uint8:
            raise ValueError(f"SourceFrame pixels must be uint8, got {pixels.dtype}")
        if pixels.shape[2] != _CHANNEL_COUNTS[order]:
            raise ValueError(
                f"{order} frame needs {_CHANNEL_COUNTS[order]} channels, "
                f"got {pixels.shape[2]}"
            )

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_bgr(self) -> np.ndarray:
        """Fresh 3-channel BGR copy of the pixels."""
        if self.channel_order == "BGR":
            return self.pixels.copy()
        return cv2.cvtColor(self.pixels, _TO_BGR[self.channel_order])

    def to_rgb(self) -> np.ndarray:
        """Fresh 3-channel RGB copy (MediaPipe SRGB input)."""
        if self.channel_order == "RGB":
            return self.pixels.copy()
        return cv2.cvtColor(self.pixels, _TO_RGB[self.channel_order])


# ═══════════════════════════════════════════════════════════════
# Per-frame result
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResultBundle:
    """Everything produced for one detection call.

    `landmarks` and `blendshapes` carry the detector output for every face,
    unmodified. Features and artifacts describe the first face only.
    """
    inference_time_ms: float
    image_width: int
    image_height: int
    image_rotation_degrees: int = 0
    preview_artifact: Optional[bytes] = None   # 192x192 JPEG
    tensor_artifact: Optional[bytes] = None    # 64x64x3 float32 BGR, 49152 bytes
    face_features: Optional[FaceFeatures] = None
    landmarks: tuple[tuple[Landmark, ...], ...] = field(default_factory=tuple)
    blendshapes: tuple[tuple[BlendshapeCategory, ...], ...] = field(default_factory=tuple)
    timestamp_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def has_face(self) -> bool:
        return len(self.landmarks) > 0 and len(self.landmarks[0]) > 0

    @property
    def has_artifacts(self) -> bool:
        return self.preview_artifact is not None and self.tensor_artifact is not None


def first_face(landmarks: Sequence[Sequence[Landmark]]) -> Optional[Sequence[Landmark]]:
    """Return the first non-empty face, or None."""
    if not landmarks:
        return None
    face = landmarks[0]
    return face if len(face) > 0 else None
