"""
FaceMesh Liveness - Result Assembler
====================================
Builds the immutable per-frame ResultBundle from detector output, the
source frame, and timing; and converts it to the neutral key-value form
handed to hosts (JSON, bridges, log files).

Policy:
  - Features are computed for the first face whenever one is present,
    independent of whether the artifacts could be produced.
  - Artifacts need the source frame; without one both are None.
  - No face -> empty landmarks, face_features None, still a full bundle.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional, Sequence

from liveness_features import compute_face_features
from liveness_preprocess import preprocess_face_region
from liveness_region import locate_face_region
from liveness_types import (
    BlendshapeCategory,
    FaceFeatures,
    Landmark,
    ResultBundle,
    SourceFrame,
    first_face,
)

_log = logging.getLogger("LivenessResult")

RESULT_SCHEMA_VERSION = 1


def assemble_result(
    landmarks: Sequence[Sequence[Landmark]],
    blendshapes: Sequence[Sequence[BlendshapeCategory]],
    frame: Optional[SourceFrame],
    image_width: int,
    image_height: int,
    inference_time_ms: float,
    rotation_degrees: int = 0,
    timestamp_ms: Optional[int] = None,
) -> ResultBundle:
    """Combine detector output and frame-derived artifacts into one bundle.

    Args:
        landmarks: Landmark sets for every detected face (may be empty).
        blendshapes: Blend-shape scores per face (may be empty).
        frame: The exact frame the landmarks were computed on, or None
               when it is no longer available.
        image_width, image_height: Input dimensions reported to the host.
        inference_time_ms: Elapsed detection time.
        rotation_degrees: Orientation metadata, passed through.
        timestamp_ms: Frame timestamp in streaming/video modes.
    """
    faces = tuple(tuple(face) for face in landmarks)
    scores = tuple(tuple(face) for face in blendshapes)

    face = first_face(faces)
    features: Optional[FaceFeatures] = None
    preview: Optional[bytes] = None
    tensor: Optional[bytes] = None

    if face is not None:
        features = compute_face_features(face, image_width, image_height)

        if frame is not None:
            box = locate_face_region(face)
            if box is not None:
                artifacts = preprocess_face_region(frame, box)
                if artifacts is not None:
                    preview, tensor = artifacts.preview, artifacts.tensor
            else:
                _log.debug("No usable face region; artifacts omitted")

    return ResultBundle(
        inference_time_ms=float(inference_time_ms),
        image_width=int(image_width),
        image_height=int(image_height),
        image_rotation_degrees=int(rotation_degrees),
        preview_artifact=preview,
        tensor_artifact=tensor,
        face_features=features,
        landmarks=faces,
        blendshapes=scores,
        timestamp_ms=timestamp_ms,
    )


def empty_result(
    image_width: int,
    image_height: int,
    inference_time_ms: float,
    rotation_degrees: int = 0,
    timestamp_ms: Optional[int] = None,
    error: Optional[str] = None,
) -> ResultBundle:
    """A bundle with no faces, used for no-detection and failed frames."""
    return ResultBundle(
        inference_time_ms=float(inference_time_ms),
        image_width=int(image_width),
        image_height=int(image_height),
        image_rotation_degrees=int(rotation_degrees),
        timestamp_ms=timestamp_ms,
        error=error,
    )


# ═══════════════════════════════════════════════════════════════
# Serialization
# ═══════════════════════════════════════════════════════════════

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def features_to_dict(features: FaceFeatures) -> dict[str, float]:
    """FaceFeatures -> {'earLeft': ..., 'faceCenterX': ..., ...}."""
    return {
        _camel(name): float(getattr(features, name))
        for name in FaceFeatures.field_names()
    }


def _landmark_to_dict(lm: Landmark) -> dict[str, Any]:
    out: dict[str, Any] = {"x": lm.x, "y": lm.y, "z": lm.z}
    if lm.visibility is not None:
        out["visibility"] = lm.visibility
    if lm.presence is not None:
        out["presence"] = lm.presence
    return out


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def result_to_dict(bundle: ResultBundle) -> dict[str, Any]:
    """Serialize a bundle to plain dicts/lists/str/float (JSON-ready).

    Artifacts are base64-encoded. Keys absent from the bundle (artifacts,
    features, timestamp, error) are omitted rather than set to None.
    """
    out: dict[str, Any] = {
        "version": RESULT_SCHEMA_VERSION,
        "inferenceTime": bundle.inference_time_ms,
        "inputImageWidth": bundle.image_width,
        "inputImageHeight": bundle.image_height,
        "inputImageRotation": bundle.image_rotation_degrees,
    }

    if bundle.preview_artifact is not None:
        out["croppedFrame"] = _b64(bundle.preview_artifact)
    if bundle.tensor_artifact is not None:
        out["onnxInputData"] = _b64(bundle.tensor_artifact)
    if bundle.face_features is not None:
        out["faceFeatures"] = features_to_dict(bundle.face_features)

    results = []
    if bundle.landmarks:
        results.append({
            "landmarks": [
                [_landmark_to_dict(lm) for lm in face] for face in bundle.landmarks
            ],
            "faceBlendshapes": [
                [{"categoryName": c.category_name, "score": c.score} for c in face]
                for face in bundle.blendshapes
            ],
            "worldLandmarks": [],
            "segmentationMask": [],
            "facialTransformationMatrixes": [],
        })
    out["results"] = results

    if bundle.timestamp_ms is not None:
        out["timestampMs"] = bundle.timestamp_ms
    if bundle.error is not None:
        out["error"] = bundle.error
    return out
