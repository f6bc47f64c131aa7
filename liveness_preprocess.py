"""
FaceMesh Liveness - Frame Preprocessor
======================================
Crop -> resize -> encode chain that turns a face region of the source frame
into the two artifacts consumed downstream:

  preview: 192x192 JPEG (quality 80) of the crop
  tensor:  64x64x3 float32, BGR, HWC row-major, values in [0, 255],
           little-endian -> exactly 49152 bytes

The tensor is resized from the 192x192 preview image, not from the raw
crop. Any OpenCV failure yields no artifacts at all; a partial result is
never returned.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

import cv2
import numpy as np

from liveness_types import BoundingBox, SourceFrame

_log = logging.getLogger("LivenessPreprocess")

# ─── Artifact geometry ────────────────────────────────────────
PREVIEW_SIZE = 192
TENSOR_SIZE = 64
TENSOR_CHANNELS = 3
JPEG_QUALITY = 80

_TENSOR_DTYPE = np.dtype("<f4")
TENSOR_BYTE_LENGTH = TENSOR_SIZE * TENSOR_SIZE * TENSOR_CHANNELS * _TENSOR_DTYPE.itemsize


class FaceArtifacts(NamedTuple):
    """Encoded outputs of one successful preprocessing pass."""
    preview: bytes
    tensor: bytes


def to_pixel_rect(
    box: BoundingBox,
    image_width: int,
    image_height: int,
) -> Optional[tuple[int, int, int, int]]:
    """Map a normalized box to an (x, y, w, h) pixel rectangle.

    Coordinates are truncated toward zero. Returns None when the rectangle
    is empty or does not lie fully inside the frame.
    """
    x = int(box.min_x * image_width)
    y = int(box.min_y * image_height)
    w = int((box.max_x - box.min_x) * image_width)
    h = int((box.max_y - box.min_y) * image_height)

    if w <= 0 or h <= 0:
        return None
    if x < 0 or y < 0 or x + w > image_width or y + h > image_height:
        return None
    return x, y, w, h


def preprocess_face_region(
    frame: SourceFrame,
    box: BoundingBox,
) -> Optional[FaceArtifacts]:
    """Produce the preview and tensor artifacts for one face region.

    Args:
        frame: Source frame (never modified).
        box: Normalized face region from locate_face_region().

    Returns:
        FaceArtifacts, or None if the rectangle is invalid or any step of
        the chain fails.
    """
    rect = to_pixel_rect(box, frame.width, frame.height)
    if rect is None:
        _log.debug(
            "Invalid crop rectangle for box %s in %dx%d frame",
            box, frame.width, frame.height,
        )
        return None
    x, y, w, h = rect

    try:
        # to_bgr() always returns a fresh array
        crop = SourceFrame(
            frame.pixels[y:y + h, x:x + w],
            channel_order=frame.channel_order,
        ).to_bgr()

        preview_img = cv2.resize(
            crop, (PREVIEW_SIZE, PREVIEW_SIZE), interpolation=cv2.INTER_LINEAR,
        )

        ok, jpeg = cv2.imencode(
            ".jpg", preview_img, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY],
        )
        if not ok:
            _log.warning("JPEG encoding of %dx%d preview failed", PREVIEW_SIZE, PREVIEW_SIZE)
            return None

        tensor_img = cv2.resize(
            preview_img, (TENSOR_SIZE, TENSOR_SIZE), interpolation=cv2.INTER_LINEAR,
        )
        tensor = np.ascontiguousarray(tensor_img, dtype=_TENSOR_DTYPE)
    except (cv2.error, MemoryError) as e:
        _log.warning("Face preprocessing failed for rect %s: %s", rect, e)
        return None

    tensor_bytes = tensor.tobytes()
    if len(tensor_bytes) != TENSOR_BYTE_LENGTH:
        _log.error(
            "Tensor artifact has %d bytes, expected %d",
            len(tensor_bytes), TENSOR_BYTE_LENGTH,
        )
        return None

    return FaceArtifacts(preview=jpeg.tobytes(), tensor=tensor_bytes)


def decode_tensor_artifact(data: bytes) -> np.ndarray:
    """Inverse of the tensor encoding: bytes -> (64, 64, 3) float32 BGR."""
    if len(data) != TENSOR_BYTE_LENGTH:
        raise ValueError(
            f"Tensor artifact must be {TENSOR_BYTE_LENGTH} bytes, got {len(data)}"
        )
    arr = np.frombuffer(data, dtype=_TENSOR_DTYPE)
    return arr.reshape(TENSOR_SIZE, TENSOR_SIZE, TENSOR_CHANNELS).astype(np.float32)


def decode_preview_artifact(data: bytes) -> Optional[np.ndarray]:
    """Decode a JPEG preview back into a BGR uint8 image (None if undecodable)."""
    buf = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(buf, cv2.IMREAD_COLOR)
