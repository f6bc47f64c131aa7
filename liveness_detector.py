"""
FaceMesh Liveness - Face Landmark Detector
==========================================
Owns a MediaPipe Tasks FaceLandmarker and turns every processed frame
into a ResultBundle (landmarks + 18 features + preview/tensor artifacts).

Running modes:
  image        detect(frame)                      blocking, one frame
  video        detect_for_video(frame, ts)        blocking, monotonic ts
  live_stream  detect_async(frame, ts=None) -> ts results on MediaPipe's
                                                  thread via DetectorListener

Streaming frame pairing:
  Each submitted frame is parked in an in-flight arena keyed by its
  timestamp. The result callback pops exactly the entry whose timestamp
  matches the result, so artifacts are always cut from the frame the
  landmarks were computed on. A missing entry (evicted, or already
  drained) means no artifacts for that result, never another frame's.

Teardown:
  release() stops new submissions, waits up to drain_timeout_s for
  in-flight callbacks, then bumps the generation counter and sets the
  closed flag before closing the landmarker. Callbacks check both on
  entry and drop anything that arrives afterwards. A release() issued
  from inside on_results skips the drain and closes the landmarker on a
  helper thread, never on MediaPipe's result thread.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, NamedTuple, Optional, Union

import numpy as np

from liveness_config import merge_config, resolve_model_path, validate_detector_config
from liveness_logger import AuditLogger
from liveness_result import assemble_result, empty_result
from liveness_types import (
    ConfigError,
    DetectorClosedError,
    DetectorInitializationError,
    ResultBundle,
    SourceFrame,
    faces_from_mediapipe,
)

_log = logging.getLogger("LivenessDetector")

# on_error codes
OTHER_ERROR = 0
GPU_ERROR = 1

FrameInput = Union[SourceFrame, np.ndarray]


# ═══════════════════════════════════════════════════════════════
# Listener interface
# ═══════════════════════════════════════════════════════════════

class DetectorListener(ABC):
    """Receives streaming results. Called on MediaPipe's callback thread."""

    @abstractmethod
    def on_results(self, bundle: ResultBundle) -> None:
        """One ResultBundle per processed frame (also for no-face frames)."""

    def on_error(self, message: str, code: int = OTHER_ERROR) -> None:
        """Initialization or detection failure. Default: ignore."""


# ═══════════════════════════════════════════════════════════════
# MediaPipe seams
# ═══════════════════════════════════════════════════════════════

def _build_landmarker(
    model_path: str,
    config: dict[str, Any],
    result_callback: Optional[Callable[..., None]] = None,
):
    """Create a MediaPipe FaceLandmarker from a validated detector config."""
    from mediapipe.tasks import python
    from mediapipe.tasks.python import vision

    delegate = (
        python.BaseOptions.Delegate.GPU
        if config["delegate"] == "gpu"
        else python.BaseOptions.Delegate.CPU
    )
    base_options = python.BaseOptions(
        model_asset_path=model_path,
        delegate=delegate,
    )

    running_mode = {
        "image": vision.RunningMode.IMAGE,
        "video": vision.RunningMode.VIDEO,
        "live_stream": vision.RunningMode.LIVE_STREAM,
    }[config["running_mode"]]

    options = vision.FaceLandmarkerOptions(
        base_options=base_options,
        running_mode=running_mode,
        num_faces=config["max_faces"],
        min_face_detection_confidence=config["min_face_detection_confidence"],
        min_face_presence_confidence=config["min_face_presence_confidence"],
        min_tracking_confidence=config["min_tracking_confidence"],
        output_face_blendshapes=config["output_blendshapes"],
        result_callback=result_callback,
    )
    return vision.FaceLandmarker.create_from_options(options)


def _to_mp_image(rgb: np.ndarray):
    import mediapipe as mp
    # MediaPipe expects RGB input
    return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)


def _processing_kwargs(rotation_degrees: int) -> dict[str, Any]:
    if not rotation_degrees:
        return {}
    from mediapipe.tasks.python.vision.core.image_processing_options import (
        ImageProcessingOptions,
    )
    return {"image_processing_options": ImageProcessingOptions(rotation_degrees=rotation_degrees)}


def _as_source_frame(frame: FrameInput) -> SourceFrame:
    if isinstance(frame, SourceFrame):
        return frame
    return SourceFrame(frame)


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class _InFlight(NamedTuple):
    frame: SourceFrame
    submitted_at: float  # perf_counter seconds


# ═══════════════════════════════════════════════════════════════
# Detector
# ═══════════════════════════════════════════════════════════════

class FaceLivenessDetector:
    """MediaPipe FaceLandmarker + feature/artifact pipeline.

    Args:
        config: `detector` section overrides (see DEFAULT_CONFIG).
        listener: Required in live_stream mode; also notified of
                  initialization failures in every mode.
        audit_logger: Optional JSONL audit trail.

    Raises:
        DetectorInitializationError: Invalid config, missing model file,
            missing listener in live_stream mode, or backend failure.
    """

    def __init__(
        self,
        config: Optional[dict[str, Any]] = None,
        listener: Optional[DetectorListener] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self._listener = listener
        self._audit = audit_logger

        try:
            merged = merge_config({"detector": config or {}})["detector"]
            self.config = validate_detector_config(merged)
        except ConfigError as e:
            self._fail_init(f"Invalid detector configuration: {e}", OTHER_ERROR, e)

        self.running_mode: str = self.config["running_mode"]

        if self.running_mode == "live_stream" and listener is None:
            self._fail_init(
                "A DetectorListener must be set when running_mode is live_stream",
                OTHER_ERROR,
            )

        self.model_path = resolve_model_path(self.config["model_path"])
        if not os.path.exists(self.model_path):
            self._fail_init(f"MediaPipe model not found: {self.model_path}", OTHER_ERROR)

        # Streaming state, guarded by _cond's lock
        self._cond = threading.Condition()
        self._in_flight: OrderedDict[int, _InFlight] = OrderedDict()
        self._delivering = 0
        self._generation = 0
        self._closing = False
        self._closed = False
        self._last_timestamp_ms: Optional[int] = None

        # Serializes calls into the landmarker against close()
        self._call_lock = threading.Lock()

        # Set while this thread is inside _on_landmarker_result
        self._callback_thread = threading.local()

        callback = None
        if self.running_mode == "live_stream":
            callback = functools.partial(self._on_landmarker_result, self._generation)

        try:
            self._landmarker = _build_landmarker(self.model_path, self.config, callback)
        except Exception as e:
            code = GPU_ERROR if self.config["delegate"] == "gpu" else OTHER_ERROR
            self._fail_init(
                "Face Landmarker failed to initialize. See error logs for details",
                code,
                e,
            )

        model_size_mb = os.path.getsize(self.model_path) / 1024 / 1024
        _log.info(
            "FaceLivenessDetector initialized: mode=%s delegate=%s max_faces=%d model=%.1f MB",
            self.running_mode, self.config["delegate"], self.config["max_faces"], model_size_mb,
        )
        if self._audit is not None:
            self._audit.log({"config": self.config, "model_path": self.model_path},
                            level="SYSTEM", event="detector_init")

    @classmethod
    def from_config(
        cls,
        config: dict[str, dict[str, Any]],
        listener: Optional[DetectorListener] = None,
    ) -> "FaceLivenessDetector":
        """Build from a full load_config() result (detector + logging sections)."""
        from liveness_logger import get_logger

        audit_dir = config.get("logging", {}).get("audit_log_dir")
        audit = get_logger(audit_dir) if audit_dir else None
        return cls(config=config.get("detector"), listener=listener, audit_logger=audit)

    def _fail_init(self, message: str, code: int, cause: Optional[BaseException] = None):
        _log.error("%s%s", message, f" ({cause})" if cause is not None else "")
        if self._audit is not None:
            self._audit.error(message, cause)
        if self._listener is not None:
            try:
                self._listener.on_error(message, code)
            except Exception:
                _log.exception("DetectorListener.on_error raised")
        raise DetectorInitializationError(message) from cause

    # ── State ─────────────────────────────────────────────────

    @property
    def is_closed(self) -> bool:
        with self._cond:
            return self._closing or self._closed

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def _require_mode(self, mode: str, method: str) -> None:
        if self.running_mode != mode:
            raise ValueError(
                f"Attempting to call {method} while not using running_mode={mode!r} "
                f"(detector is {self.running_mode!r})"
            )

    def _require_open(self) -> None:
        if self.is_closed:
            raise DetectorClosedError("Detector has been released")

    def _record(self, bundle: ResultBundle) -> ResultBundle:
        if self._audit is not None:
            self._audit.log_frame(bundle)
        return bundle

    # ── Synchronous modes ─────────────────────────────────────

    def detect(self, frame: FrameInput) -> ResultBundle:
        """Single-shot detection (running_mode='image').

        Args:
            frame: SourceFrame, or a BGR uint8 (H, W, 3) array.

        Returns:
            ResultBundle. Detection failures are reported through its
            `error` field; the detector stays usable.
        """
        self._require_mode("image", "detect")
        src = _as_source_frame(frame)
        return self._detect_sync(src, None, lambda lm, img, kw: lm.detect(img, **kw))

    def detect_for_video(self, frame: FrameInput, timestamp_ms: int) -> ResultBundle:
        """Synchronous per-frame detection (running_mode='video').

        Timestamps must be strictly increasing across calls.
        """
        self._require_mode("video", "detect_for_video")
        src = _as_source_frame(frame)
        timestamp_ms = int(timestamp_ms)
        with self._cond:
            self._check_timestamp(timestamp_ms)
            self._last_timestamp_ms = timestamp_ms
        return self._detect_sync(
            src, timestamp_ms,
            lambda lm, img, kw: lm.detect_for_video(img, timestamp_ms, **kw),
        )

    def _detect_sync(self, src: SourceFrame, timestamp_ms: Optional[int], call) -> ResultBundle:
        with self._call_lock:
            self._require_open()
            start = time.perf_counter()
            try:
                result = call(
                    self._landmarker,
                    _to_mp_image(src.to_rgb()),
                    _processing_kwargs(src.rotation_degrees),
                )
            except Exception as e:
                return self._record(self._failed_bundle(src, start, timestamp_ms, e))

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        landmarks, blendshapes = faces_from_mediapipe(result)
        return self._record(assemble_result(
            landmarks, blendshapes, src,
            src.width, src.height, elapsed_ms,
            rotation_degrees=src.rotation_degrees,
            timestamp_ms=timestamp_ms,
        ))

    def _failed_bundle(
        self,
        src: SourceFrame,
        start: float,
        timestamp_ms: Optional[int],
        error: BaseException,
    ) -> ResultBundle:
        _log.error("Face detection failed: %s", error)
        if self._audit is not None:
            self._audit.error("Face detection failed", error)
        return empty_result(
            src.width, src.height,
            (time.perf_counter() - start) * 1000.0,
            rotation_degrees=src.rotation_degrees,
            timestamp_ms=timestamp_ms,
            error=str(error) or type(error).__name__,
        )

    def _check_timestamp(self, timestamp_ms: int) -> None:
        if self._last_timestamp_ms is not None and timestamp_ms <= self._last_timestamp_ms:
            raise ValueError(
                f"Timestamps must be strictly increasing: {timestamp_ms} <= "
                f"{self._last_timestamp_ms}"
            )

    # ── Streaming mode ────────────────────────────────────────

    def detect_async(self, frame: FrameInput, timestamp_ms: Optional[int] = None) -> int:
        """Submit a frame for streaming detection (running_mode='live_stream').

        Args:
            frame: SourceFrame, or a BGR uint8 (H, W, 3) array. Must not be
                   mutated by the caller until its result is delivered.
            timestamp_ms: Strictly increasing frame timestamp. None uses the
                   monotonic clock (bumped if needed to stay increasing).

        Returns:
            The timestamp the frame was submitted under; the matching
            ResultBundle carries the same `timestamp_ms`.
        """
        self._require_mode("live_stream", "detect_async")
        src = _as_source_frame(frame)

        with self._cond:
            if self._closing or self._closed:
                raise DetectorClosedError("Detector has been released")
            if timestamp_ms is None:
                timestamp_ms = _now_ms()
                if self._last_timestamp_ms is not None and timestamp_ms <= self._last_timestamp_ms:
                    timestamp_ms = self._last_timestamp_ms + 1
            else:
                timestamp_ms = int(timestamp_ms)
                self._check_timestamp(timestamp_ms)
            self._last_timestamp_ms = timestamp_ms

            self._in_flight[timestamp_ms] = _InFlight(src, time.perf_counter())
            while len(self._in_flight) > self.config["max_in_flight"]:
                evicted_ts, _ = self._in_flight.popitem(last=False)
                _log.warning(
                    "In-flight frame limit (%d) reached; evicted frame ts=%d "
                    "(its result will carry no artifacts)",
                    self.config["max_in_flight"], evicted_ts,
                )

        start = time.perf_counter()
        with self._call_lock:
            landmarker = self._landmarker
            if landmarker is None:
                self._discard(timestamp_ms)
                raise DetectorClosedError("Detector has been released")
            try:
                landmarker.detect_async(
                    _to_mp_image(src.to_rgb()),
                    timestamp_ms,
                    **_processing_kwargs(src.rotation_degrees),
                )
                error = None
            except Exception as e:
                error = e

        if error is not None:
            self._discard(timestamp_ms)
            bundle = self._failed_bundle(src, start, timestamp_ms, error)
            self._notify_error(bundle.error, OTHER_ERROR)
            self._deliver(self._record(bundle))

        return timestamp_ms

    def _discard(self, timestamp_ms: int) -> None:
        with self._cond:
            self._in_flight.pop(timestamp_ms, None)
            self._cond.notify_all()

    def _on_landmarker_result(self, generation: int, result: Any, output_image: Any,
                              timestamp_ms: int) -> None:
        """MediaPipe result callback (bound to the generation it was created for)."""
        with self._cond:
            if self._closed or generation != self._generation:
                _log.debug("Dropping result ts=%s from released detector", timestamp_ms)
                return
            entry = self._in_flight.pop(timestamp_ms, None)
            # Results arrive in timestamp order: older entries were skipped
            for ts in [ts for ts in self._in_flight if ts < timestamp_ms]:
                del self._in_flight[ts]
                _log.debug("Frame ts=%d produced no result; discarded", ts)
            self._delivering += 1

        self._callback_thread.active = True
        try:
            try:
                bundle = self._build_stream_bundle(result, output_image, timestamp_ms, entry)
            except Exception as e:
                _log.exception("Failed to process streaming result ts=%s", timestamp_ms)
                if self._audit is not None:
                    self._audit.error("Failed to process streaming result", e)
                width, height = self._frame_size(output_image, entry)
                bundle = empty_result(
                    width, height, 0.0,
                    rotation_degrees=entry.frame.rotation_degrees if entry else 0,
                    timestamp_ms=timestamp_ms,
                    error=str(e) or type(e).__name__,
                )
                self._notify_error(bundle.error, OTHER_ERROR)
            self._deliver(self._record(bundle))
        finally:
            self._callback_thread.active = False
            with self._cond:
                self._delivering -= 1
                self._cond.notify_all()

    @staticmethod
    def _frame_size(output_image: Any, entry: Optional[_InFlight]) -> tuple[int, int]:
        if entry is not None:
            return entry.frame.width, entry.frame.height
        return int(getattr(output_image, "width", 0)), int(getattr(output_image, "height", 0))

    def _build_stream_bundle(self, result, output_image, timestamp_ms: int,
                             entry: Optional[_InFlight]) -> ResultBundle:
        if entry is not None:
            inference_ms = (time.perf_counter() - entry.submitted_at) * 1000.0
            frame = entry.frame
            rotation = frame.rotation_degrees
        else:
            # Best effort: auto timestamps come from the same monotonic clock
            inference_ms = float(max(0, _now_ms() - timestamp_ms))
            frame = None
            rotation = 0
            _log.debug("No in-flight frame for ts=%d; artifacts omitted", timestamp_ms)

        width, height = self._frame_size(output_image, entry)
        landmarks, blendshapes = faces_from_mediapipe(result)
        return assemble_result(
            landmarks, blendshapes, frame,
            width, height, inference_ms,
            rotation_degrees=rotation,
            timestamp_ms=timestamp_ms,
        )

    def _deliver(self, bundle: ResultBundle) -> None:
        if self._listener is None:
            return
        try:
            self._listener.on_results(bundle)
        except Exception:
            _log.exception("DetectorListener.on_results raised")

    def _notify_error(self, message: str, code: int) -> None:
        if self._listener is None:
            return
        try:
            self._listener.on_error(message, code)
        except Exception:
            _log.exception("DetectorListener.on_error raised")

    # ── Teardown ──────────────────────────────────────────────

    def release(self) -> None:
        """Drain in-flight detections, then close the landmarker. Idempotent.

        May be called from DetectorListener.on_results. On the callback
        thread no further results can arrive while we wait, so nothing is
        drained and the landmarker is closed on a separate thread once
        the callback has returned.
        """
        in_callback = getattr(self._callback_thread, "active", False)

        with self._cond:
            if self._closing or self._closed:
                return
            self._closing = True

            if not in_callback:
                deadline = time.monotonic() + self.config["drain_timeout_s"]
                while self._in_flight or self._delivering:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)

            stranded = list(self._in_flight)
            self._in_flight.clear()
            self._generation += 1
            self._closed = True

        if stranded:
            _log.debug("Frames never answered by the landmarker: ts=%s", stranded)
            _log.warning("Released with %d frame(s) still in flight; their results are dropped",
                         len(stranded))

        if in_callback:
            threading.Thread(
                target=self._close_landmarker, args=(len(stranded),),
                name="LivenessDetectorClose", daemon=True,
            ).start()
        else:
            self._close_landmarker(len(stranded))

    def _close_landmarker(self, abandoned: int) -> None:
        with self._call_lock:
            landmarker, self._landmarker = self._landmarker, None
        if landmarker is not None:
            landmarker.close()

        if self._audit is not None:
            self._audit.log({"abandoned_frames": abandoned}, level="SYSTEM",
                            event="detector_released")
        _log.info("FaceLivenessDetector released")

    # ── Context manager ───────────────────────────────────────

    def __enter__(self) -> "FaceLivenessDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()


__all__ = [
    "DetectorListener",
    "FaceLivenessDetector",
    "GPU_ERROR",
    "OTHER_ERROR",
]
