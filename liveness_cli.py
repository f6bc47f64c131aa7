"""
FaceMesh Liveness - Command Line
================================
Runs the detector on an image or a video file and prints the serialized
ResultBundle(s) as JSON.

Usage:
  facemesh-liveness face.jpg
  facemesh-liveness clip.mp4 --max-frames 100 --save-preview previews/
  facemesh-liveness clip.mp4 --stream --save-tensor tensors/

Images use the single-shot (image) mode and print one JSON object.
Videos use video mode, or live_stream with --stream, and print one JSON
object per line.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from typing import Iterator, Optional

import cv2
import numpy as np

from liveness_config import load_config, resolve_log_level, setup_logger
from liveness_detector import DetectorListener, FaceLivenessDetector
from liveness_logger import close_logger
from liveness_result import result_to_dict
from liveness_types import LivenessError, ResultBundle, SourceFrame

_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}


def _is_image(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in _IMAGE_EXTENSIONS


def _video_frames(path: str, max_frames: Optional[int]) -> Iterator[tuple[int, int, np.ndarray]]:
    """Yield (index, timestamp_ms, frame); timestamps strictly increasing."""
    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise LivenessError(f"Could not open video: {path}")
    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    last_ts = -1
    index = 0
    try:
        while max_frames is None or index < max_frames:
            ok, frame = cap.read()
            if not ok:
                break
            ts = int(round(index * 1000.0 / fps))
            ts = max(ts, last_ts + 1)
            last_ts = ts
            yield index, ts, frame
            index += 1
    finally:
        cap.release()


class _ArtifactWriter:
    """Writes preview JPEGs / raw tensors named after the frame index."""

    def __init__(self, preview_dir: Optional[str], tensor_dir: Optional[str]):
        self.preview_dir = preview_dir
        self.tensor_dir = tensor_dir
        for d in (preview_dir, tensor_dir):
            if d:
                os.makedirs(d, exist_ok=True)

    def write(self, name: str, bundle: ResultBundle) -> None:
        if self.preview_dir and bundle.preview_artifact is not None:
            with open(os.path.join(self.preview_dir, f"{name}.jpg"), "wb") as f:
                f.write(bundle.preview_artifact)
        if self.tensor_dir and bundle.tensor_artifact is not None:
            with open(os.path.join(self.tensor_dir, f"{name}.f32"), "wb") as f:
                f.write(bundle.tensor_artifact)


def _emit(bundle: ResultBundle, args: argparse.Namespace, indent: Optional[int] = None) -> None:
    data = result_to_dict(bundle)
    if args.no_landmarks:
        data.pop("results", None)
    if args.no_artifacts:
        data.pop("croppedFrame", None)
        data.pop("onnxInputData", None)
    print(json.dumps(data, indent=indent))


class _StreamCollector(DetectorListener):
    """Prints streaming results as they arrive (MediaPipe callback thread)."""

    def __init__(self, args: argparse.Namespace, writer: _ArtifactWriter):
        self.args = args
        self.writer = writer
        self.names: dict[int, str] = {}
        self.received = 0
        self.errors = 0
        self._lock = threading.Lock()

    def expect(self, timestamp_ms: int, name: str) -> None:
        with self._lock:
            self.names[timestamp_ms] = name

    def on_results(self, bundle: ResultBundle) -> None:
        with self._lock:
            self.received += 1
            name = self.names.pop(bundle.timestamp_ms, f"ts_{bundle.timestamp_ms}")
            self.writer.write(name, bundle)
            _emit(bundle, self.args)

    def on_error(self, message: str, code: int = 0) -> None:
        with self._lock:
            self.errors += 1
        print(f"[LIVENESS] Detection error ({code}): {message}", file=sys.stderr)


def _run_image(args, config, writer) -> int:
    frame = cv2.imread(args.input, cv2.IMREAD_COLOR)
    if frame is None:
        print(f"[LIVENESS] Could not read image: {args.input}", file=sys.stderr)
        return 1

    config["detector"]["running_mode"] = "image"
    with FaceLivenessDetector.from_config(config) as detector:
        bundle = detector.detect(SourceFrame(frame, rotation_degrees=args.rotation))

    writer.write(os.path.splitext(os.path.basename(args.input))[0], bundle)
    _emit(bundle, args, indent=2)
    return 0 if bundle.error is None else 2


def _run_video(args, config, writer) -> int:
    config["detector"]["running_mode"] = "video"
    failures = 0
    with FaceLivenessDetector.from_config(config) as detector:
        for index, ts, frame in _video_frames(args.input, args.max_frames):
            bundle = detector.detect_for_video(
                SourceFrame(frame, rotation_degrees=args.rotation), ts,
            )
            if bundle.error is not None:
                failures += 1
            writer.write(f"frame_{index:06d}", bundle)
            _emit(bundle, args)
    return 0 if failures == 0 else 2


def _run_stream(args, config, writer) -> int:
    config["detector"]["running_mode"] = "live_stream"
    collector = _StreamCollector(args, writer)
    with FaceLivenessDetector.from_config(config, listener=collector) as detector:
        for index, ts, frame in _video_frames(args.input, args.max_frames):
            collector.expect(ts, f"frame_{index:06d}")
            detector.detect_async(SourceFrame(frame, rotation_degrees=args.rotation), ts)
    return 0 if collector.errors == 0 else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facemesh-liveness",
        description="MediaPipe face landmarks -> liveness features and face tensors",
    )
    parser.add_argument("input", help="Image or video file")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--model", type=str, default=None, help="Path to face_landmarker.task")
    parser.add_argument("--delegate", choices=("cpu", "gpu"), default=None, help="Compute backend")
    parser.add_argument("--stream", action="store_true",
                        help="Process video through the asynchronous live_stream mode")
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after N video frames")
    parser.add_argument("--rotation", type=int, default=0, choices=(0, 90, 180, 270),
                        help="Rotation metadata passed to the landmarker")
    parser.add_argument("--save-preview", type=str, default=None, metavar="DIR",
                        help="Write 192x192 JPEG previews to DIR")
    parser.add_argument("--save-tensor", type=str, default=None, metavar="DIR",
                        help="Write raw 64x64x3 float32 tensors to DIR")
    parser.add_argument("--no-landmarks", action="store_true", help="Omit landmark lists from output")
    parser.add_argument("--no-artifacts", action="store_true", help="Omit base64 artifacts from output")
    parser.add_argument("--audit", type=str, default=None, metavar="DIR",
                        help="Write JSONL audit trail to DIR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except LivenessError as e:
        print(f"[LIVENESS] {e}", file=sys.stderr)
        return 1

    if args.model:
        config["detector"]["model_path"] = args.model
    if args.delegate:
        config["detector"]["delegate"] = args.delegate
    if args.audit:
        config["logging"]["audit_log_dir"] = args.audit

    level = logging.DEBUG if args.verbose else resolve_log_level(config["logging"]["level"])
    # Logs go to stderr; stdout carries JSON only
    for name in ("LivenessDetector", "LivenessFeatures", "LivenessRegion",
                 "LivenessPreprocess", "LivenessResult", "LivenessAudit"):
        setup_logger(name, level)

    writer = _ArtifactWriter(args.save_preview, args.save_tensor)

    try:
        if _is_image(args.input):
            return _run_image(args, config, writer)
        if args.stream:
            return _run_stream(args, config, writer)
        return _run_video(args, config, writer)
    except LivenessError as e:
        print(f"[LIVENESS] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n[LIVENESS] Interrupted by user.", file=sys.stderr)
        return 130
    finally:
        if config["logging"].get("audit_log_dir"):
            close_logger(config["logging"]["audit_log_dir"])


if __name__ == "__main__":
    sys.exit(main())
