"""
FaceMesh Liveness - Command Line Tests
======================================
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import cv2
import numpy as np

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveness_cli import build_parser, main
from liveness_logger import AUDIT_FILENAME, get_logger
from liveness_types import FaceFeatures, ResultBundle


def _bundle(**kwargs) -> ResultBundle:
    fields = dict(
        inference_time_ms=5.0,
        image_width=64,
        image_height=48,
        preview_artifact=b"jpeg-bytes",
        tensor_artifact=b"\x00" * 49152,
        face_features=FaceFeatures.zeros(),
    )
    fields.update(kwargs)
    return ResultBundle(**fields)


def _patched_detector(bundle: ResultBundle):
    cls = MagicMock()
    detector = cls.from_config.return_value.__enter__.return_value
    detector.detect.return_value = bundle
    return cls, detector


def test_parser_defaults():
    args = build_parser().parse_args(["face.jpg"])
    assert args.input == "face.jpg"
    assert args.rotation == 0
    assert not args.stream


def test_image_prints_json_and_saves_artifacts(tmp_path, capsys):
    image = tmp_path / "face.png"
    cv2.imwrite(str(image), np.zeros((48, 64, 3), dtype=np.uint8))
    cls, detector = _patched_detector(_bundle())

    with patch("liveness_cli.FaceLivenessDetector", cls):
        code = main([str(image), "--save-preview", str(tmp_path / "p"),
                     "--save-tensor", str(tmp_path / "t"), "--no-landmarks"])

    assert code == 0
    config = cls.from_config.call_args[0][0]
    assert config["detector"]["running_mode"] == "image"
    detector.detect.assert_called_once()

    data = json.loads(capsys.readouterr().out)
    assert data["inputImageWidth"] == 64
    assert "faceFeatures" in data
    assert "results" not in data

    assert (tmp_path / "p" / "face.jpg").read_bytes() == b"jpeg-bytes"
    assert len((tmp_path / "t" / "face.f32").read_bytes()) == 49152


def test_image_error_bundle_sets_exit_code(tmp_path):
    image = tmp_path / "face.png"
    cv2.imwrite(str(image), np.zeros((48, 64, 3), dtype=np.uint8))
    cls, _ = _patched_detector(_bundle(error="graph failed"))

    with patch("liveness_cli.FaceLivenessDetector", cls):
        assert main([str(image), "--no-artifacts"]) == 2


def test_unreadable_image_returns_one(tmp_path, capsys):
    assert main([str(tmp_path / "missing.png")]) == 1
    assert "Could not read image" in capsys.readouterr().err


def test_bad_config_path_returns_one(tmp_path, capsys):
    assert main(["face.jpg", "--config", str(tmp_path / "absent.yaml")]) == 1
    assert "Config file not found" in capsys.readouterr().err


def test_audit_log_is_closed_after_run(tmp_path):
    image = tmp_path / "face.png"
    cv2.imwrite(str(image), np.zeros((48, 64, 3), dtype=np.uint8))
    audit_dir = tmp_path / "audit"
    cls, _ = _patched_detector(_bundle())
    opened = []

    def from_config(config, listener=None):
        opened.append(get_logger(config["logging"]["audit_log_dir"]))
        return cls.from_config.return_value

    cls.from_config.side_effect = from_config

    with patch("liveness_cli.FaceLivenessDetector", cls):
        assert main([str(image), "--no-artifacts", "--audit", str(audit_dir)]) == 0

    assert opened[0].closed
    lines = (audit_dir / AUDIT_FILENAME).read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["event"] == "session_end"
