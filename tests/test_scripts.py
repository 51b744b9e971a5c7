"""
Smoke tests for the command line scripts (generate a pair, then register it).
"""

import importlib.util
import json
import sys
from pathlib import Path

import numpy as np

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.utils.transforms import Pose

SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_generate_then_register(tmp_path):
    generate = _load_script("generate_synthetic_clouds")
    register = _load_script("run_registration")

    data_dir = tmp_path / "data"
    assert generate.main([
        "--out-dir", str(data_dir),
        "--yaw", "5",
        "--spacing", "0.02",
        "--noise", "0.001",
        "--crop", "0",
    ]) == 0
    assert (data_dir / "model.npy").exists()
    assert (data_dir / "scan.npy").exists()

    pose_file = tmp_path / "pose.txt"
    metrics_file = tmp_path / "metrics.json"
    aligned_file = tmp_path / "aligned.npy"
    status = register.main([
        str(data_dir / "model.npy"),
        str(data_dir / "scan.npy"),
        "--voxels", "0.08,0.04",
        "--yaws", "0",
        "--output", str(pose_file),
        "--metrics-json", str(metrics_file),
        "--aligned-model", str(aligned_file),
    ])
    assert status == 0

    truth = Pose.load(data_dir / "ground_truth_pose.txt")
    estimate = Pose.load(pose_file)
    assert truth.inverse().compose(estimate).rotation_angle_degrees() < 1.0
    center = np.array([1.0, 0.75, 0.3])
    assert np.linalg.norm(estimate.apply(center) - truth.apply(center)) < 0.02

    metrics = json.loads(metrics_file.read_text())
    assert metrics["inlier_fraction"] > 0.9
    assert np.load(aligned_file).shape[1] == 3


def test_register_reports_failure(tmp_path):
    register = _load_script("run_registration")
    model = tmp_path / "model.npy"
    scan = tmp_path / "scan.npy"
    np.save(model, np.random.default_rng(0).random((100, 3)))
    # Every scan point lies beyond the default 5 m sensor range
    np.save(scan, np.random.default_rng(1).random((100, 3)) + 50.0)

    assert register.main([str(model), str(scan), "--output", str(tmp_path / "pose.txt")]) == 1
    assert not (tmp_path / "pose.txt").exists()
