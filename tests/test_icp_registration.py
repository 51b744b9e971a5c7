"""
Tests for the point-to-plane ICP refiner.

Synthetic clouds are run through the model pyramid builder (no range filter)
so that both sides carry voxel sizes and normals like real pipeline input.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.acceleration.parallel_executor import SeedParallelExecutor
from scan_registration.alignment.coarse_registration import CoarseSeed
from scan_registration.alignment.errors import ICPFailedError
from scan_registration.alignment.fine_registration import (
    ICPParams,
    ICPRefiner,
    LevelResult,
    RegistrationMetrics,
    SeedResult,
    huber_weights,
    refine_seed,
    trim_indices,
)
from scan_registration.preprocessing.pyramid import PointCloud, build_model_pyramid
from scan_registration.utils.transforms import Pose

UP = np.array([0.0, 0.0, 1.0])
VOXELS = [0.05, 0.025]


def _patch(origin, u, v, spacing):
    origin, u, v = (np.asarray(x, dtype=float) for x in (origin, u, v))
    a = np.linspace(0.0, 1.0, int(round(np.linalg.norm(u) / spacing)) + 1)
    b = np.linspace(0.0, 1.0, int(round(np.linalg.norm(v) / spacing)) + 1)
    A, B = np.meshgrid(a, b)
    return origin + np.outer(A.ravel(), u) + np.outer(B.ravel(), v)


def _room_corner(spacing: float = 0.02) -> np.ndarray:
    """Floor, two walls and a box: constrains all six degrees of freedom."""
    return np.vstack([
        _patch([0, 0, 0], [1.0, 0, 0], [0, 0.8, 0], spacing),
        _patch([0, 0, 0], [1.0, 0, 0], [0, 0, 0.6], spacing),
        _patch([0, 0, 0], [0, 0.8, 0], [0, 0, 0.6], spacing),
        _patch([0.55, 0.35, 0.2], [0.25, 0, 0], [0, 0.2, 0], spacing),
        _patch([0.55, 0.35, 0.0], [0.25, 0, 0], [0, 0, 0.2], spacing),
        _patch([0.55, 0.55, 0.0], [0.25, 0, 0], [0, 0, 0.2], spacing),
        _patch([0.55, 0.35, 0.0], [0, 0.2, 0], [0, 0, 0.2], spacing),
        _patch([0.80, 0.35, 0.0], [0, 0.2, 0], [0, 0, 0.2], spacing),
    ])


def _pyramids(truth: Pose, noise: float = 0.0, seed: int = 0):
    model_pts = _room_corner()
    scan_pts = truth.apply(model_pts)
    if noise:
        scan_pts = scan_pts + noise * np.random.default_rng(seed).standard_normal(scan_pts.shape)
    return build_model_pyramid(model_pts, UP, VOXELS), build_model_pyramid(scan_pts, UP, VOXELS)


def _params():
    return [
        ICPParams(max_iterations=20, max_correspondence_distance=4 * v, min_normal_dot=d, huber_delta=2 * v)
        for v, d in zip(VOXELS, [0.75, 0.80])
    ]


def _pose_error(estimate: Pose, truth: Pose, points: np.ndarray):
    rot = truth.inverse().compose(estimate).rotation_angle_degrees()
    trans = float(np.max(np.linalg.norm(estimate.apply(points) - truth.apply(points), axis=1)))
    return rot, trans


# ------------------------ building blocks ------------------------
def test_icp_params_validation():
    ICPParams()
    with pytest.raises(ValueError):
        ICPParams(trim_fraction=0.0)
    with pytest.raises(ValueError):
        ICPParams(trim_fraction=1.5)
    with pytest.raises(ValueError):
        ICPParams(max_correspondence_distance=0.0)
    with pytest.raises(ValueError):
        ICPParams(min_normal_dot=1.2)
    with pytest.raises(ValueError):
        ICPParams(huber_delta=-1.0)
    with pytest.raises(ValueError):
        ICPParams(max_iterations=-1)


def test_trim_keeps_smallest_residuals_stably():
    r = np.array([0.3, -0.1, 0.2, -0.05, 0.4])
    assert trim_indices(r, 0.61).tolist() == [3, 1, 2]

    ties = np.array([0.1, -0.1, 0.1])
    assert trim_indices(ties, 0.67).tolist() == [0, 1]

    assert trim_indices(np.array([5.0]), 0.5).tolist() == [0]
    assert trim_indices(np.zeros(0), 0.7).shape == (0,)
    assert len(trim_indices(np.ones(10), 1.0)) == 10


def test_huber_weights():
    w = huber_weights(np.array([0.05, -0.2, 0.1, 0.0]), 0.1)
    np.testing.assert_allclose(w, [1.0, 0.5, 1.0, 1.0])


def test_metrics_as_dict():
    m = RegistrationMetrics(inlier_fraction=0.9, rmse_meters=0.002, iterations=12, finest_voxel_size=0.007)
    d = m.as_dict()
    assert d["inlier_fraction"] == 0.9
    assert d["iterations"] == 12
    assert d["timestamp"] > 0


# ------------------------ icp_level ------------------------
def test_icp_level_recovers_small_offset():
    truth = Pose.from_axis_angle(UP, 3.0, translation=[0.02, -0.015, 0.01])
    model_pyr, scan_pyr = _pyramids(truth)
    refiner = ICPRefiner()

    level = refiner.icp_level(model_pyr[0], scan_pyr[0], Pose.identity(), _params()[0])

    assert isinstance(level, LevelResult)
    assert level.status in ("converged", "max_iterations")
    # The first iteration has no previous RMSE to converge against
    assert level.iterations > 1
    assert level.pose.is_orthonormal()
    rot, trans = _pose_error(level.pose, truth, model_pyr[0].points)
    assert rot < 1.0
    assert trans < 0.02


def test_trimmed_rmse_with_gross_outliers():
    """A floor patch lifted by 5 cm in the scan is trimmed away, not fitted."""
    truth = Pose.from_axis_angle(UP, 2.0, translation=[0.01, 0.0, 0.0])
    model_pts = _room_corner()
    lifted = (
        (np.abs(model_pts[:, 2]) < 1e-9)
        & (model_pts[:, 0] > 0.09) & (model_pts[:, 0] < 0.45)
        & (model_pts[:, 1] > 0.09) & (model_pts[:, 1] < 0.45)
    )
    assert 250 < np.count_nonzero(lifted) < 350
    displaced = model_pts.copy()
    displaced[lifted, 2] += 0.05
    model_pyr = build_model_pyramid(model_pts, UP, VOXELS)
    scan_pyr = build_model_pyramid(truth.apply(displaced), UP, VOXELS)
    params = _params()
    # Exact search, so the lifted sheet is found as the nearest surface
    refiner = ICPRefiner(nn_backend="kdtree")

    result = refiner.refine_one(CoarseSeed(pose=Pose.identity()), model_pyr, scan_pyr, params)

    rot, trans = _pose_error(result.pose, truth, model_pyr[-1].points)
    assert rot < 0.5
    assert trans < 0.015

    # The lifted patch still produces gross residuals at the final pose
    matches = refiner.find_correspondences(model_pyr[-1], scan_pyr[-1], result.pose, params[-1])
    assert np.count_nonzero(np.abs(matches.residuals) > 0.03) > 0

    finest = result.levels[-1]
    assert finest.n_correspondences > 0
    assert np.isfinite(finest.full_rmse)
    assert finest.trimmed_rmse <= finest.full_rmse
    assert finest.trimmed_rmse < finest.full_rmse
    assert finest.rmse == finest.trimmed_rmse


def test_icp_level_degenerate_plane_keeps_pose():
    """A single plane leaves in-plane motion unconstrained."""
    g = np.linspace(0.0, 1.0, 21)
    X, Y = np.meshgrid(g, g)
    pts = np.column_stack([X.ravel(), Y.ravel(), np.zeros(X.size)])
    normals = np.tile(UP, (len(pts), 1))
    cloud = PointCloud.from_points(pts, normals=normals, voxel_size=0.05)
    start = Pose.from_translation([0.0, 0.0, 0.01])

    level = ICPRefiner().icp_level(cloud, cloud, start, ICPParams(max_correspondence_distance=0.2, huber_delta=0.1))

    assert level.status == "degenerate"
    assert level.iterations == 0
    np.testing.assert_array_equal(level.pose.matrix, start.matrix)


def test_icp_level_without_correspondences():
    model_pyr, scan_pyr = _pyramids(Pose.from_translation([10.0, 0.0, 0.0]))
    level = ICPRefiner().icp_level(model_pyr[0], scan_pyr[0], Pose.identity(), _params()[0])

    assert level.status == "no_correspondences"
    assert level.n_correspondences == 0
    assert level.iterations == 0
    assert np.isinf(level.rmse)
    np.testing.assert_array_equal(level.pose.matrix, np.eye(4))


def test_icp_level_empty_cloud():
    model_pyr, _ = _pyramids(Pose.identity())
    empty = PointCloud.from_points(np.zeros((0, 3)), normals=np.zeros((0, 3)), voxel_size=0.05)
    level = ICPRefiner().icp_level(model_pyr[0], empty, Pose.identity(), _params()[0])
    assert level.status == "no_correspondences"


def test_icp_level_cancel_before_first_iteration():
    model_pyr, scan_pyr = _pyramids(Pose.from_translation([0.01, 0.0, 0.0]))
    level = ICPRefiner().icp_level(
        model_pyr[0], scan_pyr[0], Pose.identity(), _params()[0], cancel_check=lambda: True
    )
    assert level.status == "cancelled"
    assert level.iterations == 0


def test_icp_level_kdtree_backend_agrees():
    truth = Pose.from_axis_angle(UP, 2.0, translation=[0.015, 0.01, -0.01])
    model_pyr, scan_pyr = _pyramids(truth)
    level = ICPRefiner(nn_backend="kdtree").icp_level(model_pyr[0], scan_pyr[0], Pose.identity(), _params()[0])
    rot, trans = _pose_error(level.pose, truth, model_pyr[0].points)
    assert rot < 1.0
    assert trans < 0.02


# ------------------------ evaluate ------------------------
def test_evaluate_identity_and_far_pose():
    model_pyr, _ = _pyramids(Pose.identity())
    finest = model_pyr[-1]
    refiner = ICPRefiner()

    good = refiner.evaluate(finest, finest, Pose.identity(), iterations=7)
    assert good.inlier_fraction == 1.0
    assert good.rmse_meters == pytest.approx(0.0, abs=1e-12)
    assert good.iterations == 7
    assert good.finest_voxel_size == VOXELS[-1]

    bad = refiner.evaluate(finest, finest, Pose.from_translation([5.0, 0.0, 0.0]))
    assert bad.inlier_fraction == 0.0
    assert np.isinf(bad.rmse_meters)


def test_evaluate_counts_points_within_three_voxels():
    scan = PointCloud.from_points(np.array([[0.0, 0.0, 0.0]]), voxel_size=0.01)
    model = PointCloud.from_points(np.array([[0.0, 0.0, 0.02], [0.0, 0.0, 0.05]]), voxel_size=0.01)
    m = ICPRefiner().evaluate(model, scan, Pose.identity())
    assert m.inlier_fraction == 0.5
    assert m.rmse_meters == pytest.approx(0.02)


# ------------------------ multi-seed refinement ------------------------
def test_refine_recovers_pose_across_levels():
    truth = Pose.from_axis_angle(UP, 5.0, translation=[0.04, -0.03, 0.02])
    model_pyr, scan_pyr = _pyramids(truth, noise=0.001)
    seeds = [CoarseSeed(pose=Pose.identity())]

    pose, metrics = ICPRefiner().refine(model_pyr, scan_pyr, seeds, _params())

    rot, trans = _pose_error(pose, truth, model_pyr[-1].points)
    assert rot < 0.5
    assert trans < 0.015
    assert metrics.inlier_fraction > 0.95
    assert metrics.rmse_meters < VOXELS[-1]
    assert metrics.iterations > 0


def test_refine_picks_lowest_rmse_seed():
    truth = Pose.from_translation([0.01, 0.0, 0.0])
    model_pyr, scan_pyr = _pyramids(truth)
    seeds = [
        CoarseSeed(pose=Pose.from_translation([3.0, 0.0, 0.0]), yaw_degrees=0.0),
        CoarseSeed(pose=Pose.identity(), yaw_degrees=0.0),
    ]
    refiner = ICPRefiner()
    results = refiner.refine_all(model_pyr, scan_pyr, seeds, _params())

    assert len(results) == 2
    assert all(isinstance(r, SeedResult) for r in results)
    assert not results[0].found_correspondences
    assert refiner.select_best(results) is results[1]


def _seed_result(n_correspondences, rmse, inlier_fraction, cancelled=False):
    level = LevelResult(Pose.identity(), rmse, 3, n_correspondences, "max_iterations", voxel_size=0.025)
    metrics = RegistrationMetrics(inlier_fraction, rmse, 3, 0.025)
    return SeedResult(
        seed=CoarseSeed(pose=Pose.identity()), pose=Pose.identity(), metrics=metrics, levels=[level], cancelled=cancelled
    )


def test_select_best_returns_best_effort_pose_without_inliers():
    no_matches = _seed_result(0, float("inf"), 0.0)
    matched_no_inliers = _seed_result(120, float("inf"), 0.0)

    assert no_matches.found_correspondences is False
    assert matched_no_inliers.found_correspondences is True
    assert ICPRefiner.select_best([no_matches, matched_no_inliers]) is matched_no_inliers


def test_select_best_prefers_finite_rmse():
    matched_no_inliers = _seed_result(120, float("inf"), 0.0)
    good = _seed_result(400, 0.004, 0.9)
    better = _seed_result(400, 0.002, 0.8)
    cancelled = _seed_result(400, 0.001, 0.95, cancelled=True)

    assert ICPRefiner.select_best([matched_no_inliers, good, better, cancelled]) is better


def test_select_best_fails_when_no_seed_found_correspondences():
    with pytest.raises(ICPFailedError) as excinfo:
        ICPRefiner.select_best([_seed_result(0, float("inf"), 0.0), _seed_result(0, float("inf"), 0.0)])
    assert excinfo.value.kind == "icp_failed"


def test_refine_fails_without_any_correspondences():
    model_pyr, scan_pyr = _pyramids(Pose.from_translation([10.0, 0.0, 0.0]))
    with pytest.raises(ICPFailedError) as excinfo:
        ICPRefiner().refine(model_pyr, scan_pyr, [CoarseSeed(pose=Pose.identity())], _params())
    assert excinfo.value.kind == "icp_failed"


def test_refine_cancelled_before_any_seed_fails():
    model_pyr, scan_pyr = _pyramids(Pose.identity())
    with pytest.raises(ICPFailedError):
        ICPRefiner().refine(
            model_pyr, scan_pyr, [CoarseSeed(pose=Pose.identity())], _params(), cancel_check=lambda: True
        )


def test_refine_progress_callback():
    model_pyr, scan_pyr = _pyramids(Pose.identity())
    calls = []
    seeds = [CoarseSeed(pose=Pose.identity()), CoarseSeed(pose=Pose.from_translation([0.01, 0.0, 0.0]))]
    ICPRefiner().refine_all(model_pyr, scan_pyr, seeds, _params(), progress_callback=lambda a, b: calls.append((a, b)))
    assert calls == [(1, 2), (2, 2)]


def test_refine_rejects_mismatched_pyramids():
    model_pyr, scan_pyr = _pyramids(Pose.identity())
    with pytest.raises(ValueError):
        ICPRefiner().refine(model_pyr, scan_pyr[:1], [CoarseSeed(pose=Pose.identity())], _params())


def test_refine_seed_worker_matches_refiner():
    truth = Pose.from_translation([0.01, 0.005, 0.0])
    model_pyr, scan_pyr = _pyramids(truth)
    seed = CoarseSeed(pose=Pose.identity())
    refiner = ICPRefiner()

    direct = refiner.refine_one(seed, model_pyr, scan_pyr, _params())
    worker = refine_seed(
        seed, model_pyramid=model_pyr, scan_pyramid=scan_pyr, params_per_level=_params(), settings=refiner.settings()
    )
    np.testing.assert_allclose(worker.pose.matrix, direct.pose.matrix)
    assert worker.metrics.rmse_meters == direct.metrics.rmse_meters


def test_parallel_refinement_matches_sequential():
    truth = Pose.from_axis_angle(UP, 2.0, translation=[0.01, 0.0, 0.0])
    model_pyr, scan_pyr = _pyramids(truth)
    seeds = [CoarseSeed(pose=Pose.identity()), CoarseSeed(pose=Pose.from_translation([0.02, 0.0, 0.0]))]

    sequential = ICPRefiner().refine_all(model_pyr, scan_pyr, seeds, _params())
    parallel = ICPRefiner(executor=SeedParallelExecutor(n_workers=2)).refine_all(
        model_pyr, scan_pyr, seeds, _params()
    )

    assert len(parallel) == len(sequential)
    for a, b in zip(sequential, parallel):
        np.testing.assert_allclose(a.pose.matrix, b.pose.matrix, atol=1e-12)
