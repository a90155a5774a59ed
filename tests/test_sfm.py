from pathlib import Path

import cv2 as cv
import numpy as np
import pytest

import sfm
from config import SfMConfig
from image_formation import make_scene
from utils import PointCloud, PointCountMismatchError


def _rotation_angle(R_a, R_b) -> float:
    return float(np.linalg.norm(cv.Rodrigues(R_a.T @ R_b)[0]))


def _unit(v):
    v = np.asarray(v, dtype=np.float64).ravel()
    return v / np.linalg.norm(v)


def test_estimate_initial_pair_matches_ground_truth(scene, K):
    R, t = sfm.estimate_initial_pair(scene.observations[0], scene.observations[1], K)

    # camera 0 is at the origin, so the relative pose is the pose of camera 1
    assert _rotation_angle(R, scene.rotations[1]) < 1e-4
    assert np.linalg.norm(t) == pytest.approx(1.0)
    assert np.dot(_unit(t), _unit(scene.translations[1])) > 1 - 1e-6


def test_estimate_initial_pair_needs_eight_points(scene, K):
    with pytest.raises(ValueError, match="at least 8"):
        sfm.estimate_initial_pair(scene.observations[0][:7], scene.observations[1][:7], K)


def test_triangulate_initial_points_up_to_scale(scene, K):
    R, t = scene.rotations[1], scene.translations[1]
    scale = np.linalg.norm(t)

    points = sfm.triangulate_initial_points(scene.observations[0], scene.observations[1], R, t / scale, K)

    assert points.shape == scene.points.shape
    np.testing.assert_allclose(points * scale, scene.points, atol=1e-6)


def test_register_view(scene, K):
    cloud = PointCloud()
    cloud.add_points(list(range(len(scene.points))), scene.points)

    R, t = sfm.register_view(scene.observations[3], cloud, K)
    assert _rotation_angle(R, scene.rotations[3]) < 1e-5
    np.testing.assert_allclose(t.ravel(), scene.translations[3], atol=1e-4)

    guess = (cv.Rodrigues(scene.rotations[2])[0], scene.translations[2])
    R, t = sfm.register_view(scene.observations[3], cloud, K, guess=guess)
    assert _rotation_angle(R, scene.rotations[3]) < 1e-5
    np.testing.assert_allclose(t.ravel(), scene.translations[3], atol=1e-4)


def test_run_incremental_sfm(scene, cfg):
    recon = sfm.run_incremental_sfm(scene.observations, cfg)

    assert recon.point_cloud.size == len(scene.points)
    assert recon.poses.size == scene.num_views
    assert recon.rmse < 1.0
    assert len(recon.ba_history) == scene.num_views - 2
    np.testing.assert_allclose(recon.poses.center(0), np.zeros(3), atol=1e-12)

    # the reconstruction equals the ground truth up to the global scale of the baseline
    scale = np.linalg.norm(scene.translations[1]) / np.linalg.norm(recon.poses.tvec(1))
    gt_centers = np.array([-R.T @ t for R, t in zip(scene.rotations, scene.translations)])
    np.testing.assert_allclose(recon.poses.centers() * scale, gt_centers, atol=1e-3)
    np.testing.assert_allclose(recon.point_cloud.get_points_as_array() * scale, scene.points, atol=1e-3)


def test_run_incremental_sfm_without_bundle_adjustment(scene, cfg):
    cfg.run_ba = False
    recon = sfm.run_incremental_sfm(scene.observations, cfg)

    assert recon.ba_history == []
    assert recon.poses.size == scene.num_views
    assert recon.rmse < 1.0


def test_run_incremental_sfm_with_pnp_guess(scene, cfg):
    cfg.pnp_use_extrinsic_guess = True
    recon = sfm.run_incremental_sfm(scene.observations, cfg)
    assert recon.rmse < 1.0


def test_run_incremental_sfm_two_views(scene, cfg):
    recon = sfm.run_incremental_sfm(scene.observations[:2], cfg)
    assert recon.poses.size == 2
    assert recon.ba_history == []


def test_run_incremental_sfm_with_noise(cfg):
    noisy = make_scene(cfg.num_views, cfg.intrinsics, noise_std=0.5, seed=3)
    recon = sfm.run_incremental_sfm(noisy.observations, cfg)
    assert recon.rmse < 1.0


def test_reconstruct_from_files(cfg, scene, observation_files):
    sfm.reconstruct_from_files(cfg)

    points = np.loadtxt(cfg.point_path)
    cameras = np.loadtxt(cfg.camera_path)
    assert points.shape == (len(scene.points), 3)
    assert cameras.shape == (scene.num_views, 3)


def test_reconstruct_from_files_is_deterministic(cfg, observation_files):
    sfm.reconstruct_from_files(cfg)
    points_first = np.loadtxt(cfg.point_path)
    cameras_first = np.loadtxt(cfg.camera_path)

    sfm.reconstruct_from_files(cfg)
    np.testing.assert_allclose(np.loadtxt(cfg.point_path), points_first, atol=1e-6)
    np.testing.assert_allclose(np.loadtxt(cfg.camera_path), cameras_first, atol=1e-6)


def test_reconstruct_from_files_writes_ply(cfg, observation_files, tmp_path):
    ply = tmp_path / "recon.ply"
    sfm.reconstruct_from_files(cfg, ply_path=ply)
    assert ply.read_text().startswith("ply\n")


def test_missing_view_produces_no_output(cfg, observation_files):
    Path(cfg.input_pattern % 3).unlink()

    with pytest.raises(FileNotFoundError):
        sfm.reconstruct_from_files(cfg)
    assert not cfg.point_path.exists()
    assert not cfg.camera_path.exists()


def test_failed_ply_export_removes_xyz_files(cfg, observation_files, tmp_path):
    ply = tmp_path / "recon.ply"
    ply.mkdir()  # a directory cannot be opened for writing

    with pytest.raises(OSError):
        sfm.reconstruct_from_files(cfg, ply_path=ply)
    assert not cfg.point_path.exists()
    assert not cfg.camera_path.exists()


def test_point_count_mismatch_fails_before_geometry(cfg, observation_files, monkeypatch):
    path = cfg.input_pattern % 1
    lines = open(path).read().splitlines()
    with open(path, "w") as f:
        f.write("\n".join(lines[:-1]) + "\n")

    def fail(*args, **kwargs):
        raise AssertionError("geometry must not run")

    monkeypatch.setattr(sfm, "estimate_initial_pair", fail)
    with pytest.raises(PointCountMismatchError):
        sfm.reconstruct_from_files(cfg)
    assert not cfg.point_path.exists()


def test_config_intrinsics():
    K = SfMConfig(focal_length=500.0, cx=100.0, cy=50.0).intrinsics
    np.testing.assert_array_equal(K, [[500.0, 0.0, 100.0], [0.0, 500.0, 50.0], [0.0, 0.0, 1.0]])
