from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import cv2 as cv
import numpy as np
import typer

from ba import IncrementalBundleAdjuster
from config import SfMConfig
from image_formation import generate_observations
from utils import (
    CameraPoses,
    NDArrayFloat,
    PointCloud,
    ReconIO,
    load_observations,
    reprojection_rmse,
)

app = typer.Typer()


@dataclass
class Reconstruction:
    poses: CameraPoses
    point_cloud: PointCloud
    rmse: float
    ba_history: list[dict] = field(default_factory=list)


def estimate_initial_pair(
    pts0: NDArrayFloat, pts1: NDArrayFloat, K: NDArrayFloat
) -> tuple[NDArrayFloat, NDArrayFloat]:
    """Estimates relative pose of the initial two views via epipolar geometry.

    First view is at the origin; returns (R, t) of the second view, t has unit norm.
    """
    if len(pts0) < 8:
        raise ValueError(f"8-point algorithm needs at least 8 correspondences, got {len(pts0)}")

    # all correspondences are used (no outlier rejection)
    F, _ = cv.findFundamentalMat(pts0, pts1, cv.FM_8POINT)
    if F is None or F.shape != (3, 3):
        raise ValueError("Fundamental matrix estimation failed")

    E = K.T @ F @ K
    # cheirality check picks the (R, t) with most points in front of both cameras
    _, R, t, _ = cv.recoverPose(E, pts0, pts1, K)
    return R, t


def triangulate_initial_points(
    pts0: NDArrayFloat, pts1: NDArrayFloat, R: NDArrayFloat, t: NDArrayFloat, K: NDArrayFloat
) -> NDArrayFloat:
    """Linear triangulation of the initial pair; returns (N, 3) Euclidean points."""
    # Projection matrices: from 3D world to each camera 2D image plane
    P0 = K @ np.eye(3, 4)
    P1 = K @ np.hstack((R, t.reshape(3, 1)))

    points_4d = cv.triangulatePoints(P0, P1, pts0.T, pts1.T)
    return (points_4d[:3] / points_4d[3]).T


def register_view(
    pts: NDArrayFloat,
    point_cloud: PointCloud,
    K: NDArrayFloat,
    guess: tuple[NDArrayFloat, NDArrayFloat] | None = None,
) -> tuple[NDArrayFloat, NDArrayFloat]:
    """Estimates pose (R, t) of a new view from 2D-3D correspondences (PnP).

    All points are assumed visible: pts[i] observes point i of the point cloud.
    `guess` is an optional (rvec, tvec) used as the initial extrinsic estimate.
    """
    object_points = point_cloud.get_points_as_array(list(range(point_cloud.size)))
    assert len(object_points) == len(pts), "Number of 3D points must match number of 2D points"

    if guess is not None:
        rvec, tvec = (np.asarray(v, dtype=np.float64).reshape(3, 1).copy() for v in guess)
        pnp_ok, rvec, tvec = cv.solvePnP(object_points, pts, K, None, rvec, tvec, useExtrinsicGuess=True)
    else:
        pnp_ok, rvec, tvec = cv.solvePnP(object_points, pts, K, None)
    if not pnp_ok:
        raise RuntimeError("solvePnP failed to estimate pose.")

    # Estimated pose is relative to 3D point frame (i.e. the world frame); no pose composition required
    R = cv.Rodrigues(rvec)[0]
    return R, tvec


def run_incremental_sfm(xs: list[NDArrayFloat], cfg: SfMConfig) -> Reconstruction:
    """Reconstructs 3D points and camera poses from views in which all points are visible.

    Views 0 and 1 form the baseline; every further view is registered by PnP and added to a single
    bundle adjustment problem that is re-solved after each view.
    """
    K = cfg.intrinsics
    poses = CameraPoses()
    point_cloud = PointCloud()

    # Estimate relative pose of the initial two views (epipolar geometry)
    R, t = estimate_initial_pair(xs[0], xs[1], K)
    poses.append(np.eye(3), np.zeros(3))
    poses.append(R, t)

    # Reconstruct 3D points of the initial two views (triangulation)
    points_3d = triangulate_initial_points(xs[0], xs[1], R, t, K)
    point_cloud.add_points(list(range(len(points_3d))), points_3d)
    print(f"Baseline constructed with {point_cloud.size} 3D points.")

    ba = None
    if cfg.run_ba:
        ba = IncrementalBundleAdjuster(
            poses,
            point_cloud,
            K,
            fix_first_camera=cfg.fix_first_camera,
            linear_solver=cfg.linear_solver,
            num_threads=cfg.num_threads,
            max_num_iterations=cfg.max_num_iterations,
            progress_to_stdout=cfg.progress_to_stdout,
        )
        ba.add_view(0, xs[0])
        ba.add_view(1, xs[1])

    # Incrementally add more views
    for view_idx in range(2, len(xs)):
        guess = None
        if cfg.pnp_use_extrinsic_guess:
            guess = (poses.rvec(view_idx - 1), poses.tvec(view_idx - 1))

        print(f"\nEstimating pose of view {view_idx} with {point_cloud.size} 3D-2D correspondences...")
        R, t = register_view(xs[view_idx], point_cloud, K, guess=guess)
        poses.append(R, t)

        if ba is not None:
            ba.add_view(view_idx, xs[view_idx])
            ba.solve()

    rmse = reprojection_rmse(xs, poses, point_cloud, K)
    print(f"Reconstructed {point_cloud.size} points and {poses.size} cameras (RMS reprojection error {rmse:.4f} px)")
    return Reconstruction(poses, point_cloud, rmse, ba.history if ba is not None else [])


def reconstruct_from_files(cfg: SfMConfig, ply_path: Path | None = None) -> Reconstruction:
    """Loads observations, reconstructs and writes results; nothing is written if any step fails."""
    xs = load_observations(cfg.input_pattern, cfg.num_views, strict=cfg.strict_parsing)
    recon = run_incremental_sfm(xs, cfg)

    exporter = ReconIO(recon.point_cloud, recon.poses)
    exporter.save_xyz(cfg.point_path, cfg.camera_path)
    if ply_path is not None:
        try:
            exporter.save_ply(ply_path)
        except OSError:
            cfg.point_path.unlink(missing_ok=True)
            cfg.camera_path.unlink(missing_ok=True)
            raise
    return recon


@app.command()
def reconstruct(
    input_pattern: str = typer.Option(
        SfMConfig.input_pattern,
        "--input",
        "-i",
        help="Observation file pattern with a %d placeholder for the view index",
    ),
    num_views: int = typer.Option(
        SfMConfig.num_views,
        "--num-views",
        "-n",
        help="Number of views to load",
        min=2,
    ),
    focal_length: float = typer.Option(SfMConfig.focal_length, "--focal", "-f", help="Focal length in pixels"),
    cx: float = typer.Option(SfMConfig.cx, "--cx", help="Principal point x-coordinate"),
    cy: float = typer.Option(SfMConfig.cy, "--cy", help="Principal point y-coordinate"),
    output_dir: Path = typer.Option(SfMConfig.output_dir, "--output-dir", "-o", help="Directory for the XYZ files"),
    point_filename: str = typer.Option(
        SfMConfig.point_filename, "--point-file", help="Output file name for the 3D points (inside --output-dir)"
    ),
    camera_filename: str = typer.Option(
        SfMConfig.camera_filename, "--camera-file", help="Output file name for the camera centers (inside --output-dir)"
    ),
    strict_parsing: bool = typer.Option(
        SfMConfig.strict_parsing,
        "--strict/--lenient",
        help="Fail on malformed observation lines instead of skipping them",
    ),
    run_ba: bool = typer.Option(
        SfMConfig.run_ba,
        "--bundle-adjustment/--no-bundle-adjustment",
        "-b/-nb",
        help="Run incremental bundle adjustment after each registered view",
    ),
    fix_first_camera: bool = typer.Option(
        SfMConfig.fix_first_camera,
        "--fix-first-camera/--free-first-camera",
        help="Hold the first camera constant during bundle adjustment",
    ),
    linear_solver: str = typer.Option(
        SfMConfig.linear_solver,
        "--linear-solver",
        help="Ceres linear solver: 'iterative_schur', 'sparse_schur' or 'dense_schur'",
    ),
    num_threads: int = typer.Option(SfMConfig.num_threads, "--threads", "-t", help="Ceres solver threads", min=1),
    max_num_iterations: int = typer.Option(
        SfMConfig.max_num_iterations, "--max-iterations", help="Maximum solver iterations per solve", min=1
    ),
    pnp_use_extrinsic_guess: bool = typer.Option(
        SfMConfig.pnp_use_extrinsic_guess,
        "--pnp-guess/--no-pnp-guess",
        help="Seed PnP with the previous view's pose",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress Ceres minimizer progress"),
    ply: Optional[Path] = typer.Option(None, "--ply", help="Also export points and camera frustums to this PLY file"),
):
    """Run incremental Structure from Motion on per-view 2D observation files."""

    if linear_solver not in ["iterative_schur", "sparse_schur", "dense_schur"]:
        typer.echo(f"Error: unknown linear solver '{linear_solver}'", err=True)
        raise typer.Exit(code=1)

    cfg = SfMConfig(
        input_pattern=input_pattern,
        num_views=num_views,
        strict_parsing=strict_parsing,
        focal_length=focal_length,
        cx=cx,
        cy=cy,
        pnp_use_extrinsic_guess=pnp_use_extrinsic_guess,
        run_ba=run_ba,
        fix_first_camera=fix_first_camera,
        linear_solver=linear_solver,  # type: ignore
        num_threads=num_threads,
        max_num_iterations=max_num_iterations,
        progress_to_stdout=not quiet,
        output_dir=output_dir,
        point_filename=point_filename,
        camera_filename=camera_filename,
    )

    # Display configuration
    typer.echo("Configuration:")
    typer.echo(f"  Input: {cfg.input_pattern} ({cfg.num_views} views)")
    typer.echo(f"  Intrinsics: f={cfg.focal_length}, c=({cfg.cx}, {cfg.cy})")
    typer.echo(f"  Bundle adjustment: {cfg.run_ba} ({cfg.linear_solver}, {cfg.num_threads} threads)")
    typer.echo()

    try:
        recon = reconstruct_from_files(cfg, ply_path=ply)
    except (OSError, ValueError, RuntimeError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"RMS reprojection error: {recon.rmse:.4f} px")
    typer.echo("✓ Done!")


@app.command()
def generate(
    output_pattern: str = typer.Option(
        SfMConfig.input_pattern,
        "--output",
        "-o",
        help="Output file pattern with a %d placeholder for the view index",
    ),
    num_views: int = typer.Option(SfMConfig.num_views, "--num-views", "-n", help="Number of views", min=2),
    focal_length: float = typer.Option(SfMConfig.focal_length, "--focal", "-f", help="Focal length in pixels"),
    cx: float = typer.Option(SfMConfig.cx, "--cx", help="Principal point x-coordinate"),
    cy: float = typer.Option(SfMConfig.cy, "--cy", help="Principal point y-coordinate"),
    noise_std: float = typer.Option(0.0, "--noise", help="Std. dev. of Gaussian pixel noise", min=0.0),
    seed: int = typer.Option(0, "--seed", help="Random seed for the pixel noise"),
):
    """Generate synthetic observation files of a box seen from several cameras."""
    cfg = SfMConfig(num_views=num_views, focal_length=focal_length, cx=cx, cy=cy)
    try:
        generate_observations(output_pattern, cfg.num_views, cfg.intrinsics, noise_std=noise_std, seed=seed)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo("✓ Done!")


if __name__ == "__main__":
    app()
