"""Synthetic observations of a box seen from several cameras.

Produces the per-view `x y w` files read by the reconstruction, together with the ground truth used to
generate them.
"""

from dataclasses import dataclass

import numpy as np

from utils import NDArrayFloat, project_points, view_path


@dataclass
class SyntheticScene:
    points: NDArrayFloat  # (N, 3) world points
    rotations: list[NDArrayFloat]  # world --> camera, per view
    translations: list[NDArrayFloat]  # (3,) per view
    observations: list[NDArrayFloat]  # (N, 2) pixels per view

    @property
    def num_views(self) -> int:
        return len(self.rotations)


def make_box_points(center=(0.0, 0.0, 6.0), half_size: float = 1.0, samples_per_edge: int = 5) -> NDArrayFloat:
    """Corners of an axis-aligned box plus points sampled along its 12 edges."""
    c = np.asarray(center, dtype=np.float64)
    signs = np.array([[sx, sy, sz] for sx in (-1, 1) for sy in (-1, 1) for sz in (-1, 1)], dtype=np.float64)
    corners = c + half_size * signs

    pts = [corners]
    for i in range(len(signs)):
        for j in range(i + 1, len(signs)):
            # corners sharing an edge differ in exactly one coordinate
            if np.count_nonzero(signs[i] != signs[j]) != 1:
                continue
            s = np.linspace(0.0, 1.0, samples_per_edge + 2)[1:-1, None]
            pts.append(corners[i] + s * (corners[j] - corners[i]))
    return np.vstack(pts)


def look_at(camera_center: NDArrayFloat, target: NDArrayFloat) -> tuple[NDArrayFloat, NDArrayFloat]:
    """World --> camera (R, t) of a camera at `camera_center` with its optical axis through `target`.

    Camera axes: x right, y down, z forward.
    """
    z = target - camera_center
    z = z / np.linalg.norm(z)
    x = np.cross(np.array([0.0, 1.0, 0.0]), z)
    x = x / np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.vstack((x, y, z))
    t = -R @ camera_center
    return R, t


def make_scene(
    num_views: int,
    K: NDArrayFloat,
    noise_std: float = 0.0,
    seed: int = 0,
    distance: float = 6.0,
    max_angle: float = 0.6,
) -> SyntheticScene:
    """Box observed by `num_views` cameras on an arc around it; camera 0 sits at the origin.

    All points are visible in all views. Pixel noise is zero-mean Gaussian with `noise_std`.
    """
    if num_views < 2:
        raise ValueError(f"At least 2 views are required, got {num_views}")

    target = np.array([0.0, 0.0, distance])
    points = make_box_points(center=target)
    rng = np.random.default_rng(seed)

    rotations, translations, observations = [], [], []
    for view_idx, angle in enumerate(np.linspace(0.0, max_angle, num_views)):
        # swing around the box (y axis) with a small alternating height offset
        height = 0.0 if view_idx == 0 else 0.2 * (-1) ** view_idx
        C = target + np.array([distance * np.sin(angle), height, -distance * np.cos(angle)])
        R, t = look_at(C, target)

        x = project_points(points, R, t, K)
        if noise_std > 0:
            x = x + rng.normal(scale=noise_std, size=x.shape)

        rotations.append(R)
        translations.append(t)
        observations.append(x)

    return SyntheticScene(points, rotations, translations, observations)


def write_observations(pattern: str, observations: list[NDArrayFloat]):
    """Write one `x y 1` line per observation into the file of each view."""
    for view_idx, x in enumerate(observations):
        path = view_path(pattern, view_idx)
        path.parent.mkdir(exist_ok=True, parents=True)
        with open(path, "w") as f:
            for u, v in x:
                f.write("%f %f %f\n" % (u, v, 1.0))


def generate_observations(
    pattern: str, num_views: int, K: NDArrayFloat, noise_std: float = 0.0, seed: int = 0
) -> SyntheticScene:
    scene = make_scene(num_views, K, noise_std=noise_std, seed=seed)
    write_observations(pattern, scene.observations)
    print(f"Wrote {len(scene.points)} points observed from {scene.num_views} views to {pattern}")
    return scene
