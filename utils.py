from pathlib import Path
from typing import Annotated, Any, Literal

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

NDArrayFloat = NDArray[np.floating[Any]]
Point3D = Annotated[NDArrayFloat, Literal[3]]
PoseParams = Annotated[NDArrayFloat, Literal[6]]  # [rx, ry, rz, tx, ty, tz]


class ObservationFormatError(ValueError):
    """Malformed line in an observation file (strict parsing only)."""


class PointCountMismatchError(ValueError):
    """A view observes a different number of points than the first view."""


def view_path(pattern: str, view_idx: int) -> Path:
    """Substitute the view index into a %d-style file pattern."""
    try:
        return Path(pattern % view_idx)
    except TypeError as e:
        raise ValueError(f"File pattern must contain a single %d placeholder, got '{pattern}'") from e


def read_observation_file(path: Path, strict: bool = False) -> NDArrayFloat:
    """Read 2D observations of one view.

    Every line holds three whitespace-separated numbers `x y w`; `w` is discarded.
    Lines that are not exactly three numbers (including undecodable bytes) are skipped unless `strict` is set.
    Raises FileNotFoundError / OSError if the file cannot be opened.
    """
    pts = []
    # undecodable bytes become U+FFFD, which fails float() like any other malformed token
    with open(path, errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            tokens = line.split()
            try:
                if len(tokens) != 3:
                    raise ValueError(f"expected 3 values, got {len(tokens)}")
                x, y, _ = (float(tok) for tok in tokens)
            except ValueError as e:
                if strict:
                    raise ObservationFormatError(f"{path}:{line_no}: {e}") from e
                continue
            pts.append((x, y))
    return np.array(pts, dtype=np.float64).reshape(-1, 2)


def load_observations(pattern: str, num_views: int, strict: bool = False) -> list[NDArrayFloat]:
    """Load 2D points observed from multiple views.

    `pattern` contains a %d placeholder substituted with the view index 0..num_views-1.
    Every view must observe the same number of points (all points visible in all views).
    """
    if num_views < 2:
        raise ValueError(f"At least 2 views are required, got {num_views}")

    xs: list[NDArrayFloat] = []
    for view_idx in range(num_views):
        path = view_path(pattern, view_idx)
        pts = read_observation_file(path, strict=strict)
        if xs and len(pts) != len(xs[0]):
            raise PointCountMismatchError(
                f"View {view_idx} ({path}) has {len(pts)} points, view 0 has {len(xs[0])}"
            )
        xs.append(pts)
        print(f"Loaded {len(pts)} points of view {view_idx} from {path}")
    return xs


class CameraPoses:
    """Per-view pose parameter buffers.

    Every view owns a contiguous 6-vector (axis-angle rotation, translation) that is handed to the
    optimizer as a parameter block. Buffers are updated in place and never reallocated, so the
    optimizer results show up here without copying.
    """

    def __init__(self):
        self._params: list[PoseParams] = []

    @property
    def size(self) -> int:
        return len(self._params)

    def append(self, R: NDArrayFloat, t: NDArrayFloat) -> int:
        """Append a pose given as rotation matrix and translation; returns the view index."""
        self._params.append(np.zeros(6, dtype=np.float64))
        view_idx = len(self._params) - 1
        self.set_pose(view_idx, R, t)
        return view_idx

    def params(self, view_idx: int) -> PoseParams:
        """Live parameter buffer of a view (aliased by the optimizer)."""
        return self._params[view_idx]

    def set_pose(self, view_idx: int, R: NDArrayFloat, t: NDArrayFloat):
        rvec = cv.Rodrigues(np.asarray(R, dtype=np.float64))[0]
        self._params[view_idx][:3] = rvec.ravel()
        self._params[view_idx][3:] = np.asarray(t, dtype=np.float64).ravel()

    def rvec(self, view_idx: int) -> NDArrayFloat:
        return self._params[view_idx][:3].copy()

    def tvec(self, view_idx: int) -> NDArrayFloat:
        return self._params[view_idx][3:].copy()

    def rotation(self, view_idx: int) -> NDArrayFloat:
        return cv.Rodrigues(self._params[view_idx][:3].copy())[0]

    def pose_matrix(self, view_idx: int) -> NDArrayFloat:
        """3x4 [R | t] mapping world to camera coordinates."""
        return np.hstack((self.rotation(view_idx), self.tvec(view_idx).reshape(3, 1)))

    def center(self, view_idx: int) -> NDArrayFloat:
        """Camera center in world coordinates: Xc = R Xw + t = 0 --> Xw = -R^T t."""
        return -self.rotation(view_idx).T @ self.tvec(view_idx)

    def centers(self) -> NDArrayFloat:
        return np.array([self.center(i) for i in range(self.size)]).reshape(-1, 3)


class PointCloud:
    def __init__(self):
        self._data: dict[int, Point3D] = {}  # point_id -> np.array([x, y, z])

    @property
    def size(self):
        return len(self._data)

    def add_points(self, point_ids: list[int], xyz: NDArray[Any]) -> None:
        assert len(point_ids) == xyz.shape[0], "Number of point_ids must match number of 3D points"
        for point_id, pt in zip(point_ids, xyz):
            # own a separate contiguous buffer per point; the optimizer keeps a pointer to it
            self._data[point_id] = np.array(pt, dtype=np.float64).ravel()

    def params(self, point_id: int) -> Point3D:
        """Live parameter buffer of a point (aliased by the optimizer)."""
        return self._data[point_id]

    def get_points_as_array(self, point_ids: list[int] | None = None) -> NDArrayFloat:
        """Returns (M, 3) array of 3D points corresponding to the given point_ids.

        Missing points are returned as np.nan.
        """
        if point_ids is None:
            return np.array(list(self._data.values()), dtype=np.float64).reshape(-1, 3)
        return np.array([self._data.get(point_id, np.full(3, np.nan)) for point_id in point_ids]).reshape(-1, 3)


def project_points(X: NDArrayFloat, R: NDArrayFloat, t: NDArrayFloat, K: NDArrayFloat) -> NDArrayFloat:
    """Pinhole projection of (N, 3) world points into pixel coordinates (N, 2)."""
    Xc = X @ R.T + np.asarray(t).reshape(1, 3)
    x = Xc @ K.T
    return x[:, :2] / x[:, 2:3]


def reprojection_rmse(
    xs: list[NDArrayFloat], poses: CameraPoses, point_cloud: PointCloud, K: NDArrayFloat
) -> float:
    """RMS of the pixel reprojection error over all (view, point) observations."""
    X = point_cloud.get_points_as_array(list(range(point_cloud.size)))
    sq_errors = []
    for view_idx in range(poses.size):
        x_proj = project_points(X, poses.rotation(view_idx), poses.tvec(view_idx), K)
        sq_errors.append(((x_proj - xs[view_idx]) ** 2).sum(axis=1))
    return float(np.sqrt(np.concatenate(sq_errors).mean()))


class ReconIO:
    """Handles saving of reconstruction results (XYZ and PLY files)."""

    Vertex = tuple[float, float, float]  # (x, y, z)
    Edge = tuple[int, int]  # (v1, v2)

    def __init__(self, point_cloud: PointCloud, poses: CameraPoses):
        self.point_cloud = point_cloud
        self.poses = poses

    @staticmethod
    def _format_xyz(xyz: NDArrayFloat) -> str:
        return "".join("%f %f %f\n" % (x, y, z) for x, y, z in xyz)

    def save_xyz(self, point_filename: Path, camera_filename: Path):
        """Write 3D points and camera centers, one `x y z` per line.

        Both files are formatted before anything is written; if the camera file cannot be written
        the point file is removed again so a failure leaves no partial output.
        """
        points_txt = self._format_xyz(self.point_cloud.get_points_as_array(list(range(self.point_cloud.size))))
        cameras_txt = self._format_xyz(self.poses.centers())

        point_filename = Path(point_filename)
        camera_filename = Path(camera_filename)
        point_filename.parent.mkdir(exist_ok=True, parents=True)
        camera_filename.parent.mkdir(exist_ok=True, parents=True)

        with open(point_filename, "w") as f:
            f.write(points_txt)
        try:
            with open(camera_filename, "w") as f:
                f.write(cameras_txt)
        except OSError:
            point_filename.unlink(missing_ok=True)
            raise

        print(f"Wrote {self.point_cloud.size} points to {point_filename}")
        print(f"Wrote {self.poses.size} camera centers to {camera_filename}")

    # pyramid in camera coordinates: apex at the center, base on the z = 1 plane
    _FRUSTUM_CAM = np.array(
        [[0.0, 0.0, 0.0], [0.5, 0.5, 1.0], [0.5, -0.5, 1.0], [-0.5, -0.5, 1.0], [-0.5, 0.5, 1.0]]
    )
    _FRUSTUM_EDGES = [(0, 1), (0, 2), (0, 3), (0, 4), (1, 2), (2, 3), (3, 4), (4, 1)]

    def _frustum_vertices(self, view_idx: int, scale: float) -> NDArrayFloat:
        """(5, 3) world points of a small pyramid showing where camera `view_idx` looks."""
        Rt = self.poses.pose_matrix(view_idx)
        R, t = Rt[:, :3], Rt[:, 3]
        # Xc = R Xw + t --> Xw = R^T (Xc - t)
        return (scale * self._FRUSTUM_CAM - t) @ R

    def _camera_frustums(self, vertex_offset: int, scale: float) -> tuple[list[Vertex], list[Edge]]:
        vertices: list[ReconIO.Vertex] = []
        edges: list[ReconIO.Edge] = []
        for view_idx in range(self.poses.size):
            base_idx = vertex_offset + len(vertices)
            vertices += [tuple(p) for p in self._frustum_vertices(view_idx, scale)]
            edges += [(base_idx + a, base_idx + b) for a, b in self._FRUSTUM_EDGES]
        return vertices, edges

    def save_ply(self, filename: Path = Path("point_cloud.ply"), frustum_scale: float = 0.1):
        """Write points (white) and camera frustums (red) as an ASCII PLY file."""
        xyz = self.point_cloud.get_points_as_array(list(range(self.point_cloud.size)))

        # frustum vertices follow the 3D points
        vertices, edges = self._camera_frustums(vertex_offset=len(xyz), scale=frustum_scale)

        num_vertices = len(xyz) + len(vertices)
        print(f"Writing {len(xyz)} points and {self.poses.size} cameras to {filename}")
        filename = Path(filename)
        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {num_vertices}\n")
            f.write("property float x\n")
            f.write("property float y\n")
            f.write("property float z\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write(f"element edge {len(edges)}\n")
            f.write("property int vertex1\n")
            f.write("property int vertex2\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write("end_header\n")
            for x, y, z in xyz:
                f.write(f"{x} {y} {z} 255 255 255\n")
            for v in vertices:
                f.write(f"{v[0]} {v[1]} {v[2]} 255 0 0\n")
            for e in edges:
                f.write(f"{e[0]} {e[1]} 255 0 0\n")
