import cv2 as cv
import numpy as np
import pyceres

from utils import CameraPoses, NDArrayFloat, PointCloud


class ReprojectionError(pyceres.CostFunction):
    """Pixel residual of one observation: project(K, pose, X) - observed.

    Parameter blocks: pose [rx, ry, rz, tx, ty, tz] (axis-angle + translation) and point [x, y, z].
    Intrinsics K are fixed and baked into the cost.
    """

    def __init__(self, observed: NDArrayFloat, K: NDArrayFloat):
        pyceres.CostFunction.__init__(self)
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([6, 3])
        self.observed = np.asarray(observed, dtype=np.float64).ravel()
        self.K = np.asarray(K, dtype=np.float64)

    def Evaluate(self, parameters, residuals, jacobians):
        pose = np.asarray(parameters[0], dtype=np.float64)
        X = np.asarray(parameters[1], dtype=np.float64)
        rvec, tvec = pose[:3].copy(), pose[3:].copy()

        # jacobian columns: rvec (3), tvec (3), focal (2), principal point (2), distortion (...)
        x_proj, J = cv.projectPoints(X.reshape(1, 3), rvec, tvec, self.K, None)
        residuals[:] = x_proj.ravel() - self.observed

        if jacobians is not None:
            if jacobians[0] is not None:
                jacobians[0][:] = J[:, :6].ravel()
            if jacobians[1] is not None:
                # d(u, v)/dX = d(u, v)/dXc @ R, with Xc = R X + t
                R = cv.Rodrigues(rvec)[0]
                xc, yc, zc = R @ X + tvec
                fx, fy = self.K[0, 0], self.K[1, 1]
                J_cam = np.array(
                    [
                        [fx / zc, 0.0, -fx * xc / zc**2],
                        [0.0, fy / zc, -fy * yc / zc**2],
                    ]
                )
                jacobians[1][:] = (J_cam @ R).ravel()
        return True


class IncrementalBundleAdjuster:
    """Single growing bundle adjustment problem over all registered views.

    Residual blocks reference the live buffers of `poses` and `point_cloud`; solving updates them in place.
    Views are appended with `add_view`, and `solve` re-optimizes every pose and point added so far.
    """

    def __init__(
        self,
        poses: CameraPoses,
        point_cloud: PointCloud,
        K: NDArrayFloat,
        fix_first_camera: bool = True,
        linear_solver: str = "iterative_schur",
        num_threads: int = 8,
        max_num_iterations: int = 100,
        progress_to_stdout: bool = True,
    ):
        self.poses = poses
        self.point_cloud = point_cloud
        self.K = K
        self.fix_first_camera = fix_first_camera

        self.problem = pyceres.Problem()
        self.views: list[int] = []
        self.history: list[dict] = []
        # the problem keeps raw pointers to cost functions; keep the python objects alive
        self._costs: list[ReprojectionError] = []

        self.options = pyceres.SolverOptions()
        solver_type = getattr(pyceres.LinearSolverType, linear_solver.upper(), None)
        if solver_type is None:
            raise ValueError(f"Unknown linear solver: '{linear_solver}'")
        self.options.linear_solver_type = solver_type
        self.options.num_threads = num_threads
        self.options.max_num_iterations = max_num_iterations
        self.options.minimizer_progress_to_stdout = progress_to_stdout

    @property
    def num_residual_blocks(self) -> int:
        return self.problem.num_residual_blocks()

    def add_view(self, view_idx: int, observations: NDArrayFloat):
        """Add one residual block per observation of the view (point i <-> observations[i])."""
        if view_idx in self.views:
            raise ValueError(f"View {view_idx} already added to the problem")
        if len(observations) != self.point_cloud.size:
            raise ValueError(
                f"View {view_idx} has {len(observations)} observations, point cloud has {self.point_cloud.size}"
            )

        pose = self.poses.params(view_idx)
        for point_id, observed in enumerate(observations):
            cost = ReprojectionError(observed, self.K)
            self._costs.append(cost)
            self.problem.add_residual_block(cost, None, [pose, self.point_cloud.params(point_id)])

        # Fix the first camera (to avoid gauge freedom)
        if self.fix_first_camera and view_idx == 0:
            self.problem.set_parameter_block_constant(pose)
            print("Fixed camera 0 to avoid gauge freedom")

        self.views.append(view_idx)

    def solve(self) -> pyceres.SolverSummary:
        """Optimize all camera poses and 3D points added so far."""
        summary = pyceres.SolverSummary()
        pyceres.solve(self.options, self.problem, summary)
        print(summary.BriefReport())
        self.history.append(
            {
                "views": list(self.views),
                "initial_cost": summary.initial_cost,
                "final_cost": summary.final_cost,
                "report": summary.BriefReport(),
            }
        )
        return summary
