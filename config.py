"""Configuration for the incremental Structure from Motion pipeline."""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import numpy as np


@dataclass
class SfMConfig:
    """Configuration for incremental Structure from Motion pipeline.

    Modify the default values here for experimentation.
    Command-line overrides: see `sfm.py reconstruct --help`
    """

    # Input observations
    input_pattern: str = "image_formation%d.xyz"
    """Observation file pattern with a %d placeholder for the view index"""

    num_views: int = 5
    """Number of views to load (files 0..num_views-1)"""

    strict_parsing: bool = False
    """Raise on malformed observation lines instead of skipping them"""

    # Camera intrinsics (shared by all views, never optimized)
    focal_length: float = 1000.0
    """Focal length in pixels"""

    cx: float = 320.0
    """Principal point x-coordinate"""

    cy: float = 240.0
    """Principal point y-coordinate"""

    # Registration
    pnp_use_extrinsic_guess: bool = False
    """Seed PnP with the pose of the previously registered view"""

    # Optimization
    run_ba: bool = True
    """Run incremental bundle adjustment after each registered view"""

    fix_first_camera: bool = True
    """Fix the first camera during bundle adjustment"""

    linear_solver: Literal["iterative_schur", "sparse_schur", "dense_schur"] = "iterative_schur"
    """Ceres linear solver used for the normal equations"""

    num_threads: int = 8
    """Worker threads used by the Ceres solver"""

    max_num_iterations: int = 100
    """Maximum number of solver iterations per solve"""

    progress_to_stdout: bool = True
    """Print Ceres minimizer progress"""

    # Output
    output_dir: Path = Path(".")
    """Directory for the output XYZ files"""

    point_filename: str = "bundle_adjustment_inc(point).xyz"
    """Output file with one 3D point per line"""

    camera_filename: str = "bundle_adjustment_inc(camera).xyz"
    """Output file with one camera center per line"""

    @property
    def intrinsics(self) -> np.ndarray:
        return np.array(
            [
                [self.focal_length, 0.0, self.cx],
                [0.0, self.focal_length, self.cy],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    @property
    def point_path(self) -> Path:
        return Path(self.output_dir) / self.point_filename

    @property
    def camera_path(self) -> Path:
        return Path(self.output_dir) / self.camera_filename
