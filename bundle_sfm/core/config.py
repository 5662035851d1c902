"""
Configuration management for bundle adjustment

Uses dataclasses for type safety and validation.
"""

from dataclasses import dataclass, field
from typing import Optional

import psutil

CAMERA_MODELS = ("6dof", "7dof", "11dof")
LOSS_TYPES = ("cauchy", "huber")
SOLVER_BACKENDS = ("scipy", "ceres")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _default_num_threads() -> int:
    return min(psutil.cpu_count() or 1, 8)


@dataclass
class SolverConfig:
    """Configuration for the nonlinear least-squares solver"""

    # Optimizer collaborator: "scipy" or "ceres" (requires pyceres)
    backend: str = "scipy"

    # Iteration budget (function evaluations for scipy, iterations for Ceres)
    max_iterations: int = 100

    # Convergence tolerances
    ftol: float = 1e-8
    xtol: float = 1e-8
    gtol: float = 1e-8

    # Ceres only
    num_threads: int = field(default_factory=_default_num_threads)

    # 0 = silent, 1 = termination report, 2 = per-iteration progress
    verbose: int = 0

    def __post_init__(self):
        if self.backend not in SOLVER_BACKENDS:
            raise ValueError(f"Unknown solver backend '{self.backend}', expected one of {SOLVER_BACKENDS}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {self.num_threads}")
        if self.verbose not in (0, 1, 2):
            raise ValueError(f"verbose must be 0, 1 or 2, got {self.verbose}")


@dataclass
class BundleAdjustmentConfig:
    """Main configuration for bundle adjustment"""

    # Camera model: "6dof", "7dof" or "11dof"
    camera_model: str = "11dof"

    # Robust loss applied to every residual block; width <= 0 disables it
    loss_type: str = "cauchy"
    loss_width: float = 4.0

    # Squared reprojection error (pixels^2) above which a point is marked
    # as noisy after solving; <= 0 disables marking
    reproj_error2: float = 4.0

    # Hold the first camera constant to remove the gauge freedom
    fix_first_camera: bool = True

    # Leave observations of already-marked points out of the problem
    skip_noisy_points: bool = True

    # Show a progress bar while residual blocks are added
    show_progress: bool = False

    solver: SolverConfig = field(default_factory=SolverConfig)

    # Level for the "bundle_sfm" logger: "DEBUG", "INFO", "WARNING", "ERROR",
    # or None to leave it as configured by the application
    log_level: Optional[str] = None

    def __post_init__(self):
        if self.camera_model not in CAMERA_MODELS:
            raise ValueError(f"Unknown camera model '{self.camera_model}', expected one of {CAMERA_MODELS}")
        if self.loss_type not in LOSS_TYPES:
            raise ValueError(f"Unknown loss type '{self.loss_type}', expected one of {LOSS_TYPES}")
        if self.log_level is not None and self.log_level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{self.log_level}', expected one of {LOG_LEVELS}")
