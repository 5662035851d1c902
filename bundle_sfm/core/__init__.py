"""
Core bundle adjustment components
"""

from .config import BundleAdjustmentConfig, SolverConfig
from .visibility import (
    IndexBoundsError,
    VisibilityGraph,
    image_index,
    pack_key,
    point_index,
    unpack_key,
)
from .projection import CAMERA_VIEW_SIZE, project_6dof, project_7dof, project_11dof
from .problem import CauchyLoss, HuberLoss, LeastSquaresProblem, SolverSummary, create_problem, make_loss
from .residuals import (
    ReprojectionError6DOF,
    ReprojectionError7DOF,
    ReprojectionError11DOF,
    add_residual_blocks_6dof,
    add_residual_blocks_7dof,
    add_residual_blocks_11dof,
)
from .outliers import MARKING_DISABLED, mark_noisy_points, noisy_point_mask
from .bundle_adjustment import BundleAdjuster, BundleAdjustmentResult

# Ceres backend - optional import
from .ceres_problem import PYCERES_AVAILABLE


# Convenience functions for direct usage
def adjust_bundle(points, observations, views, visibility, config=None):
    """Run bundle adjustment followed by noisy point marking"""
    adjuster = BundleAdjuster(config or BundleAdjustmentConfig())
    return adjuster.adjust(points, observations, views, visibility)


__all__ = [
    # Configuration
    "BundleAdjustmentConfig",
    "SolverConfig",

    # Visibility graph
    "IndexBoundsError",
    "VisibilityGraph",
    "image_index",
    "pack_key",
    "point_index",
    "unpack_key",

    # Projection models
    "CAMERA_VIEW_SIZE",
    "project_6dof",
    "project_7dof",
    "project_11dof",

    # Optimizer collaborators
    "CauchyLoss",
    "HuberLoss",
    "LeastSquaresProblem",
    "SolverSummary",
    "create_problem",
    "make_loss",
    "PYCERES_AVAILABLE",

    # Residuals
    "ReprojectionError6DOF",
    "ReprojectionError7DOF",
    "ReprojectionError11DOF",
    "add_residual_blocks_6dof",
    "add_residual_blocks_7dof",
    "add_residual_blocks_11dof",

    # Outliers
    "MARKING_DISABLED",
    "mark_noisy_points",
    "noisy_point_mask",

    # Driver
    "BundleAdjuster",
    "BundleAdjustmentResult",
    "adjust_bundle",
]

if PYCERES_AVAILABLE:
    from .ceres_problem import CeresProblem
    __all__.append("CeresProblem")
