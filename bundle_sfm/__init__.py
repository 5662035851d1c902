"""
Bundle adjustment core for Structure-from-Motion
Visibility graphs, camera projection models, reprojection residuals and outlier marking
"""

__version__ = "0.1.0"


# Lazy imports keep ``import bundle_sfm`` cheap (scipy, cv2 and pyceres load on use)
def __getattr__(name):
    """Lazy import for module attributes"""

    if name in ("pack_key", "image_index", "point_index", "unpack_key", "VisibilityGraph", "IndexBoundsError"):
        from .core import visibility
        return getattr(visibility, name)
    elif name in ("project_6dof", "project_7dof", "project_11dof"):
        from .core import projection
        return getattr(projection, name)
    elif name in ("add_residual_blocks_6dof", "add_residual_blocks_7dof", "add_residual_blocks_11dof"):
        from .core import residuals
        return getattr(residuals, name)
    elif name in ("mark_noisy_points", "MARKING_DISABLED"):
        from .core import outliers
        return getattr(outliers, name)
    elif name == "LeastSquaresProblem":
        from .core.problem import LeastSquaresProblem
        return LeastSquaresProblem
    elif name == "BundleAdjuster":
        from .core.bundle_adjustment import BundleAdjuster
        return BundleAdjuster
    elif name == "BundleAdjustmentConfig":
        from .core.config import BundleAdjustmentConfig
        return BundleAdjustmentConfig
    # Utilities
    elif name == "make_camera_view":
        from .utils.camera_views import make_camera_view
        return make_camera_view
    elif name == "reprojection_statistics":
        from .utils.quality_metrics import reprojection_statistics
        return reprojection_statistics

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Visibility graph
    "pack_key",
    "image_index",
    "point_index",
    "unpack_key",
    "VisibilityGraph",
    "IndexBoundsError",

    # Projection models
    "project_6dof",
    "project_7dof",
    "project_11dof",

    # Residual builders and outlier marking
    "add_residual_blocks_6dof",
    "add_residual_blocks_7dof",
    "add_residual_blocks_11dof",
    "mark_noisy_points",
    "MARKING_DISABLED",

    # Optimization
    "LeastSquaresProblem",
    "BundleAdjuster",
    "BundleAdjustmentConfig",

    # Utilities
    "make_camera_view",
    "reprojection_statistics",
]
