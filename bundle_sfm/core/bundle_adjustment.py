"""
Bundle adjustment driver

Builds the reprojection problem for the configured camera model, solves it
with the configured optimizer collaborator and marks the points that still
reproject badly afterwards.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from ..utils import quality_metrics
from .config import BundleAdjustmentConfig
from .outliers import mark_noisy_points
from .problem import SolverSummary, create_problem
from .residuals import CAMERA_BLOCK_SIZES, RESIDUAL_BUILDERS
from .visibility import VisibilityKey, check_scene, iter_entries

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentResult:
    """Outcome of one bundle adjustment run"""
    summary: SolverSummary
    num_residual_blocks: int = 0
    # None when marking is disabled
    num_noisy_points: Optional[int] = None
    initial_metrics: Dict[str, float] = field(default_factory=dict)
    final_metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.summary.success


class BundleAdjuster:
    """Joint refinement of camera views and 3D points"""

    def __init__(self, config: Optional[BundleAdjustmentConfig] = None):
        """
        Args:
            config: bundle adjustment settings. An explicit ``log_level``
                is applied to the package-wide ``bundle_sfm`` logger here;
                the default None leaves logging configuration untouched.
        """
        self.config = config or BundleAdjustmentConfig()
        if self.config.log_level is not None:
            logging.getLogger("bundle_sfm").setLevel(getattr(logging, self.config.log_level))

    def adjust(
        self,
        points: np.ndarray,
        observations: Sequence[Sequence],
        views: np.ndarray,
        visibility: Mapping[VisibilityKey, int],
    ) -> BundleAdjustmentResult:
        """
        Refine ``points`` and ``views`` in place

        Args:
            points: (N, 3) float64 points; marked points have negative z
            observations: per-image sequences of 2D observations
            views: (M, 11) float64 camera views
            visibility: packed (image, keypoint) key -> point index

        Returns:
            BundleAdjustmentResult with the solver summary and marking count
        """
        config = self.config
        check_scene(points, observations, views, visibility)

        active = self._active_visibility(points, visibility)
        logger.info(
            f"Starting {config.camera_model} bundle adjustment: {len(views)} cameras, "
            f"{len(points)} points, {len(active)}/{len(visibility)} observations"
        )
        initial_metrics = quality_metrics.reprojection_statistics(points, observations, views, active)

        problem = create_problem(config.solver.backend)
        build = RESIDUAL_BUILDERS[config.camera_model]
        build(
            problem, points, observations, views, active,
            loss_width=config.loss_width,
            loss_type=config.loss_type,
            show_progress=config.show_progress,
        )

        if problem.num_residual_blocks() == 0:
            logger.warning("No observations to optimize, skipping solve")
            summary = SolverSummary(backend=problem.backend, success=True, termination="NO_WORK")
        else:
            if config.fix_first_camera:
                first_image = min(image_idx for image_idx, _, _ in iter_entries(active))
                problem.set_parameter_block_constant(views[first_image][:CAMERA_BLOCK_SIZES[config.camera_model]])
                logger.debug(f"Fixed camera {first_image} to avoid gauge freedom")
            summary = problem.solve(config.solver)

        final_metrics = quality_metrics.reprojection_statistics(points, observations, views, active)
        logger.info(
            f"Reprojection RMSE: {initial_metrics['rmse']:.4f} -> {final_metrics['rmse']:.4f} px"
        )

        num_noisy = mark_noisy_points(points, observations, views, visibility, config.reproj_error2)

        return BundleAdjustmentResult(
            summary=summary,
            num_residual_blocks=problem.num_residual_blocks(),
            num_noisy_points=num_noisy,
            initial_metrics=initial_metrics,
            final_metrics=final_metrics,
        )

    def _active_visibility(
        self, points: np.ndarray, visibility: Mapping[VisibilityKey, int]
    ) -> Mapping[VisibilityKey, int]:
        if not self.config.skip_noisy_points:
            return visibility
        marked = np.signbit(points[:, 2])
        return {key: point3d_idx for key, point3d_idx in visibility.items() if not marked[point3d_idx]}
