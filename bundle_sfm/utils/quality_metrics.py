"""
Reprojection quality metrics for bundle adjustment results
"""

from typing import Dict, Mapping, Sequence

import numpy as np

from ..core.outliers import noisy_point_mask, reprojection_errors
from ..core.visibility import VisibilityKey


def reprojection_statistics(
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
) -> Dict[str, float]:
    """
    Summarize 11-DOF reprojection errors (in pixels) over unmarked points

    Returns:
        Dictionary with observation/point counts and mean, median, RMSE and
        max reprojection error
    """
    errors2 = reprojection_errors(points, observations, views, visibility, skip_noisy=True)
    finite = errors2[np.isfinite(errors2)]
    errors = np.sqrt(finite)

    metrics = {
        'num_observations': int(len(errors2)),
        'num_evaluated': int(len(finite)),
        'num_noisy_points': int(np.count_nonzero(noisy_point_mask(points))),
        'mean_error': 0.0,
        'median_error': 0.0,
        'rmse': 0.0,
        'max_error': 0.0,
    }

    if len(errors) > 0:
        metrics['mean_error'] = float(np.mean(errors))
        metrics['median_error'] = float(np.median(errors))
        metrics['rmse'] = float(np.sqrt(np.mean(finite)))
        metrics['max_error'] = float(np.max(errors))

    return metrics
