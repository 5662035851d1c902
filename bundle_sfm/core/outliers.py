"""
Outlier marking after bundle adjustment

Noisy 3D points are not deleted. Their z coordinate is negated instead, so
the point array keeps its indexing and |z| keeps the depth. A point is
"marked" when the sign bit of z is set.
"""

import logging
from typing import Mapping, Optional, Sequence

import numpy as np

from .projection import project_11dof
from .visibility import VisibilityKey, check_scene, entry_arrays, observation_xy

logger = logging.getLogger(__name__)

# Returned by mark_noisy_points when the threshold disables marking
MARKING_DISABLED = None


def noisy_point_mask(points: np.ndarray) -> np.ndarray:
    """Boolean mask of points currently marked as noisy"""
    return np.signbit(points[:, 2])


def clear_noisy_marks(points: np.ndarray) -> int:
    """Unmark every point in place; returns how many were marked"""
    mask = noisy_point_mask(points)
    points[mask, 2] = np.negative(points[mask, 2])
    return int(np.count_nonzero(mask))


def reprojection_errors(
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    skip_noisy: bool = True,
) -> np.ndarray:
    """
    Squared 11-DOF reprojection error of every visibility entry

    Entries are ordered as ``visibility`` iterates. With ``skip_noisy`` the
    entries of marked points are NaN.
    """
    check_scene(points, observations, views, visibility)
    image_ids, point_ids, point3d_ids = entry_arrays(visibility)
    errors = np.full(len(point3d_ids), np.nan)
    if len(point3d_ids) == 0:
        return errors

    active = ~np.signbit(points[point3d_ids, 2]) if skip_noisy else np.ones(len(point3d_ids), dtype=bool)
    if not np.any(active):
        return errors

    observed = np.array([
        observation_xy(observations[image_idx][point_idx])
        for image_idx, point_idx in zip(image_ids[active], point_ids[active])
    ])
    predicted = project_11dof(views[image_ids[active]], points[point3d_ids[active]])
    difference = observed - predicted
    errors[active] = np.sum(difference * difference, axis=-1)
    return errors


def mark_noisy_points(
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    reproj_error2: float = 4.0,
) -> Optional[int]:
    """
    Mark 3D points whose squared reprojection error exceeds a threshold

    Every observation of a not-yet-marked point is reprojected with the
    11-DOF model; if any observation's squared error is above
    ``reproj_error2`` the point's z is negated. Marked points are never
    re-examined, so repeating the call with the same data marks nothing new.

    Args:
        points: (N, 3) float64 points, updated in place (sign of z only)
        observations: per-image sequences of 2D observations
        views: (M, 11) float64 camera views
        visibility: packed (image, keypoint) key -> point index
        reproj_error2: squared pixel error threshold, <= 0 disables marking

    Returns:
        Number of points newly marked, or MARKING_DISABLED
    """
    if reproj_error2 <= 0:
        logger.debug("Noisy point marking disabled")
        return MARKING_DISABLED

    errors = reprojection_errors(points, observations, views, visibility, skip_noisy=True)
    _, _, point3d_ids = entry_arrays(visibility)

    # NaN errors (degenerate depth) compare False and never mark
    with np.errstate(invalid="ignore"):
        exceeded = errors > reproj_error2
    noisy = np.unique(point3d_ids[exceeded])
    points[noisy, 2] = np.negative(points[noisy, 2])

    if noisy.size:
        logger.info(f"Marked {noisy.size} noisy points (squared reprojection error > {reproj_error2})")
    return int(noisy.size)
