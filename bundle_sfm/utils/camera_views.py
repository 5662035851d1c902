"""
Helpers for building and reading 11-value camera views
"""

import logging
from typing import Iterable, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..core.projection import (
    CAMERA_VIEW_SIZE,
    FOCAL,
    K1,
    K2,
    PRINCIPAL_X,
    PRINCIPAL_Y,
    ROTATION,
    TRANSLATION,
)

logger = logging.getLogger(__name__)


def rotation_vector(rotation: np.ndarray) -> np.ndarray:
    """Axis-angle vector from a 3x3 rotation matrix or a rotation vector"""
    rotation = np.asarray(rotation, dtype=np.float64)
    if rotation.shape == (3, 3):
        rvec, _ = cv2.Rodrigues(rotation)
        return rvec.flatten()
    return rotation.reshape(3).copy()


def make_camera_view(
    rotation: np.ndarray,
    translation: Sequence[float],
    focal: float,
    principal_point: Sequence[float] = (0.0, 0.0),
    distortion: Sequence[float] = (0.0, 0.0),
) -> np.ndarray:
    """
    Pack a camera into the 11-value view layout

    Args:
        rotation: 3x3 world-to-camera rotation matrix or rotation vector
        translation: world-to-camera translation
        focal: focal length in pixels
        principal_point: (cx, cy)
        distortion: radial coefficients (k1, k2)
    """
    view = np.zeros(CAMERA_VIEW_SIZE, dtype=np.float64)
    view[ROTATION] = rotation_vector(rotation)
    view[TRANSLATION] = np.asarray(translation, dtype=np.float64).reshape(3)
    view[FOCAL] = focal
    view[PRINCIPAL_X], view[PRINCIPAL_Y] = principal_point
    view[K1], view[K2] = distortion
    return view


def camera_view_from_intrinsics(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    dist: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Build a view from an OpenCV intrinsic matrix, pose and distortion vector"""
    K = np.asarray(K, dtype=np.float64)
    fx, fy = K[0, 0], K[1, 1]
    if not np.isclose(fx, fy, rtol=1e-3):
        logger.warning(f"Camera has fx={fx:.2f} != fy={fy:.2f}, using their mean as the focal length")
    distortion = (0.0, 0.0)
    if dist is not None:
        coefficients = np.asarray(dist, dtype=np.float64).ravel()
        distortion = (coefficients[0], coefficients[1]) if coefficients.size >= 2 else (0.0, 0.0)
    return make_camera_view(R, t, 0.5 * (fx + fy), (K[0, 2], K[1, 2]), distortion)


def camera_pose(view: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Rotation matrix and translation of a view"""
    R, _ = cv2.Rodrigues(np.ascontiguousarray(view[ROTATION], dtype=np.float64))
    return R, np.array(view[TRANSLATION], dtype=np.float64)


def intrinsic_matrix(view: np.ndarray) -> np.ndarray:
    return np.array([
        [view[FOCAL], 0.0, view[PRINCIPAL_X]],
        [0.0, view[FOCAL], view[PRINCIPAL_Y]],
        [0.0, 0.0, 1.0],
    ])


def stack_camera_views(views: Iterable[np.ndarray]) -> np.ndarray:
    """Stack views into the contiguous (M, 11) array the optimizer updates in place"""
    stacked = np.array([np.asarray(view, dtype=np.float64).reshape(CAMERA_VIEW_SIZE) for view in views])
    return np.ascontiguousarray(stacked.reshape(-1, CAMERA_VIEW_SIZE))
