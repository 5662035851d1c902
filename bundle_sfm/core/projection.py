"""
Camera projection models for bundle adjustment

Camera view layout (11 values per image):

    [rx, ry, rz, tx, ty, tz, f, cx, cy, k1, k2]

    rx..rz  axis-angle rotation (angle = norm, axis = direction)
    tx..tz  translation
    f       focal length
    cx, cy  principal point
    k1, k2  radial distortion

Three models read increasing parts of this layout:

    6-DOF   rotation + translation; focal and principal point supplied by the caller
    7-DOF   rotation + translation + focal; principal point supplied by the caller
    11-DOF  the full layout, with radial distortion

Every function accepts a single camera/point pair or broadcastable batches
(``(..., 11)`` cameras, ``(..., 3)`` points). Zero depth yields NaN/Inf
instead of raising.
"""

from typing import Sequence, Tuple

import numpy as np

CAMERA_VIEW_SIZE = 11

ROTATION = slice(0, 3)
TRANSLATION = slice(3, 6)
FOCAL = 6
PRINCIPAL_X = 7
PRINCIPAL_Y = 8
K1 = 9
K2 = 10

_EPSILON = np.finfo(np.float64).eps


def angle_axis_rotate_point(angle_axis: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    Rotate a point by an axis-angle rotation vector (Rodrigues' formula)

    Below machine epsilon the rotation is linearised to ``p + w x p``, which
    keeps the zero vector an exact identity.
    """
    angle_axis = np.asarray(angle_axis, dtype=np.float64)
    point = np.asarray(point, dtype=np.float64)

    theta2 = np.sum(angle_axis * angle_axis, axis=-1, keepdims=True)
    large_angle = theta2 > _EPSILON

    theta = np.sqrt(np.where(large_angle, theta2, 1.0))
    axis = angle_axis / theta
    cos_theta = np.cos(theta)
    sin_theta = np.sin(theta)

    axis_dot_point = np.sum(axis * point, axis=-1, keepdims=True)
    rotated = (
        point * cos_theta
        + np.cross(axis, point) * sin_theta
        + axis * (axis_dot_point * (1.0 - cos_theta))
    )
    linearised = point + np.cross(angle_axis, point)

    return np.where(large_angle, rotated, linearised)


def transform_point(camera: np.ndarray, point: np.ndarray) -> np.ndarray:
    """Map a world point into camera coordinates: X' = R * X + t"""
    camera = np.asarray(camera, dtype=np.float64)
    return angle_axis_rotate_point(camera[..., ROTATION], point) + camera[..., TRANSLATION]


def normalize(camera_point: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Perspective divide of camera-space coordinates"""
    with np.errstate(divide="ignore", invalid="ignore"):
        x_n = camera_point[..., 0] / camera_point[..., 2]
        y_n = camera_point[..., 1] / camera_point[..., 2]
    return x_n, y_n


def radial_distortion(x_n: np.ndarray, y_n: np.ndarray, k1: np.ndarray, k2: np.ndarray) -> np.ndarray:
    """Distortion factor 1 + r2 * (k1 + k2 * r2) at a normalized image point"""
    r2 = x_n * x_n + y_n * y_n
    return 1.0 + r2 * (k1 + k2 * r2)


def project_6dof(
    camera: np.ndarray,
    point: np.ndarray,
    focal: float,
    principal_point: Sequence[float],
) -> np.ndarray:
    """Pinhole projection using only rotation and translation from ``camera``"""
    x_n, y_n = normalize(transform_point(camera, point))
    cx, cy = principal_point
    with np.errstate(invalid="ignore"):
        return np.stack([focal * x_n + cx, focal * y_n + cy], axis=-1)


def project_7dof(camera: np.ndarray, point: np.ndarray, principal_point: Sequence[float]) -> np.ndarray:
    """Pinhole projection with the focal length taken from ``camera``"""
    camera = np.asarray(camera, dtype=np.float64)
    x_n, y_n = normalize(transform_point(camera, point))
    focal = camera[..., FOCAL]
    cx, cy = principal_point
    with np.errstate(invalid="ignore"):
        return np.stack([focal * x_n + cx, focal * y_n + cy], axis=-1)


def project_11dof(camera: np.ndarray, point: np.ndarray) -> np.ndarray:
    """Projection with focal length, principal point and radial distortion from ``camera``"""
    camera = np.asarray(camera, dtype=np.float64)
    x_n, y_n = normalize(transform_point(camera, point))

    focal = camera[..., FOCAL]
    cx = camera[..., PRINCIPAL_X]
    cy = camera[..., PRINCIPAL_Y]

    with np.errstate(invalid="ignore", over="ignore"):
        distortion = radial_distortion(x_n, y_n, camera[..., K1], camera[..., K2])
        x_p = focal * distortion * x_n + cx
        y_p = focal * distortion * y_n + cy
    return np.stack([x_p, y_p], axis=-1)


def reprojection_residual(observed: np.ndarray, predicted: np.ndarray) -> np.ndarray:
    """Residual convention shared by all models: observed minus predicted"""
    return np.asarray(observed, dtype=np.float64) - predicted
