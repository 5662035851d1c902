"""
Synthetic scenes with known ground truth, for demos and tests
"""

from dataclasses import dataclass, replace
from typing import List, Sequence

import numpy as np

from ..core.projection import CAMERA_VIEW_SIZE, project_11dof
from ..core.visibility import VisibilityGraph
from .camera_views import make_camera_view


@dataclass
class SyntheticScene:
    points: np.ndarray
    observations: List[np.ndarray]
    views: np.ndarray
    visibility: VisibilityGraph

    @property
    def num_cameras(self) -> int:
        return len(self.views)

    @property
    def num_points(self) -> int:
        return len(self.points)


def make_synthetic_scene(
    num_cameras: int = 4,
    num_points: int = 40,
    focal: float = 500.0,
    principal_point: Sequence[float] = (320.0, 240.0),
    distortion: Sequence[float] = (0.0, 0.0),
    noise_std: float = 0.0,
    seed: int = 0,
) -> SyntheticScene:
    """
    Generate cameras on a short baseline looking at a box of points

    Every camera observes every point; keypoint ``j`` of each image is the
    projection of point ``j``.
    """
    rng = np.random.default_rng(seed)

    points = np.ascontiguousarray(np.column_stack([
        rng.uniform(-1.0, 1.0, num_points),
        rng.uniform(-1.0, 1.0, num_points),
        rng.uniform(4.0, 6.0, num_points),
    ]))

    views = np.zeros((num_cameras, CAMERA_VIEW_SIZE))
    for i in range(num_cameras):
        rotation = rng.normal(0.0, 0.05, 3)
        translation = np.array([0.4 * (i - 0.5 * (num_cameras - 1)), rng.normal(0.0, 0.1), 0.0])
        views[i] = make_camera_view(rotation, translation, focal, principal_point, distortion)

    visibility = VisibilityGraph()
    observations = []
    for i in range(num_cameras):
        projected = project_11dof(views[i], points)
        if noise_std > 0:
            projected = projected + rng.normal(0.0, noise_std, projected.shape)
        observations.append(projected)
        for j in range(num_points):
            visibility.add(i, j, j)

    return SyntheticScene(points, observations, views, visibility)


def perturb_scene(
    scene: SyntheticScene,
    point_noise: float = 0.05,
    rotation_noise: float = 0.01,
    translation_noise: float = 0.05,
    seed: int = 1,
) -> SyntheticScene:
    """Copy of ``scene`` with noisy points and camera poses (intrinsics untouched)"""
    rng = np.random.default_rng(seed)
    points = scene.points + rng.normal(0.0, point_noise, scene.points.shape)
    views = scene.views.copy()
    views[:, 0:3] += rng.normal(0.0, rotation_noise, (len(views), 3))
    views[:, 3:6] += rng.normal(0.0, translation_noise, (len(views), 3))
    return replace(scene, points=np.ascontiguousarray(points), views=views)


def displace_observations(
    scene: SyntheticScene,
    num_outliers: int,
    offset: float = 40.0,
    seed: int = 2,
) -> SyntheticScene:
    """
    Copy of ``scene`` with ``num_outliers`` random observations shifted by
    ``offset`` pixels in x and y

    Observation arrays are copied, so scenes sharing them with ``scene``
    (such as the ground truth a perturbed scene came from) are unaffected.
    """
    rng = np.random.default_rng(seed)
    observations = [np.array(image_observations, dtype=np.float64) for image_observations in scene.observations]
    for _ in range(num_outliers):
        image_idx = rng.integers(scene.num_cameras)
        point_idx = rng.integers(len(observations[image_idx]))
        observations[image_idx][point_idx] += offset
    return replace(scene, observations=observations)
