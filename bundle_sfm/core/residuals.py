"""
Reprojection residuals for bundle adjustment

Each observation of a 3D point contributes one residual block
``observed - predicted`` (x then y) tying together a camera parameter block
and a point block. The cost functors evaluate the projection models from
``projection`` and provide central-difference Jacobians for optimizers that
want them; the builders register one block per visibility entry with an
optimizer problem exposing ``add_residual_block(cost, loss, blocks)``.
"""

import logging
from typing import Callable, Mapping, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .problem import make_loss
from .projection import (
    CAMERA_VIEW_SIZE,
    FOCAL,
    PRINCIPAL_X,
    PRINCIPAL_Y,
    project_6dof,
    project_7dof,
    project_11dof,
    reprojection_residual,
)
from .visibility import VisibilityKey, check_scene, iter_entries, observation_xy

logger = logging.getLogger(__name__)

_RELATIVE_STEP = np.cbrt(np.finfo(np.float64).eps)


class ReprojectionError:
    """Base class for reprojection cost functors bound to one observation"""

    num_residuals = 2
    parameter_block_sizes: Tuple[int, int] = (CAMERA_VIEW_SIZE, 3)

    def __init__(self, observation: Sequence[float]):
        self.observation = np.array(observation, dtype=np.float64).reshape(2)

    def project(self, camera: np.ndarray, point: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, camera: np.ndarray, point: np.ndarray) -> np.ndarray:
        return reprojection_residual(self.observation, self.project(camera, point))

    def evaluate(
        self, camera: np.ndarray, point: np.ndarray, jacobians: bool = True
    ) -> Tuple[np.ndarray, Optional[Tuple[np.ndarray, np.ndarray]]]:
        """
        Evaluate the residual and, optionally, its Jacobians

        Returns:
            (residuals, jacobians) where jacobians is None or a pair of
            (2 x camera block size) and (2 x 3) matrices
        """
        residuals = self(camera, point)
        if not jacobians:
            return residuals, None
        return residuals, (self._central_difference(camera, point, 0), self._central_difference(camera, point, 1))

    def _central_difference(self, camera: np.ndarray, point: np.ndarray, wrt: int) -> np.ndarray:
        blocks = [np.asarray(camera, dtype=np.float64), np.asarray(point, dtype=np.float64)]
        x = blocks[wrt]
        step = _RELATIVE_STEP * np.maximum(np.abs(x), 1.0)
        offsets = np.diag(step)

        forward = list(blocks)
        backward = list(blocks)
        forward[wrt] = x + offsets
        backward[wrt] = x - offsets

        # One batched evaluation per side, each row perturbs one parameter
        difference = self(*forward) - self(*backward)
        return (difference / (2.0 * step[:, np.newaxis])).T

    def __repr__(self) -> str:
        return f"{type(self).__name__}(observation={self.observation.tolist()})"


class ReprojectionError11DOF(ReprojectionError):
    """Rotation, translation, focal length, principal point and radial distortion"""

    parameter_block_sizes = (11, 3)

    def project(self, camera: np.ndarray, point: np.ndarray) -> np.ndarray:
        return project_11dof(camera, point)


class ReprojectionError7DOF(ReprojectionError):
    """Rotation, translation and focal length; principal point fixed at construction"""

    parameter_block_sizes = (7, 3)

    def __init__(self, observation: Sequence[float], principal_point: Sequence[float]):
        super().__init__(observation)
        cx, cy = principal_point
        self.principal_point = (float(cx), float(cy))

    def project(self, camera: np.ndarray, point: np.ndarray) -> np.ndarray:
        return project_7dof(camera, point, self.principal_point)


class ReprojectionError6DOF(ReprojectionError):
    """Rotation and translation; focal length and principal point fixed at construction"""

    parameter_block_sizes = (6, 3)

    def __init__(self, observation: Sequence[float], focal: float, principal_point: Sequence[float]):
        super().__init__(observation)
        cx, cy = principal_point
        self.focal = float(focal)
        self.principal_point = (float(cx), float(cy))

    def project(self, camera: np.ndarray, point: np.ndarray) -> np.ndarray:
        return project_6dof(camera, point, self.focal, self.principal_point)


def _add_residual_blocks(
    problem,
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    loss_width: float,
    loss_type: str,
    show_progress: bool,
    model: str,
    make_cost: Callable[[np.ndarray, np.ndarray], ReprojectionError],
    camera_block_size: int,
) -> bool:
    check_scene(points, observations, views, visibility)

    entries = iter_entries(visibility)
    if show_progress:
        entries = tqdm(entries, total=len(visibility), desc=f"Adding {model} residuals")

    for image_idx, point_idx, point3d_idx in entries:
        view = views[image_idx]
        observation = observation_xy(observations[image_idx][point_idx])
        problem.add_residual_block(
            make_cost(observation, view),
            make_loss(loss_type, loss_width),
            [view[:camera_block_size], points[point3d_idx]],
        )

    logger.debug(f"Added {len(visibility)} {model} residual blocks")
    return True


def add_residual_blocks_11dof(
    problem,
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    loss_width: float = 4.0,
    loss_type: str = "cauchy",
    show_progress: bool = False,
) -> bool:
    """
    Add one 11-DOF reprojection residual per visibility entry

    The whole camera view is optimized together with the point.

    Args:
        problem: optimizer problem exposing ``add_residual_block``
        points: (N, 3) float64 point array, rows become parameter blocks
        observations: per-image sequences of 2D observations
        views: (M, 11) float64 camera views, rows become parameter blocks
        visibility: packed (image, keypoint) key -> point index
        loss_width: robust loss width, <= 0 for plain squared error
        loss_type: "cauchy" or "huber"
        show_progress: show a progress bar

    Returns:
        True once every entry is registered
    """
    return _add_residual_blocks(
        problem, points, observations, views, visibility, loss_width, loss_type, show_progress,
        model="11-DOF",
        make_cost=lambda observation, view: ReprojectionError11DOF(observation),
        camera_block_size=11,
    )


def add_residual_blocks_7dof(
    problem,
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    loss_width: float = 4.0,
    loss_type: str = "cauchy",
    show_progress: bool = False,
) -> bool:
    """
    Add one 7-DOF reprojection residual per visibility entry

    The principal point is copied out of each camera view when its residual is
    created and stays fixed; only the first 7 view values are optimized.
    """
    return _add_residual_blocks(
        problem, points, observations, views, visibility, loss_width, loss_type, show_progress,
        model="7-DOF",
        make_cost=lambda observation, view: ReprojectionError7DOF(
            observation, (view[PRINCIPAL_X], view[PRINCIPAL_Y])
        ),
        camera_block_size=7,
    )


def add_residual_blocks_6dof(
    problem,
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
    loss_width: float = 4.0,
    loss_type: str = "cauchy",
    show_progress: bool = False,
) -> bool:
    """
    Add one 6-DOF reprojection residual per visibility entry

    Focal length and principal point are copied out of each camera view and
    handed to the residual; only rotation and translation are optimized.
    """
    return _add_residual_blocks(
        problem, points, observations, views, visibility, loss_width, loss_type, show_progress,
        model="6-DOF",
        make_cost=lambda observation, view: ReprojectionError6DOF(
            observation, view[FOCAL], (view[PRINCIPAL_X], view[PRINCIPAL_Y])
        ),
        camera_block_size=6,
    )


RESIDUAL_BUILDERS = {
    "6dof": add_residual_blocks_6dof,
    "7dof": add_residual_blocks_7dof,
    "11dof": add_residual_blocks_11dof,
}

CAMERA_BLOCK_SIZES = {
    "6dof": ReprojectionError6DOF.parameter_block_sizes[0],
    "7dof": ReprojectionError7DOF.parameter_block_sizes[0],
    "11dof": ReprojectionError11DOF.parameter_block_sizes[0],
}
