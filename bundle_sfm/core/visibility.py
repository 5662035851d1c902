"""
Visibility graph encoding

A visibility graph maps every observed (image index, keypoint index) pair to
the index of the 3D point it observes. Keys are packed into a single integer
as ``(image_idx << 16) | point_idx``, which caps both indices at 65535.
Tuple keys ``(image_idx, point_idx)`` are accepted wherever a mapping is
consumed and carry no cap.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

KEY_SHIFT = 16
MAX_INDEX = 0xFFFF

VisibilityKey = Union[int, Tuple[int, int]]


class IndexBoundsError(IndexError):
    """Raised when an image, keypoint or 3D point index is out of range"""


def pack_key(image_idx: int, point_idx: int) -> int:
    """Pack an (image index, keypoint index) pair into a visibility key"""
    if not 0 <= image_idx <= MAX_INDEX:
        raise IndexBoundsError(f"Image index {image_idx} outside [0, {MAX_INDEX}]")
    if not 0 <= point_idx <= MAX_INDEX:
        raise IndexBoundsError(f"Point index {point_idx} outside [0, {MAX_INDEX}]")
    return (int(image_idx) << KEY_SHIFT) | int(point_idx)


def image_index(key: int) -> int:
    return (key >> KEY_SHIFT) & MAX_INDEX


def point_index(key: int) -> int:
    return key & MAX_INDEX


def unpack_key(key: VisibilityKey) -> Tuple[int, int]:
    """Return ``(image_idx, point_idx)`` for a packed or tuple key"""
    if isinstance(key, tuple):
        image_idx, point_idx = key
        return int(image_idx), int(point_idx)
    # Masking alone would alias an oversized key onto a valid image
    if key < 0 or key >> (2 * KEY_SHIFT):
        raise IndexBoundsError(f"Visibility key {key} does not pack two indices in [0, {MAX_INDEX}]")
    return image_index(key), point_index(key)


class VisibilityGraph(dict):
    """
    Mapping from packed visibility keys to 3D point indices

    Several keys may point at the same 3D point (one per observation of it),
    but a key is never mapped to two different points.
    """

    def add(self, image_idx: int, point_idx: int, point3d_idx: int) -> int:
        key = pack_key(image_idx, point_idx)
        existing = self.get(key)
        if existing is not None and existing != point3d_idx:
            raise ValueError(
                f"Observation ({image_idx}, {point_idx}) already maps to point {existing}, "
                f"cannot remap it to {point3d_idx}"
            )
        self[key] = int(point3d_idx)
        return key

    def entries(self) -> Iterator[Tuple[int, int, int]]:
        return iter_entries(self)

    def image_indices(self) -> List[int]:
        return sorted({image_idx for image_idx, _, _ in self.entries()})

    def num_observations(self, point3d_idx: int) -> int:
        return sum(1 for value in self.values() if value == point3d_idx)

    @classmethod
    def from_tracks(cls, tracks: Mapping[int, Iterable[Tuple[int, int]]]) -> "VisibilityGraph":
        """
        Build a graph from feature tracks

        Args:
            tracks: 3D point index -> iterable of (image_idx, point_idx) observations

        Returns:
            VisibilityGraph with one entry per observation
        """
        graph = cls()
        for point3d_idx, observations in tracks.items():
            for image_idx, point_idx in observations:
                graph.add(image_idx, point_idx, point3d_idx)
        logger.debug(f"Built visibility graph with {len(graph)} observations of {len(tracks)} points")
        return graph


def iter_entries(visibility: Mapping[VisibilityKey, int]) -> Iterator[Tuple[int, int, int]]:
    """Yield ``(image_idx, point_idx, point3d_idx)`` for every visibility entry"""
    for key, point3d_idx in visibility.items():
        image_idx, point_idx = unpack_key(key)
        yield image_idx, point_idx, int(point3d_idx)


def entry_arrays(visibility: Mapping[VisibilityKey, int]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return image, keypoint and 3D point indices of all entries as int64 arrays"""
    entries = np.array(list(iter_entries(visibility)), dtype=np.int64).reshape(-1, 3)
    return entries[:, 0], entries[:, 1], entries[:, 2]


def check_bounds(
    visibility: Mapping[VisibilityKey, int],
    num_points: int,
    observations: Sequence[Sequence],
    num_views: int,
) -> None:
    """
    Validate every visibility entry against the supplied data

    Raises:
        IndexBoundsError: on the first entry that references a missing image,
            keypoint or 3D point
    """
    num_observation_images = len(observations)
    observation_counts: Dict[int, int] = {}

    for image_idx, point_idx, point3d_idx in iter_entries(visibility):
        if not 0 <= point3d_idx < num_points:
            raise IndexBoundsError(
                f"Visibility entry ({image_idx}, {point_idx}) references point {point3d_idx}, "
                f"but only {num_points} points exist"
            )
        if not 0 <= image_idx < min(num_views, num_observation_images):
            raise IndexBoundsError(
                f"Visibility entry ({image_idx}, {point_idx}) references image {image_idx}, "
                f"but there are {num_views} camera views and {num_observation_images} observation lists"
            )
        if image_idx not in observation_counts:
            observation_counts[image_idx] = len(observations[image_idx])
        if not 0 <= point_idx < observation_counts[image_idx]:
            raise IndexBoundsError(
                f"Visibility entry ({image_idx}, {point_idx}) references keypoint {point_idx}, "
                f"but image {image_idx} has {observation_counts[image_idx]} observations"
            )


def observation_xy(observation) -> np.ndarray:
    """Pixel coordinates of an observation (2-vector or cv2.KeyPoint)"""
    return np.asarray(getattr(observation, "pt", observation), dtype=np.float64).reshape(2)


def check_scene(
    points: np.ndarray,
    observations: Sequence[Sequence],
    views: np.ndarray,
    visibility: Mapping[VisibilityKey, int],
) -> None:
    """
    Validate point and camera arrays and every visibility entry

    Raises:
        ValueError: if points are not an (N, 3) or views not an (M, 11) float64 array
        IndexBoundsError: if a visibility entry is out of range
    """
    if not isinstance(points, np.ndarray) or points.dtype != np.float64 or points.ndim != 2 or points.shape[1] != 3:
        raise ValueError("Points must be an (N, 3) float64 array")
    if not isinstance(views, np.ndarray) or views.dtype != np.float64 or views.ndim != 2 or views.shape[1] != 11:
        raise ValueError("Camera views must be an (M, 11) float64 array")
    # Rows are handed to the optimizer as raw parameter blocks
    if not points.flags.c_contiguous or not views.flags.c_contiguous:
        raise ValueError("Points and camera views must be C-contiguous arrays")
    check_bounds(visibility, len(points), observations, len(views))
