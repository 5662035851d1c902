"""
Unit tests for camera view helpers and synthetic scenes
"""

import logging

import pytest
import numpy as np
import cv2
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bundle_sfm.core.projection import project_11dof
from bundle_sfm.utils.camera_views import (
    camera_pose,
    camera_view_from_intrinsics,
    intrinsic_matrix,
    make_camera_view,
    rotation_vector,
    stack_camera_views,
)
from bundle_sfm.utils.synthetic import displace_observations, make_synthetic_scene, perturb_scene


class TestCameraViews:
    """Test packing cameras into the 11-value layout"""

    def test_layout(self):
        view = make_camera_view([0.1, 0.2, 0.3], [1.0, 2.0, 3.0], 500.0, (320.0, 240.0), (-0.1, 0.01))
        np.testing.assert_allclose(view, [0.1, 0.2, 0.3, 1.0, 2.0, 3.0, 500.0, 320.0, 240.0, -0.1, 0.01])
        assert view.dtype == np.float64

    def test_rotation_matrix_round_trip(self):
        rvec = np.array([0.3, -0.1, 0.2])
        R, _ = cv2.Rodrigues(rvec)
        view = make_camera_view(R, [0.0, 0.0, 1.0], 100.0)

        np.testing.assert_allclose(rotation_vector(R), rvec, atol=1e-10)
        R_back, t = camera_pose(view)
        np.testing.assert_allclose(R_back, R, atol=1e-10)
        np.testing.assert_allclose(t, [0.0, 0.0, 1.0])

    def test_from_intrinsics(self):
        K = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
        view = camera_view_from_intrinsics(K, np.eye(3), np.zeros(3), dist=np.array([0.1, -0.05, 0.0, 0.0, 0.0]))

        np.testing.assert_allclose(view[6:], [800.0, 320.0, 240.0, 0.1, -0.05])
        np.testing.assert_allclose(intrinsic_matrix(view), K)

    def test_unequal_focal_lengths(self, caplog):
        K = np.array([[800.0, 0.0, 320.0], [0.0, 820.0, 240.0], [0.0, 0.0, 1.0]])
        with caplog.at_level(logging.WARNING, logger="bundle_sfm"):
            view = camera_view_from_intrinsics(K, np.eye(3), np.zeros(3))
        assert view[6] == pytest.approx(810.0)
        assert "fx" in caplog.text

    def test_stack(self):
        views = stack_camera_views([make_camera_view(np.zeros(3), np.zeros(3), f) for f in (100.0, 200.0)])
        assert views.shape == (2, 11)
        assert views.flags.c_contiguous
        assert views[1, 6] == 200.0

    def test_stack_empty(self):
        assert stack_camera_views([]).shape == (0, 11)


class TestSyntheticScene:
    """Test synthetic scene generation"""

    def test_exact_observations(self):
        scene = make_synthetic_scene(num_cameras=3, num_points=8)

        assert scene.num_cameras == 3
        assert scene.num_points == 8
        assert len(scene.visibility) == 24
        assert np.all(scene.points[:, 2] > 0)
        for image_idx in range(3):
            np.testing.assert_allclose(project_11dof(scene.views[image_idx], scene.points), scene.observations[image_idx])

    def test_reproducible(self):
        a = make_synthetic_scene(seed=3)
        b = make_synthetic_scene(seed=3)
        np.testing.assert_array_equal(a.points, b.points)
        np.testing.assert_array_equal(a.views, b.views)

    def test_perturb_leaves_original(self):
        scene = make_synthetic_scene(num_cameras=2, num_points=5)
        points = scene.points.copy()
        perturbed = perturb_scene(scene)

        np.testing.assert_array_equal(scene.points, points)
        assert not np.allclose(perturbed.points, points)
        np.testing.assert_array_equal(perturbed.views[:, 6:], scene.views[:, 6:])
        assert perturbed.observations is scene.observations

    def test_displace_observations_copies(self):
        """Displacing observations of a perturbed scene leaves the ground truth alone"""
        truth = make_synthetic_scene(num_cameras=3, num_points=10)
        expected = [image.copy() for image in truth.observations]
        scene = perturb_scene(truth)

        displaced = displace_observations(scene, num_outliers=4, offset=40.0)

        for original, image in zip(expected, truth.observations):
            np.testing.assert_array_equal(image, original)
        for original, image in zip(expected, scene.observations):
            np.testing.assert_array_equal(image, original)
        moved = sum(int(np.count_nonzero(np.any(new != old, axis=1))) for new, old in zip(displaced.observations, expected))
        assert 1 <= moved <= 4
        np.testing.assert_array_equal(displaced.points, scene.points)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
