"""
Unit tests for reprojection residuals and residual builders
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bundle_sfm.core.problem import CauchyLoss, HuberLoss
from bundle_sfm.core.residuals import (
    CAMERA_BLOCK_SIZES,
    RESIDUAL_BUILDERS,
    ReprojectionError6DOF,
    ReprojectionError7DOF,
    ReprojectionError11DOF,
    add_residual_blocks_6dof,
    add_residual_blocks_7dof,
    add_residual_blocks_11dof,
)
from bundle_sfm.core.visibility import IndexBoundsError, VisibilityGraph, pack_key
from bundle_sfm.utils.camera_views import make_camera_view
from bundle_sfm.utils.synthetic import make_synthetic_scene


class RecordingProblem:
    """Problem stand-in that records every registered residual block"""

    def __init__(self):
        self.blocks = []

    def add_residual_block(self, cost_function, loss_function, parameter_blocks):
        self.blocks.append((cost_function, loss_function, parameter_blocks))
        return len(self.blocks) - 1


@pytest.fixture
def scene():
    return make_synthetic_scene(num_cameras=3, num_points=10, seed=7)


class TestCostFunctors:
    """Test residual evaluation and Jacobians"""

    def create_example(self):
        """(1, 0, 0) seen from t = (0, 0, 5), f = 100, c = (50, 50)"""
        view = make_camera_view(np.zeros(3), [0.0, 0.0, 5.0], 100.0, (50.0, 50.0))
        point = np.array([1.0, 0.0, 0.0])
        return view, point

    def test_residual_is_observed_minus_predicted(self):
        view, point = self.create_example()
        cost = ReprojectionError6DOF([72.0, 49.0], 100.0, (50.0, 50.0))
        np.testing.assert_allclose(cost(view[:6], point), [2.0, -1.0])

    def test_zero_at_exact_observation(self):
        view, point = self.create_example()
        for cost, camera in [
            (ReprojectionError11DOF([70.0, 50.0]), view),
            (ReprojectionError7DOF([70.0, 50.0], (50.0, 50.0)), view[:7]),
            (ReprojectionError6DOF([70.0, 50.0], 100.0, (50.0, 50.0)), view[:6]),
        ]:
            np.testing.assert_allclose(cost(camera, point), [0.0, 0.0], atol=1e-12)

    def test_block_sizes(self):
        assert ReprojectionError11DOF.parameter_block_sizes == (11, 3)
        assert ReprojectionError7DOF.parameter_block_sizes == (7, 3)
        assert ReprojectionError6DOF.parameter_block_sizes == (6, 3)
        assert ReprojectionError11DOF.num_residuals == 2
        assert CAMERA_BLOCK_SIZES == {"6dof": 6, "7dof": 7, "11dof": 11}

    def test_11dof_jacobians(self):
        """Numeric Jacobians match the analytic pinhole derivatives"""
        view, point = self.create_example()
        cost = ReprojectionError11DOF([70.0, 50.0])
        residuals, (J_camera, J_point) = cost.evaluate(view, point)

        assert J_camera.shape == (2, 11)
        assert J_point.shape == (2, 3)
        np.testing.assert_allclose(residuals, [0.0, 0.0], atol=1e-12)

        # x = f * X / Z + cx, residual is observed - x
        assert J_camera[0, 3] == pytest.approx(-20.0, rel=1e-6)   # d/dtx = -f / Z
        assert J_camera[0, 5] == pytest.approx(4.0, rel=1e-6)     # d/dtz = f * X / Z^2
        assert J_camera[0, 6] == pytest.approx(-0.2, rel=1e-6)    # d/df = -X / Z
        assert J_camera[0, 7] == pytest.approx(-1.0, rel=1e-6)    # d/dcx
        assert J_camera[1, 8] == pytest.approx(-1.0, rel=1e-6)    # d/dcy
        assert J_camera[1, 7] == pytest.approx(0.0, abs=1e-8)
        assert J_point[0, 0] == pytest.approx(-20.0, rel=1e-6)
        assert J_point[1, 1] == pytest.approx(-20.0, rel=1e-6)

    def test_6dof_jacobian_shape(self):
        view, point = self.create_example()
        cost = ReprojectionError6DOF([70.0, 50.0], 100.0, (50.0, 50.0))
        _, (J_camera, J_point) = cost.evaluate(view[:6], point)

        assert J_camera.shape == (2, 6)
        assert J_camera[0, 3] == pytest.approx(-20.0, rel=1e-6)
        assert J_point.shape == (2, 3)

    def test_evaluate_without_jacobians(self):
        view, point = self.create_example()
        residuals, jacobians = ReprojectionError11DOF([71.0, 50.0]).evaluate(view, point, jacobians=False)

        assert jacobians is None
        np.testing.assert_allclose(residuals, [1.0, 0.0], atol=1e-12)


class TestResidualBuilders:
    """Test registration of residual blocks with a problem"""

    @pytest.mark.parametrize("model", ["6dof", "7dof", "11dof"])
    def test_one_block_per_entry(self, scene, model):
        problem = RecordingProblem()
        assert RESIDUAL_BUILDERS[model](problem, scene.points, scene.observations, scene.views, scene.visibility)
        assert len(problem.blocks) == len(scene.visibility)

    @pytest.mark.parametrize("model", ["6dof", "7dof", "11dof"])
    def test_blocks_alias_scene_arrays(self, scene, model):
        """Parameter blocks are views into the caller's arrays, never copies"""
        problem = RecordingProblem()
        RESIDUAL_BUILDERS[model](problem, scene.points, scene.observations, scene.views, scene.visibility)

        for cost, _, (camera_block, point_block) in problem.blocks:
            assert camera_block.size == CAMERA_BLOCK_SIZES[model]
            assert point_block.size == 3
            assert np.shares_memory(camera_block, scene.views)
            assert np.shares_memory(point_block, scene.points)
            assert tuple(cost.parameter_block_sizes) == (camera_block.size, point_block.size)

    def test_blocks_follow_visibility(self, scene):
        """Each block couples the right camera row and point row"""
        problem = RecordingProblem()
        visibility = {pack_key(2, 5): 5, pack_key(0, 1): 1}
        add_residual_blocks_11dof(problem, scene.points, scene.observations, scene.views, visibility)

        pairs = sorted(
            (int(np.argmax(np.all(scene.views == camera, axis=1))), int(np.argmax(np.all(scene.points == point, axis=1))))
            for _, _, (camera, point) in problem.blocks
        )
        assert pairs == [(0, 1), (2, 5)]

    def test_registered_residuals_vanish_at_truth(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_11dof(problem, scene.points, scene.observations, scene.views, scene.visibility)

        for cost, _, blocks in problem.blocks:
            np.testing.assert_allclose(cost(*blocks), [0.0, 0.0], atol=1e-9)

    def test_default_loss_is_cauchy(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_11dof(problem, scene.points, scene.observations, scene.views, scene.visibility)

        losses = [loss for _, loss, _ in problem.blocks]
        assert all(isinstance(loss, CauchyLoss) and loss.width == 4.0 for loss in losses)
        # A fresh loss per block
        assert len({id(loss) for loss in losses}) == len(losses)

    def test_loss_disabled(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_6dof(
            problem, scene.points, scene.observations, scene.views, scene.visibility, loss_width=0.0
        )
        assert all(loss is None for _, loss, _ in problem.blocks)

    def test_huber_loss(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_7dof(
            problem, scene.points, scene.observations, scene.views, scene.visibility,
            loss_width=2.0, loss_type="huber",
        )
        assert all(isinstance(loss, HuberLoss) and loss.width == 2.0 for _, loss, _ in problem.blocks)

    def test_7dof_principal_point_captured_by_value(self, scene):
        """Later edits to the view do not reach the registered residual"""
        problem = RecordingProblem()
        visibility = {pack_key(1, 3): 3}
        add_residual_blocks_7dof(problem, scene.points, scene.observations, scene.views, visibility)

        cost, _, blocks = problem.blocks[0]
        assert cost.principal_point == (320.0, 240.0)
        before = cost(*blocks)
        scene.views[1, 7] += 50.0
        np.testing.assert_array_equal(cost(*blocks), before)

    def test_6dof_intrinsics_captured(self, scene):
        problem = RecordingProblem()
        scene.views[2, 6] = 650.0
        add_residual_blocks_6dof(problem, scene.points, scene.observations, scene.views, {pack_key(2, 0): 0})

        cost, _, _ = problem.blocks[0]
        assert cost.focal == 650.0
        assert cost.principal_point == (320.0, 240.0)

    def test_bounds_error_registers_nothing(self, scene):
        """An invalid entry anywhere rejects the whole graph up front"""
        visibility = VisibilityGraph.from_tracks({0: [(0, 0), (1, 0)]})
        visibility[pack_key(0, 1)] = len(scene.points)

        for builder in (add_residual_blocks_6dof, add_residual_blocks_7dof, add_residual_blocks_11dof):
            problem = RecordingProblem()
            with pytest.raises(IndexBoundsError):
                builder(problem, scene.points, scene.observations, scene.views, visibility)
            assert problem.blocks == []

    def test_oversized_packed_key_rejected(self, scene):
        """An image index past 16 bits fails instead of aliasing image 0"""
        for builder in (add_residual_blocks_6dof, add_residual_blocks_7dof, add_residual_blocks_11dof):
            problem = RecordingProblem()
            with pytest.raises(IndexBoundsError):
                builder(problem, scene.points, scene.observations, scene.views, {(65536 << 16) | 3: 3})
            assert problem.blocks == []

    def test_fortran_ordered_scene_rejected(self, scene):
        problem = RecordingProblem()
        with pytest.raises(ValueError):
            add_residual_blocks_11dof(
                problem, np.asfortranarray(scene.points), scene.observations, scene.views, scene.visibility
            )
        with pytest.raises(ValueError):
            add_residual_blocks_6dof(
                problem, scene.points, scene.observations, np.asfortranarray(scene.views), scene.visibility
            )
        assert problem.blocks == []

    def test_builders_leave_data_untouched(self, scene):
        points = scene.points.copy()
        views = scene.views.copy()
        for builder in (add_residual_blocks_6dof, add_residual_blocks_7dof, add_residual_blocks_11dof):
            builder(RecordingProblem(), scene.points, scene.observations, scene.views, scene.visibility)

        np.testing.assert_array_equal(scene.points, points)
        np.testing.assert_array_equal(scene.views, views)

    def test_tuple_keys(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_11dof(problem, scene.points, scene.observations, scene.views, {(1, 4): 4, (2, 4): 4})
        assert len(problem.blocks) == 2

    def test_keypoint_observations(self, scene):
        cv2 = pytest.importorskip("cv2")
        observations = [[cv2.KeyPoint(float(x), float(y), 1.0) for x, y in image] for image in scene.observations]

        problem = RecordingProblem()
        add_residual_blocks_11dof(problem, scene.points, observations, scene.views, scene.visibility)

        # KeyPoint stores float32 coordinates
        for cost, _, blocks in problem.blocks:
            np.testing.assert_allclose(cost(*blocks), [0.0, 0.0], atol=1e-3)

    def test_empty_visibility(self, scene):
        problem = RecordingProblem()
        assert add_residual_blocks_11dof(problem, scene.points, scene.observations, scene.views, {})
        assert problem.blocks == []

    def test_progress_bar(self, scene):
        problem = RecordingProblem()
        add_residual_blocks_11dof(
            problem, scene.points, scene.observations, scene.views, scene.visibility, show_progress=True
        )
        assert len(problem.blocks) == len(scene.visibility)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
