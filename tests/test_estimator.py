"""Tests for RelativePoseEstimator."""

import logging

import cv2
import numpy as np
import pytest

from rgbdpose import (
    SE3,
    Calibration,
    CameraFrame,
    CameraPose,
    Correspondences,
    DenseRefiner,
    EstimationStatus,
    EstimatorConfig,
    EstimatorState,
    FrameMismatchError,
    OpenCVFeatureExtractor,
    PreconditionError,
    RansacPoseSolver,
    RefinementResult,
    RelativePoseEstimator,
    RGBDFrame,
    RobustPoseSolver,
    SolverResult,
)

from conftest import (
    COLOR_INTRINSICS,
    DEPTH_INTRINSICS,
    IMAGE_SHAPE,
    SceneExtractor,
    make_frame,
)


class FailingSolver(RobustPoseSolver):
    def solve(self, seed_pose, target_points, source_observations, use_depth=False):
        return SolverResult.failure(len(target_points))


class FailingRefiner(DenseRefiner):
    def __init__(self):
        self.calls = 0

    def refine(self, seed_pose, target_pose, source_cloud, target_cloud,
               target_points=None, source_observations=None):
        self.calls += 1
        return RefinementResult(success=False, message="no luck")


class ShiftingRefiner(DenseRefiner):
    """Moves the seed by a fixed offset and reports success."""

    def __init__(self, offset: SE3):
        self.offset = offset
        self.seed_pose = None
        self.feature_pairs = 0

    def refine(self, seed_pose, target_pose, source_cloud, target_cloud,
               target_points=None, source_observations=None):
        self.seed_pose = seed_pose
        self.feature_pairs = len(target_points)
        return RefinementResult(
            success=True, pose=seed_pose.with_se3(self.offset @ seed_pose.se3), iterations=1
        )


def assert_pose_close(pose: CameraPose, expected: CameraPose, atol: float) -> None:
    np.testing.assert_allclose(pose.se3.to_matrix(), expected.se3.to_matrix(), atol=atol)


def ready_estimator(scene, config: EstimatorConfig | None = None, **kwargs):
    estimator = RelativePoseEstimator(
        config=config, feature_extractor=scene.extractor(), **kwargs
    )
    estimator.set_target_image(scene.target_frame)
    estimator.set_source_image(scene.source_frame)
    return estimator


class TestPreconditions:
    """Test suite for misuse of the estimator."""

    def test_estimate_without_source(self, make_scene):
        """Test that estimating before set_source_image raises."""
        scene = make_scene()
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        estimator.set_target_image(scene.target_frame)

        with pytest.raises(PreconditionError, match="set_source_image"):
            estimator.estimate_new_pose()

    def test_estimate_without_target(self, make_scene):
        """Test that estimating before set_target_image raises."""
        scene = make_scene()
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        estimator.set_source_image(scene.source_frame)

        with pytest.raises(PreconditionError, match="set_target_image"):
            estimator.estimate_new_pose()

    def test_uncalibrated_frames_are_rejected(self):
        """Test that frames need a calibration."""
        estimator = RelativePoseEstimator()
        with pytest.raises(PreconditionError, match="calibrated"):
            estimator.set_target_image(make_frame(None))
        with pytest.raises(PreconditionError, match="calibrated"):
            estimator.set_source_image(make_frame(None))

    def test_source_without_mapped_depth(self, make_scene, calibration):
        """Test that a source frame without depth mapping raises."""
        scene = make_scene()
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        estimator.set_target_image(scene.target_frame)
        estimator.set_source_image(make_frame(calibration, mapped_depth=False))

        with pytest.raises(PreconditionError, match="depth mapping"):
            estimator.estimate_new_pose()

    def test_target_pose_must_be_depth_camera(self, calibration):
        """Test that set_target_pose rejects color-camera poses."""
        estimator = RelativePoseEstimator()
        pose = CameraPose(SE3.identity(), COLOR_INTRINSICS, CameraFrame.COLOR)
        with pytest.raises(FrameMismatchError):
            estimator.set_target_pose(pose)

    def test_match_to_target_without_depth(self, make_scene):
        """Test that a matcher returning a depth-less target keypoint is an error."""
        scene = make_scene(n_points=12)

        class SloppyMatcher(SceneExtractor):
            def match(self, target, source, ratio_threshold_squared):
                idx = np.arange(len(source), dtype=np.int32)
                return Correspondences(idx, idx, np.zeros(len(idx), dtype=np.float32))

        scene.target_observations[0, 2] = 0.0
        estimator = RelativePoseEstimator(feature_extractor=SloppyMatcher(scene))
        estimator.set_target_image(scene.target_frame)
        estimator.set_source_image(scene.source_frame)

        with pytest.raises(PreconditionError, match="Match without depth"):
            estimator.estimate_new_pose()


class TestStateMachine:
    """Test suite for estimator state transitions."""

    def test_transitions(self, make_scene):
        """Test NO_TARGET -> TARGET_SET -> POSE_ESTIMATED -> TARGET_SET."""
        scene = make_scene()
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        assert estimator.state is EstimatorState.NO_TARGET
        assert estimator.estimated_pose is None
        assert estimator.last_result is None

        estimator.set_target_image(scene.target_frame)
        assert estimator.state is EstimatorState.TARGET_SET

        estimator.set_source_image(scene.source_frame)
        assert estimator.estimate_new_pose()
        assert estimator.state is EstimatorState.POSE_ESTIMATED

        estimator.set_source_image(scene.source_frame)
        assert estimator.state is EstimatorState.TARGET_SET

    def test_reset_target(self, make_scene):
        """Test that reset_target forgets the target and every pose."""
        scene = make_scene()
        estimator = ready_estimator(scene)
        assert estimator.estimate_new_pose()

        estimator.reset_target()

        assert estimator.state is EstimatorState.NO_TARGET
        assert estimator.estimated_pose is None
        assert not estimator.target_pose.is_valid
        assert estimator.target_features.is_empty()
        with pytest.raises(PreconditionError, match="set_target_image"):
            estimator.estimate_new_pose()

    def test_set_target_pose_drops_target_features(self, make_scene):
        """Test that a new target pose forces target features to be recomputed."""
        scene = make_scene()
        estimator = ready_estimator(scene)
        assert estimator.estimate_new_pose()
        assert not estimator.target_features.is_empty()

        estimator.set_target_pose(
            CameraPose(SE3.identity(), DEPTH_INTRINSICS, CameraFrame.DEPTH)
        )

        assert estimator.target_features.is_empty()

    def test_set_target_image_keeps_explicit_pose(self, make_scene):
        """Test that an explicit target pose survives a new target image."""
        scene = make_scene()
        explicit = CameraPose(
            SE3.from_rvec_tvec([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]),
            DEPTH_INTRINSICS,
            CameraFrame.DEPTH,
        )
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        estimator.set_target_pose(explicit)
        estimator.set_target_image(scene.target_frame)

        assert estimator.target_pose is explicit

    def test_target_pose_from_frame(self, make_scene):
        """Test that the target frame's own pose is used by default."""
        scene = make_scene()
        estimator = RelativePoseEstimator(feature_extractor=scene.extractor())
        estimator.set_target_image(scene.target_frame)

        assert estimator.target_pose is scene.target_frame.pose


class TestEstimation:
    """Test suite for estimate_new_pose."""

    def test_recovers_translation(self, make_scene):
        """Test that a 10 cm sideways move is recovered."""
        scene = make_scene()
        estimator = ready_estimator(scene)

        assert estimator.estimate_new_pose()

        pose = estimator.estimated_pose
        assert pose.frame is CameraFrame.DEPTH
        assert pose.intrinsics == DEPTH_INTRINSICS
        assert_pose_close(pose, scene.source_depth_pose, atol=1e-6)

        result = estimator.last_result
        assert result.success
        assert result.status is EstimationStatus.OK
        assert result.pose is pose
        assert result.num_matches == 50
        assert result.num_depth_matches == 50
        assert result.num_inliers == 50
        assert result.normalized_error < 1e-6
        assert not result.refined
        assert not result.refinement_failed
        assert estimator.num_matches == 50

    def test_recovers_rotation_and_translation(self, make_scene):
        """Test a general motion."""
        scene = make_scene(
            source_translation=(0.05, -0.02, 0.08), source_rotation=(0.03, -0.08, 0.02)
        )
        estimator = ready_estimator(scene)

        assert estimator.estimate_new_pose()
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    @pytest.mark.parametrize("use_depth_residual", [False, True])
    def test_noisy_observations(self, make_scene, use_depth_residual):
        """Test that realistic sensor noise still gives an accurate pose."""
        scene = make_scene(n_points=80, pixel_noise=0.3, depth_noise=0.002, seed=1)
        config = EstimatorConfig(use_depth_residual=use_depth_residual)
        estimator = ready_estimator(scene, config)

        assert estimator.estimate_new_pose()

        pose = estimator.estimated_pose
        error = np.linalg.norm(pose.se3.translation - scene.source_depth_pose.se3.translation)
        assert error < 0.01
        assert pose.se3.rotation_angle_to(scene.source_depth_pose.se3) < 0.01
        assert estimator.last_result.normalized_error < 0.005

    def test_wrong_matches_are_outliers(self, make_scene):
        """Test that a minority of wrong source keypoints is rejected."""
        scene = make_scene(n_points=60, seed=2)
        rng = np.random.default_rng(5)
        signs = rng.choice([-1.0, 1.0], (15, 2))
        scene.source_observations[:15, :2] += signs * rng.uniform(60, 120, (15, 2))
        estimator = ready_estimator(scene)

        assert estimator.estimate_new_pose()

        assert estimator.last_result.num_inliers == 45
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    def test_target_frame_pose_is_used(self, make_scene, calibration):
        """Test that moving the whole scene moves the estimate with it."""
        scene = make_scene()
        estimator = ready_estimator(scene)
        assert estimator.estimate_new_pose()
        original = estimator.estimated_pose

        offset = SE3.from_rvec_tvec([0.1, 0.0, -0.05], [0.5, -0.2, 1.0])
        estimator.set_target_pose(
            CameraPose(offset, DEPTH_INTRINSICS, CameraFrame.DEPTH)
        )
        assert estimator.estimate_new_pose()

        np.testing.assert_allclose(
            estimator.estimated_pose.se3.to_matrix(),
            (offset @ original.se3).to_matrix(),
            atol=1e-6,
        )

    def test_repeated_calls_are_identical(self, make_scene):
        """Test that a second call reuses cached features and gives the same pose."""
        scene = make_scene(n_points=60, pixel_noise=0.5, seed=3)
        extractor = scene.extractor()
        estimator = RelativePoseEstimator(feature_extractor=extractor)
        estimator.set_target_image(scene.target_frame)
        estimator.set_source_image(scene.source_frame)

        assert estimator.estimate_new_pose()
        first = estimator.estimated_pose
        assert estimator.estimate_new_pose()
        second = estimator.estimated_pose

        assert extractor.calls == 2
        np.testing.assert_array_equal(first.se3.to_matrix(), second.se3.to_matrix())

    def test_precomputed_features(self, make_scene):
        """Test that features handed in are used instead of extracting."""
        scene = make_scene()
        extractor = scene.extractor()
        estimator = RelativePoseEstimator(feature_extractor=extractor)
        estimator.set_target_image(scene.target_frame, scene.target_features())
        estimator.set_source_image(scene.source_frame, scene.source_features())

        assert estimator.estimate_new_pose()
        assert extractor.calls == 0
        assert estimator.target_features.has_3d_locations
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    def test_not_enough_matches(self, make_scene):
        """Test failure with fewer matches than min_matches."""
        scene = make_scene(n_points=8)
        estimator = ready_estimator(scene)

        assert not estimator.estimate_new_pose()

        result = estimator.last_result
        assert result.status is EstimationStatus.NOT_ENOUGH_MATCHES
        assert not result.success
        assert result.pose is None
        assert result.num_matches == 8
        assert estimator.estimated_pose is None
        assert estimator.state is EstimatorState.TARGET_SET

    def test_not_enough_depth_matches(self, make_scene):
        """Test failure when too few matched source keypoints have depth."""
        scene = make_scene(n_points=20)
        scene.source_observations[:12, 2] = 0.0
        estimator = ready_estimator(scene)

        assert not estimator.estimate_new_pose()

        result = estimator.last_result
        assert result.status is EstimationStatus.NOT_ENOUGH_DEPTH_MATCHES
        assert result.num_matches == 20
        assert result.num_depth_matches == 8

    def test_source_without_depth_is_skipped(self, make_scene):
        """Test that source keypoints without depth only reduce the pair count."""
        scene = make_scene(n_points=40)
        scene.source_observations[:10, 2] = 0.0
        estimator = ready_estimator(scene)

        assert estimator.estimate_new_pose()
        assert estimator.last_result.num_matches == 40
        assert estimator.last_result.num_depth_matches == 30
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    def test_residual_too_high(self, make_scene):
        """Test that a consistent but noisy fit is rejected."""
        scene = make_scene(n_points=50, seed=4)
        rng = np.random.default_rng(6)
        scene.source_observations[:, 2] += rng.choice([-0.03, 0.03], 50)
        estimator = ready_estimator(
            scene,
            EstimatorConfig(use_depth_residual=True),
            solver=RansacPoseSolver(inlier_threshold=0.2),
        )

        assert not estimator.estimate_new_pose()

        result = estimator.last_result
        assert result.status is EstimationStatus.RESIDUAL_TOO_HIGH
        assert result.normalized_error > 0.005
        assert result.num_inliers > 0
        assert estimator.estimated_pose is None

    @pytest.mark.parametrize("seed", [0, 1, 2])
    @pytest.mark.parametrize("shift_px", [4, 6, 8, 10, 12, 16, 20, 30, 60])
    def test_uniform_pixel_noise_is_rejected(self, make_scene, seed, shift_px):
        """Test that every observation off by a few pixels or more is rejected."""
        scene = make_scene(n_points=50, seed=seed)
        rng = np.random.default_rng(100 + seed)
        angle = rng.uniform(0.0, 2 * np.pi, 50)
        scene.source_observations[:, 0] += shift_px * np.cos(angle)
        scene.source_observations[:, 1] += shift_px * np.sin(angle)
        estimator = ready_estimator(scene)

        assert not estimator.estimate_new_pose()

        assert estimator.last_result.status in (
            EstimationStatus.RESIDUAL_TOO_HIGH,
            EstimationStatus.TOO_FEW_INLIERS,
        )
        assert estimator.estimated_pose is None

    def test_mostly_wrong_matches_are_rejected(self, make_scene):
        """Test that an accurate fit to a minority of pairs is not accepted."""
        scene = make_scene(n_points=50, seed=5)
        rng = np.random.default_rng(7)
        signs = rng.choice([-1.0, 1.0], (30, 2))
        scene.source_observations[:30, :2] += signs * rng.uniform(60, 120, (30, 2))
        estimator = ready_estimator(scene)

        assert not estimator.estimate_new_pose()

        result = estimator.last_result
        assert result.status is EstimationStatus.TOO_FEW_INLIERS
        assert result.num_inliers == 20
        assert result.num_depth_matches == 50

    def test_solver_failure(self, make_scene):
        """Test that a failed robust solve is reported."""
        scene = make_scene()
        estimator = ready_estimator(scene, solver=FailingSolver())

        assert not estimator.estimate_new_pose()
        assert estimator.last_result.status is EstimationStatus.SOLVER_FAILED
        assert estimator.last_result.num_depth_matches == 50

    def test_failure_clears_previous_pose(self, make_scene):
        """Test that a failed call does not leave a stale pose."""
        scene = make_scene()
        estimator = ready_estimator(scene)
        assert estimator.estimate_new_pose()

        few = make_scene(n_points=5)
        estimator.set_source_image(few.source_frame, few.source_features())
        assert not estimator.estimate_new_pose()
        assert estimator.estimated_pose is None

    def test_timing_is_recorded(self, make_scene):
        """Test that the per-stage timing is filled."""
        scene = make_scene()
        estimator = ready_estimator(scene)
        assert estimator.estimate_new_pose()

        timing = estimator.last_result.timing
        assert timing.total_ms > 0.0
        assert timing.total_ms >= timing.solve_ms >= 0.0
        assert timing.refine_ms == 0.0


class TestRefinement:
    """Test suite for the optional RGBD-ICP stage."""

    def test_failed_refinement_keeps_solver_pose(self, make_scene, caplog):
        """Test that a failing refiner does not fail the estimation."""
        scene = make_scene()
        refiner = FailingRefiner()
        estimator = ready_estimator(
            scene, EstimatorConfig(refine_with_rgbd_icp=True), refiner=refiner
        )

        with caplog.at_level(logging.WARNING, logger="rgbdpose.estimator"):
            assert estimator.estimate_new_pose()

        assert refiner.calls == 1
        assert estimator.last_result.refinement_failed
        assert not estimator.last_result.refined
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)
        assert "RGBD-ICP failed: no luck" in caplog.text

    def test_default_refiner_on_empty_clouds(self, make_scene):
        """Test the built-in refiner failing softly on frames without depth."""
        scene = make_scene()
        estimator = ready_estimator(scene, EstimatorConfig(refine_with_rgbd_icp=True))

        assert estimator.estimate_new_pose()
        assert estimator.last_result.refinement_failed
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    def test_successful_refinement_replaces_pose(self, make_scene, calibration):
        """Test that a refined pose becomes the estimate."""
        scene = make_scene()
        offset = SE3.from_rvec_tvec([0.0, 0.0, 0.0], [0.0, 0.0, 0.01])
        refiner = ShiftingRefiner(offset)
        estimator = ready_estimator(
            scene, EstimatorConfig(refine_with_rgbd_icp=True), refiner=refiner
        )

        assert estimator.estimate_new_pose()

        assert estimator.last_result.refined
        assert not estimator.last_result.refinement_failed
        assert refiner.seed_pose.frame is CameraFrame.COLOR
        assert refiner.feature_pairs == 50
        expected = refiner.seed_pose.with_se3(offset @ refiner.seed_pose.se3)
        assert_pose_close(
            estimator.estimated_pose, expected.to_depth_camera(calibration), atol=1e-12
        )
        assert estimator.last_result.timing.refine_ms > 0.0

    def test_refinement_on_a_wall(self, make_scene, calibration):
        """Test the full filter, cloud, sampling and RGBD-ICP chain on a wall.

        Both frames see the plane z = 2 of the target color camera. The source
        camera only translates, so its depth of the wall is constant too.
        """
        scene = make_scene()
        target_color = scene.target_frame.pose.to_color_camera(calibration)
        source_color = scene.source_depth_pose.to_color_camera(calibration)
        relative = target_color.se3.inverse() @ source_color.se3
        np.testing.assert_allclose(relative.rotation, np.eye(3), atol=1e-12)

        scene.target_frame.mapped_depth[:] = 2.0
        scene.source_frame.mapped_depth[:] = 2.0 - relative.translation[2]
        estimator = ready_estimator(scene, EstimatorConfig(refine_with_rgbd_icp=True))

        assert estimator.estimate_new_pose()

        result = estimator.last_result
        assert result.refined
        assert not result.refinement_failed
        assert_pose_close(estimator.estimated_pose, scene.source_depth_pose, atol=1e-6)

    def test_refinement_disabled_by_default(self, make_scene):
        """Test that the refiner is not called unless enabled."""
        scene = make_scene()
        refiner = FailingRefiner()
        estimator = ready_estimator(scene, refiner=refiner)

        assert estimator.estimate_new_pose()
        assert refiner.calls == 0


class TestWithImages:
    """End-to-end test on rendered images with ORB features."""

    def test_shifted_texture_on_a_plane(self):
        """Test a camera moving parallel to a textured wall."""
        rng = np.random.default_rng(0)
        noise = rng.integers(0, 256, IMAGE_SHAPE, dtype=np.uint8)
        texture = cv2.GaussianBlur(noise, (5, 5), 1.0)
        depth = np.full(IMAGE_SHAPE, 2.0, dtype=np.float32)
        calibration = Calibration(COLOR_INTRINSICS, COLOR_INTRINSICS)

        target = RGBDFrame(color=texture, depth=depth, calibration=calibration)
        source = RGBDFrame(
            color=np.roll(texture, -10, axis=1), depth=depth.copy(), calibration=calibration
        )
        for frame in (target, source):
            frame.compute_mapped_depth()

        estimator = RelativePoseEstimator(feature_extractor=OpenCVFeatureExtractor())
        estimator.set_target_image(target)
        estimator.set_source_image(source)

        assert estimator.estimate_new_pose(), estimator.last_result.status

        # 10 px at 2 m with f = 525
        expected = np.array([10 * 2.0 / 525.0, 0.0, 0.0])
        np.testing.assert_allclose(
            estimator.estimated_pose.se3.translation, expected, atol=5e-3
        )
        assert estimator.estimated_pose.se3.rotation_angle_to(SE3.identity()) < 0.01
