"""Relative pose estimation between two RGB-D frames from color features."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .config import EstimatorConfig
from .errors import PreconditionError
from .features import Correspondences, FeatureExtractor, FeatureSet, OpenCVFeatureExtractor
from .frame import RGBDFrame, RGBDProcessor
from .geometry import CameraFrame, CameraPose
from .registration import (
    DenseRefiner,
    NormalCloudSampler,
    OrientedPointCloud,
    PointCloudSampler,
    RefinementResult,
    RGBDICPRefiner,
)
from .solver import RansacPoseSolver, RobustPoseSolver

logger = logging.getLogger(__name__)


class EstimatorState(Enum):
    """Lifecycle of the estimator's cached state."""

    NO_TARGET = "NO_TARGET"
    TARGET_SET = "TARGET_SET"
    POSE_ESTIMATED = "POSE_ESTIMATED"


class EstimationStatus(Enum):
    """Outcome of a single ``estimate_new_pose`` call."""

    OK = "OK"
    NOT_ENOUGH_MATCHES = "NOT_ENOUGH_MATCHES"
    NOT_ENOUGH_DEPTH_MATCHES = "NOT_ENOUGH_DEPTH_MATCHES"
    SOLVER_FAILED = "SOLVER_FAILED"
    TOO_FEW_INLIERS = "TOO_FEW_INLIERS"
    RESIDUAL_TOO_HIGH = "RESIDUAL_TOO_HIGH"


@dataclass
class EstimatorTiming:
    """Timing breakdown for a single estimation."""

    extract_ms: float = 0.0
    matching_ms: float = 0.0
    solve_ms: float = 0.0
    refine_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class EstimationResult:
    """Diagnostics of the most recent estimation.

    Attributes:
        status: Why the estimation succeeded or failed
        pose: Estimated source pose (depth camera), None on failure
        num_matches: Raw descriptor matches
        num_depth_matches: Matches with depth on both sides
        num_inliers: Robust solver inliers
        normalized_error: Mean residual of the solver inliers
        refined: True if RGBD-ICP replaced the solver pose
        refinement_failed: True if RGBD-ICP ran and failed; the solver pose
            was kept
        timing: Per-stage timing
    """

    status: EstimationStatus
    pose: CameraPose | None = None
    num_matches: int = 0
    num_depth_matches: int = 0
    num_inliers: int = 0
    normalized_error: float = float("inf")
    refined: bool = False
    refinement_failed: bool = False
    timing: EstimatorTiming = field(default_factory=EstimatorTiming)

    @property
    def success(self) -> bool:
        return self.status == EstimationStatus.OK


class RelativePoseEstimator:
    """Estimates the pose of a source RGB-D frame relative to a target frame.

    Pipeline for ``estimate_new_pose``:
    1. Extract target keypoints (cached) and back-project them with the
       target pose, in the color camera
    2. Extract source keypoints
    3. Match descriptors (ratio test)
    4. Robust pose from target 3D points / source (x, y, depth) observations
    5. Optional RGBD-ICP refinement on oriented point clouds

    Matching and solving happen in the color camera, since keypoints live in
    the color image. Poses enter and leave in the depth camera.

    Not thread-safe: use one estimator per worker.
    """

    def __init__(
        self,
        config: EstimatorConfig | None = None,
        feature_extractor: FeatureExtractor | None = None,
        solver: RobustPoseSolver | None = None,
        sampler: PointCloudSampler | None = None,
        refiner: DenseRefiner | None = None,
        processor: RGBDProcessor | None = None,
    ) -> None:
        """Initialize the estimator.

        Collaborators default to the OpenCV / RANSAC / RGBD-ICP
        implementations of this package.
        """
        self._config = config or EstimatorConfig()
        self._extractor = feature_extractor or OpenCVFeatureExtractor()
        self._solver = solver or RansacPoseSolver()
        self._sampler = sampler or NormalCloudSampler()
        self._refiner = refiner or RGBDICPRefiner()
        self._processor = processor or RGBDProcessor()

        # Target state, cached across calls
        self._target_frame: RGBDFrame | None = None
        self._target_features = FeatureSet()
        self._target_pose = CameraPose.invalid(CameraFrame.DEPTH)

        # Source state, replaced on every set_source_image
        self._source_frame: RGBDFrame | None = None
        self._source_features = FeatureSet()

        self._estimated_pose: CameraPose | None = None
        self._num_matches = 0
        self._last_result: EstimationResult | None = None
        self._state = EstimatorState.NO_TARGET

    def set_target_image(
        self, frame: RGBDFrame, features: FeatureSet | None = None
    ) -> None:
        """Set the reference frame.

        The target pose is taken from the frame unless one was set with
        ``set_target_pose``. Cached target features are dropped, or replaced
        by ``features`` if given.
        """
        if frame.calibration is None:
            raise PreconditionError("Image must be calibrated.")

        self._target_frame = frame
        if not self._target_pose.is_valid:
            self._target_pose = frame.depth_pose
        self._target_features = features if features is not None else FeatureSet()
        self._state = EstimatorState.TARGET_SET

    def set_target_pose(self, pose: CameraPose) -> None:
        """Override the target pose (depth camera).

        Target 3D feature locations depend on the pose, so cached target
        features are dropped.
        """
        pose.require_frame(CameraFrame.DEPTH)
        self._target_pose = pose
        self._target_features = FeatureSet()

    def set_source_image(
        self, frame: RGBDFrame, features: FeatureSet | None = None
    ) -> None:
        """Set the frame whose pose is estimated by the next call."""
        if frame.calibration is None:
            raise PreconditionError("Image must be calibrated.")

        self._source_frame = frame
        self._source_features = features if features is not None else FeatureSet()
        self._state = (
            EstimatorState.TARGET_SET
            if self._target_frame is not None
            else EstimatorState.NO_TARGET
        )

    def reset_target(self) -> None:
        """Forget the target frame, its features and every pose."""
        self._target_frame = None
        self._target_features = FeatureSet()
        self._target_pose = CameraPose.invalid(CameraFrame.DEPTH)
        self._estimated_pose = None
        self._state = EstimatorState.NO_TARGET

    def estimate_new_pose(self) -> bool:
        """Estimate the source frame pose.

        Returns:
            True on success, the pose is then available as ``estimated_pose``.
            False on a data-dependent failure; ``last_result.status`` says why.

        Raises:
            PreconditionError: If a frame is missing or the source frame has
                no mapped depth
        """
        if self._source_frame is None:
            raise PreconditionError("You must call set_source_image before!")
        if self._target_frame is None:
            raise PreconditionError("You must call set_target_image before!")

        source_frame = self._source_frame
        if not source_frame.has_mapped_depth:
            raise PreconditionError("Image must have depth mapping.")

        timing = EstimatorTiming()
        t_start = time.perf_counter()

        # Stage 1: Features
        t0 = time.perf_counter()
        if self._target_features.is_empty():
            self._compute_target_features()
        elif not self._target_features.has_3d_locations:
            self._target_features.compute_3d_locations(self._target_color_pose())

        if self._source_features.is_empty():
            self._source_features = self._extractor.extract(
                source_frame, self._config.features
            )
        timing.extract_ms = (time.perf_counter() - t0) * 1000

        # Stage 2: Matching
        t0 = time.perf_counter()
        matches = self._extractor.match(
            self._target_features,
            self._source_features,
            self._config.match_ratio_squared,
        )
        timing.matching_ms = (time.perf_counter() - t0) * 1000

        self._num_matches = len(matches)
        logger.debug("%d feature matches", self._num_matches)

        if self._num_matches < self._config.min_matches:
            return self._fail(EstimationStatus.NOT_ENOUGH_MATCHES, timing, t_start)

        # Stage 3: Robust pose, in the color camera of the source frame
        calibration = source_frame.calibration
        working_pose = self._target_pose.to_color_camera(calibration)

        target_points, source_observations = self._build_pairs(matches)
        num_depth_matches = len(target_points)
        if num_depth_matches < self._config.min_depth_matches:
            logger.debug("Not enough matches with depth: %d", num_depth_matches)
            return self._fail(
                EstimationStatus.NOT_ENOUGH_DEPTH_MATCHES,
                timing,
                t_start,
                num_depth_matches=num_depth_matches,
            )

        t0 = time.perf_counter()
        solve = self._solver.solve(
            working_pose,
            target_points,
            source_observations,
            use_depth=self._config.use_depth_residual,
        )
        timing.solve_ms = (time.perf_counter() - t0) * 1000

        if not solve.success:
            return self._fail(
                EstimationStatus.SOLVER_FAILED,
                timing,
                t_start,
                num_depth_matches=num_depth_matches,
            )

        # Noisy pairs leave the inlier set, so judge the inlier share as well
        inlier_ratio = solve.num_inliers / num_depth_matches
        if inlier_ratio < self._config.min_inlier_ratio:
            logger.debug("Inlier ratio too low: %.2f", inlier_ratio)
            return self._fail(
                EstimationStatus.TOO_FEW_INLIERS,
                timing,
                t_start,
                num_depth_matches=num_depth_matches,
                num_inliers=solve.num_inliers,
            )

        normalized_error = solve.error / solve.num_inliers
        logger.debug("Mean inlier residual %.6f", normalized_error)
        if normalized_error > self._config.max_normalized_residual:
            return self._fail(
                EstimationStatus.RESIDUAL_TOO_HIGH,
                timing,
                t_start,
                num_depth_matches=num_depth_matches,
                num_inliers=solve.num_inliers,
                normalized_error=normalized_error,
            )
        working_pose = solve.pose

        # Stage 4: Dense refinement (best effort)
        refined = False
        refinement_failed = False
        if self._config.refine_with_rgbd_icp:
            t0 = time.perf_counter()
            refinement = self._refine_with_rgbd_icp(
                working_pose,
                target_points[solve.inliers],
                source_observations[solve.inliers],
            )
            timing.refine_ms = (time.perf_counter() - t0) * 1000
            if refinement.success:
                working_pose = refinement.pose
                refined = True
            else:
                logger.warning("RGBD-ICP failed: %s", refinement.message)
                refinement_failed = True

        # Back to the depth camera for downstream consumers
        self._estimated_pose = working_pose.to_depth_camera(calibration)
        self._state = EstimatorState.POSE_ESTIMATED

        timing.total_ms = (time.perf_counter() - t_start) * 1000
        self._last_result = EstimationResult(
            status=EstimationStatus.OK,
            pose=self._estimated_pose,
            num_matches=self._num_matches,
            num_depth_matches=num_depth_matches,
            num_inliers=solve.num_inliers,
            normalized_error=normalized_error,
            refined=refined,
            refinement_failed=refinement_failed,
            timing=timing,
        )
        return True

    def _target_color_pose(self) -> CameraPose:
        return self._target_pose.to_color_camera(self._target_frame.calibration)

    def _compute_target_features(self) -> None:
        """Extract target keypoints and back-project them to world."""
        self._target_features = self._extractor.extract(
            self._target_frame, self._config.features
        )
        self._target_features.compute_3d_locations(self._target_color_pose())

    def _build_pairs(
        self, matches: Correspondences
    ) -> tuple[np.ndarray, np.ndarray]:
        """Pair target world points with source (x, y, depth) observations.

        Matches whose source keypoint has no depth are skipped.
        """
        target_locations = self._target_features.locations
        source_locations = self._source_features.locations

        target_points = []
        source_observations = []
        for target_idx, source_idx in matches:
            target_loc = target_locations[target_idx]
            if not target_loc.has_depth or target_loc.p3d is None:
                raise PreconditionError("Match without depth, should not appear")

            source_loc = source_locations[source_idx]
            if not source_loc.has_depth:
                continue

            target_points.append(target_loc.p3d)
            source_observations.append(
                (source_loc.pt[0], source_loc.pt[1], source_loc.depth)
            )

        if len(target_points) == 0:
            return np.empty((0, 3)), np.empty((0, 3))
        return (
            np.array(target_points, dtype=np.float64),
            np.array(source_observations, dtype=np.float64),
        )

    def _refine_with_rgbd_icp(
        self,
        pose: CameraPose,
        target_points: np.ndarray,
        source_observations: np.ndarray,
    ) -> RefinementResult:
        """Align filtered point clouds of both frames, seeded with pose."""
        filtered_source = self._source_frame.copy()
        filtered_target = self._target_frame.copy()
        for frame in (filtered_source, filtered_target):
            self._processor.bilateral_filter(frame)
            self._processor.compute_normals(frame)

        source_cloud = OrientedPointCloud.from_frame(filtered_source)
        target_cloud = OrientedPointCloud.from_frame(filtered_target)
        sampled_source = self._sampler.subsample(
            source_cloud, self._config.num_refinement_samples
        )
        logger.debug(
            "RGBD-ICP with %d source samples, %d target points, %d feature pairs",
            len(sampled_source),
            len(target_cloud),
            len(target_points),
        )

        return self._refiner.refine(
            seed_pose=pose,
            target_pose=self._target_color_pose(),
            source_cloud=sampled_source,
            target_cloud=target_cloud,
            target_points=target_points,
            source_observations=source_observations,
        )

    def _fail(
        self,
        status: EstimationStatus,
        timing: EstimatorTiming,
        t_start: float,
        **counts,
    ) -> bool:
        timing.total_ms = (time.perf_counter() - t_start) * 1000
        self._estimated_pose = None
        self._state = EstimatorState.TARGET_SET
        self._last_result = EstimationResult(
            status=status, num_matches=self._num_matches, timing=timing, **counts
        )
        logger.debug("Pose estimation failed: %s", status.value)
        return False

    @property
    def estimated_pose(self) -> CameraPose | None:
        """Pose of the source frame (depth camera) after a successful call."""
        return self._estimated_pose

    @property
    def num_matches(self) -> int:
        """Raw descriptor matches of the last call."""
        return self._num_matches

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def last_result(self) -> EstimationResult | None:
        return self._last_result

    @property
    def target_pose(self) -> CameraPose:
        return self._target_pose

    @property
    def target_features(self) -> FeatureSet:
        return self._target_features

    @property
    def source_features(self) -> FeatureSet:
        return self._source_features
