"""Dense pose refinement: point-to-plane ICP with color feature constraints.

The source cloud is moved by the source pose estimate and aligned with the
target cloud (moved by the target pose). Sparse color feature matches are
added as point-to-point terms so the geometry cannot slide along planar
structure the features disambiguate.

The optimization problem per iteration:
    minimize sum_i (n_i . (dT(p_i) - q_i))^2 + w * sum_j ||dT(f_j) - g_j||^2

Where:
- p_i is a source point in world, q_i / n_i its closest target point / normal
- f_j is a color feature of the source frame in world, g_j its target match
- dT is a small rigid increment applied on the left of the source pose
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from ..geometry import SE3, CameraFrame, CameraPose
from .point_cloud import OrientedPointCloud

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    """Result of dense refinement.

    Attributes:
        success: True if the alignment converged
        pose: Refined source pose (color camera). None if failed.
        iterations: Iterations performed
        num_correspondences: Cloud correspondences in the last iteration
        rms_error: Point-to-plane RMS distance at the returned pose (meters)
        message: Reason for failure, empty on success
    """

    success: bool
    pose: CameraPose | None = None
    iterations: int = 0
    num_correspondences: int = 0
    rms_error: float = float("inf")
    message: str = ""


class DenseRefiner(ABC):
    """Refines a source pose by aligning oriented point clouds."""

    @abstractmethod
    def refine(
        self,
        seed_pose: CameraPose,
        target_pose: CameraPose,
        source_cloud: OrientedPointCloud,
        target_cloud: OrientedPointCloud,
        target_points: np.ndarray | None = None,
        source_observations: np.ndarray | None = None,
    ) -> RefinementResult:
        """Align the source cloud to the target cloud starting from seed_pose.

        Args:
            seed_pose: Source camera pose estimate (color camera)
            target_pose: Target camera pose (color camera)
            source_cloud: Source cloud in the source camera frame
            target_cloud: Target cloud in the target camera frame
            target_points: Optional Nx3 world points of matched color features
            source_observations: Optional Nx3 (x, y, depth) observations of
                the same features in the source image
        """


def _skew(v: np.ndarray) -> np.ndarray:
    """Stack of skew-symmetric matrices [v]_x for Nx3 input."""
    v = np.asarray(v, dtype=np.float64).reshape(-1, 3)
    zeros = np.zeros(len(v))
    return np.stack(
        [
            np.stack([zeros, -v[:, 2], v[:, 1]], axis=1),
            np.stack([v[:, 2], zeros, -v[:, 0]], axis=1),
            np.stack([-v[:, 1], v[:, 0], zeros], axis=1),
        ],
        axis=1,
    )


class RGBDICPRefiner(DenseRefiner):
    """Gauss-Newton point-to-plane ICP with sparse feature terms."""

    def __init__(
        self,
        max_iterations: int = 30,
        max_correspondence_distance: float = 0.1,
        max_normal_angle_deg: float = 45.0,
        min_correspondences: int = 20,
        color_feature_weight: float = 1.0,
        translation_tolerance: float = 1e-5,
        rotation_tolerance: float = 1e-5,
    ) -> None:
        """Initialize the refiner.

        Args:
            max_iterations: Iterations before giving up (non-convergence)
            max_correspondence_distance: Closest-point distance (meters)
                above which a source point is left unpaired
            max_normal_angle_deg: Largest angle between paired normals
            min_correspondences: Fewer cloud pairs than this fails the run
            color_feature_weight: Weight of each feature pair relative to a
                point-to-plane pair
            translation_tolerance: Convergence threshold on the increment
                translation (meters)
            rotation_tolerance: Convergence threshold on the increment
                rotation (radians)
        """
        self._max_iterations = max_iterations
        self._max_distance = max_correspondence_distance
        self._min_normal_cos = float(np.cos(np.deg2rad(max_normal_angle_deg)))
        self._min_correspondences = min_correspondences
        self._feature_weight = color_feature_weight
        self._translation_tolerance = translation_tolerance
        self._rotation_tolerance = rotation_tolerance

    def refine(
        self,
        seed_pose: CameraPose,
        target_pose: CameraPose,
        source_cloud: OrientedPointCloud,
        target_cloud: OrientedPointCloud,
        target_points: np.ndarray | None = None,
        source_observations: np.ndarray | None = None,
    ) -> RefinementResult:
        seed_pose.require_frame(CameraFrame.COLOR)
        target_pose.require_frame(CameraFrame.COLOR)

        if len(source_cloud) < self._min_correspondences or len(target_cloud) == 0:
            return RefinementResult(success=False, message="Point clouds too small")

        target_world = target_pose.se3.transform_points(target_cloud.points)
        target_normals = target_pose.se3.rotate_vectors(target_cloud.normals)
        tree = cKDTree(target_world)

        feature_local = None
        feature_target = None
        if (
            target_points is not None
            and source_observations is not None
            and len(target_points) > 0
        ):
            observations = np.asarray(source_observations, dtype=np.float64).reshape(-1, 3)
            feature_local = seed_pose.intrinsics.unproject(
                observations[:, :2], observations[:, 2]
            )
            feature_target = np.asarray(target_points, dtype=np.float64).reshape(-1, 3)

        pose = seed_pose.se3
        num_correspondences = 0
        for iteration in range(1, self._max_iterations + 1):
            pairs = self._find_correspondences(
                pose, source_cloud, tree, target_world, target_normals
            )
            if pairs is None:
                return RefinementResult(
                    success=False,
                    iterations=iteration,
                    message="Not enough cloud correspondences",
                )
            p, q, n = pairs
            num_correspondences = len(p)

            # Point-to-plane rows: [p x n, n] . [w, t] = -n . (p - q)
            A = np.hstack([np.cross(p, n), n])
            b = -np.einsum("ij,ij->i", n, p - q)

            if feature_local is not None:
                f = pose.transform_points(feature_local)
                sw = np.sqrt(self._feature_weight)
                A_f = np.concatenate(
                    [-_skew(f), np.broadcast_to(np.eye(3), (len(f), 3, 3))], axis=2
                ).reshape(-1, 6)
                b_f = -(f - feature_target).ravel()
                A = np.vstack([A, sw * A_f])
                b = np.concatenate([b, sw * b_f])

            x, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
            if rank < 6 or not np.isfinite(x).all():
                return RefinementResult(
                    success=False,
                    iterations=iteration,
                    num_correspondences=num_correspondences,
                    message="Degenerate alignment",
                )

            increment = SE3.from_rvec_tvec(x[:3], x[3:])
            pose = increment @ pose

            if (
                np.linalg.norm(x[:3]) < self._rotation_tolerance
                and np.linalg.norm(x[3:]) < self._translation_tolerance
            ):
                rms = self._rms_error(pose, source_cloud, tree, target_world, target_normals)
                logger.debug(
                    "RGBD-ICP converged after %d iterations, %d pairs, rms %.5f",
                    iteration,
                    num_correspondences,
                    rms,
                )
                return RefinementResult(
                    success=True,
                    pose=seed_pose.with_se3(pose),
                    iterations=iteration,
                    num_correspondences=num_correspondences,
                    rms_error=rms,
                )

        return RefinementResult(
            success=False,
            iterations=self._max_iterations,
            num_correspondences=num_correspondences,
            message="Did not converge",
        )

    def _find_correspondences(
        self,
        pose: SE3,
        source_cloud: OrientedPointCloud,
        tree: cKDTree,
        target_world: np.ndarray,
        target_normals: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray] | None:
        """Closest compatible target point for every source point."""
        source_world = pose.transform_points(source_cloud.points)
        source_normals = pose.rotate_vectors(source_cloud.normals)

        distances, indices = tree.query(
            source_world, k=1, distance_upper_bound=self._max_distance
        )
        valid = np.isfinite(distances)
        safe_indices = np.where(valid, indices, 0)
        cos_angle = np.einsum(
            "ij,ij->i", source_normals, target_normals[safe_indices]
        )
        valid &= cos_angle > self._min_normal_cos

        if valid.sum() < self._min_correspondences:
            return None

        matched = safe_indices[valid]
        return source_world[valid], target_world[matched], target_normals[matched]

    def _rms_error(
        self,
        pose: SE3,
        source_cloud: OrientedPointCloud,
        tree: cKDTree,
        target_world: np.ndarray,
        target_normals: np.ndarray,
    ) -> float:
        pairs = self._find_correspondences(
            pose, source_cloud, tree, target_world, target_normals
        )
        if pairs is None:
            return float("inf")
        p, q, n = pairs
        return float(np.sqrt(np.mean(np.einsum("ij,ij->i", n, p - q) ** 2)))
