"""Robust rigid pose estimation from 3D / depth-observation correspondences.

Each correspondence pairs a target world point with a source observation
(x, y, depth) made by the camera whose pose is sought. The observation is
lifted with the seed pose's intrinsics to a camera-local point, so minimal
samples of three pairs give a full pose hypothesis by rigid alignment.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from scipy.optimize import least_squares

from ..geometry import SE3, CameraPose

logger = logging.getLogger(__name__)


@dataclass
class SolverResult:
    """Result of a robust pose solve.

    Attributes:
        success: True if a pose with enough inliers was found
        pose: Estimated camera pose, same camera frame as the seed. None if
            the solve failed.
        inliers: (N,) bool mask over the input pairs
        num_inliers: Number of inlier pairs
        error: Sum of inlier residuals. Divide by num_inliers to compare
            against a per-pair tolerance.
    """

    success: bool
    pose: CameraPose | None
    inliers: np.ndarray
    num_inliers: int
    error: float

    @classmethod
    def failure(cls, n_pairs: int) -> SolverResult:
        return cls(
            success=False,
            pose=None,
            inliers=np.zeros(n_pairs, dtype=bool),
            num_inliers=0,
            error=float("inf"),
        )


class RobustPoseSolver(ABC):
    """Outlier-tolerant rigid pose solver."""

    @abstractmethod
    def solve(
        self,
        seed_pose: CameraPose,
        target_points: np.ndarray,
        source_observations: np.ndarray,
        use_depth: bool = False,
    ) -> SolverResult:
        """Estimate the pose of the camera that made the source observations.

        Args:
            seed_pose: Initial estimate; its intrinsics interpret observations
            target_points: Nx3 world points
            source_observations: Nx3 (x, y, depth) observations
            use_depth: Score pairs with the 3D distance instead of the
                image-plane reprojection distance
        """


def kabsch(source: np.ndarray, target: np.ndarray) -> SE3:
    """Least-squares rigid transform T with T(source[i]) ~ target[i].

    Args:
        source: Nx3 points (N >= 3)
        target: Nx3 points

    Returns:
        SE3 mapping source points onto target points
    """
    source = np.asarray(source, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    if source.shape != target.shape or source.ndim != 2 or source.shape[1] != 3:
        raise ValueError(
            f"Point sets must both be Nx3, got {source.shape} and {target.shape}"
        )

    source_mean = source.mean(axis=0)
    target_mean = target.mean(axis=0)
    H = (source - source_mean).T @ (target - target_mean)

    U, _, Vt = np.linalg.svd(H)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        # Reflection, flip the weakest axis
        Vt[-1, :] *= -1
        R = Vt.T @ U.T

    t = target_mean - R @ source_mean
    return SE3(rotation=R, translation=t)


def _is_degenerate(points: np.ndarray, min_area: float = 1e-6) -> bool:
    """Return True if three points are (nearly) collinear."""
    area = np.linalg.norm(np.cross(points[1] - points[0], points[2] - points[0]))
    return bool(area < min_area)


class RansacPoseSolver(RobustPoseSolver):
    """RANSAC over minimal 3-point samples, then refit on the inliers.

    Residuals are either metric 3D distances (``use_depth=True``) or
    distances in normalized image coordinates (``use_depth=False``), i.e.
    pixel errors divided by the focal length. The same ``inlier_threshold``
    applies to whichever residual is used.
    """

    sample_size = 3

    def __init__(
        self,
        inlier_threshold: float = 0.02,
        confidence: float = 0.99,
        max_iterations: int = 200,
        min_inliers: int = 6,
        refine_with_all_inliers: bool = True,
        seed: int | None = 0,
    ) -> None:
        """Initialize the solver.

        Args:
            inlier_threshold: Per-pair residual below which a pair is an inlier
            confidence: Probability of drawing at least one outlier-free
                sample, used to stop early
            max_iterations: Maximum number of samples drawn
            min_inliers: Minimum inliers for a successful solve
            refine_with_all_inliers: Polish the refit with non-linear least
                squares on the chosen residual
            seed: Random generator seed. A fresh generator is created for
                every solve, so equal inputs give equal outputs. None draws
                fresh entropy (non-deterministic).
        """
        self._inlier_threshold = inlier_threshold
        self._confidence = confidence
        self._max_iterations = max_iterations
        self._min_inliers = max(min_inliers, self.sample_size)
        self._refine = refine_with_all_inliers
        self._seed = seed

    def solve(
        self,
        seed_pose: CameraPose,
        target_points: np.ndarray,
        source_observations: np.ndarray,
        use_depth: bool = False,
    ) -> SolverResult:
        target_points = np.asarray(target_points, dtype=np.float64).reshape(-1, 3)
        observations = np.asarray(source_observations, dtype=np.float64).reshape(-1, 3)
        if len(target_points) != len(observations):
            raise ValueError(
                f"Got {len(target_points)} target points for "
                f"{len(observations)} source observations"
            )

        n_pairs = len(target_points)
        if n_pairs < self._min_inliers:
            return SolverResult.failure(n_pairs)

        intrinsics = seed_pose.intrinsics
        local_points = intrinsics.unproject(observations[:, :2], observations[:, 2])
        normalized_obs = intrinsics.normalize(observations[:, :2])

        def residuals(se3: SE3) -> np.ndarray:
            if use_depth:
                return np.linalg.norm(
                    se3.transform_points(local_points) - target_points, axis=1
                )
            return self._reprojection_residuals(se3, target_points, normalized_obs)

        best_se3, best_mask = self._ransac(
            seed_pose, local_points, target_points, residuals
        )
        if best_se3 is None or best_mask.sum() < self._min_inliers:
            logger.debug("RANSAC found no pose with enough inliers")
            return SolverResult.failure(n_pairs)

        # Refit on inliers, re-score, and refit once more on the final set
        se3, mask = best_se3, best_mask
        for _ in range(2):
            refit = kabsch(local_points[mask], target_points[mask])
            if self._refine:
                refit = self._polish(
                    refit, local_points[mask], target_points[mask],
                    normalized_obs[mask], use_depth,
                )
            new_mask = residuals(refit) < self._inlier_threshold
            if new_mask.sum() < self._min_inliers:
                break
            se3, mask = refit, new_mask

        if not se3.is_finite():
            return SolverResult.failure(n_pairs)

        r = residuals(se3)
        mask = np.nan_to_num(r, nan=np.inf) < self._inlier_threshold
        num_inliers = int(mask.sum())
        if num_inliers < self._min_inliers:
            return SolverResult.failure(n_pairs)

        error = float(np.sum(r[mask]))
        logger.debug(
            "RANSAC pose: %d/%d inliers, summed residual %.6f",
            num_inliers,
            n_pairs,
            error,
        )
        return SolverResult(
            success=True,
            pose=seed_pose.with_se3(se3),
            inliers=mask,
            num_inliers=num_inliers,
            error=error,
        )

    def _ransac(
        self,
        seed_pose: CameraPose,
        local_points: np.ndarray,
        target_points: np.ndarray,
        residuals,
    ) -> tuple[SE3 | None, np.ndarray]:
        """Return the hypothesis with the most inliers and its inlier mask."""
        n_pairs = len(local_points)
        rng = np.random.default_rng(self._seed)

        best_se3: SE3 | None = None
        best_mask = np.zeros(n_pairs, dtype=bool)
        best_count = -1
        best_cost = np.inf

        def score(se3: SE3) -> None:
            nonlocal best_se3, best_mask, best_count, best_cost
            r = np.nan_to_num(residuals(se3), nan=np.inf)
            mask = r < self._inlier_threshold
            count = int(mask.sum())
            # Truncated cost breaks ties between equal inlier counts
            cost = float(np.sum(r[mask]) + (n_pairs - count) * self._inlier_threshold)
            if count > best_count or (count == best_count and cost < best_cost):
                best_se3, best_mask, best_count, best_cost = se3, mask, count, cost

        if seed_pose.is_valid and seed_pose.se3.is_finite():
            score(seed_pose.se3)

        n_iterations = self._max_iterations
        iteration = 0
        while iteration < n_iterations:
            iteration += 1
            sample = rng.choice(n_pairs, size=self.sample_size, replace=False)
            if _is_degenerate(local_points[sample]) or _is_degenerate(
                target_points[sample]
            ):
                continue

            score(kabsch(local_points[sample], target_points[sample]))
            n_iterations = min(
                n_iterations, self._required_iterations(best_count / n_pairs)
            )

        return best_se3, best_mask

    def _required_iterations(self, inlier_ratio: float) -> int:
        """Samples needed to hit an all-inlier sample with the set confidence."""
        p_good = inlier_ratio**self.sample_size
        if p_good >= 1.0:
            return 1
        if p_good <= 0.0:
            return self._max_iterations
        required = math.log(1.0 - self._confidence) / math.log(1.0 - p_good)
        return min(self._max_iterations, max(1, int(math.ceil(required))))

    @staticmethod
    def _reprojection_residuals(
        se3: SE3, target_points: np.ndarray, normalized_obs: np.ndarray
    ) -> np.ndarray:
        """Image-plane distance between projected targets and observations."""
        camera_points = se3.inverse().transform_points(target_points)
        z = camera_points[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            projected = camera_points[:, :2] / z[:, None]
        r = np.linalg.norm(projected - normalized_obs, axis=1)
        r[~(z > 0)] = np.inf
        return r

    @staticmethod
    def _polish(
        se3: SE3,
        local_points: np.ndarray,
        target_points: np.ndarray,
        normalized_obs: np.ndarray,
        use_depth: bool,
    ) -> SE3:
        """Minimize the chosen residual over the 6-DoF pose."""

        def fun(x: np.ndarray) -> np.ndarray:
            candidate = SE3.from_rvec_tvec(x[:3], x[3:])
            if use_depth:
                return (candidate.transform_points(local_points) - target_points).ravel()
            camera_points = candidate.inverse().transform_points(target_points)
            z = np.maximum(camera_points[:, 2], 1e-9)
            return (camera_points[:, :2] / z[:, None] - normalized_obs).ravel()

        rvec, tvec = se3.to_rvec_tvec()
        x0 = np.concatenate([rvec, tvec])
        initial_cost = 0.5 * float(np.sum(fun(x0) ** 2))
        if initial_cost == 0.0:
            return se3

        result = least_squares(fun, x0, method="trf", loss="linear", xtol=1e-12)
        if not np.isfinite(result.x).all() or result.cost > initial_cost:
            return se3
        return SE3.from_rvec_tvec(result.x[:3], result.x[3:])
