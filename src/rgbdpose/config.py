"""Estimator configuration."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


@dataclass
class FeatureParameters:
    """Keypoint detection parameters.

    Attributes:
        detector: "orb" (binary descriptors) or "sift" (float descriptors)
        n_features: Maximum number of keypoints kept per image
        scale_factor: ORB pyramid decimation ratio
        n_levels: ORB pyramid levels
        edge_threshold: ORB border margin in pixels
        fast_threshold: ORB FAST corner threshold
        min_depth: Depth samples below this (meters) count as missing
        max_depth: Depth samples above this (meters) count as missing
    """

    detector: str = "orb"
    n_features: int = 1000
    scale_factor: float = 1.2
    n_levels: int = 8
    edge_threshold: int = 31
    fast_threshold: int = 20
    min_depth: float = 0.1
    max_depth: float = 10.0

    def __post_init__(self) -> None:
        if self.detector not in ("orb", "sift"):
            raise ValueError(f"Unknown detector: {self.detector}")


@dataclass
class EstimatorConfig:
    """Tunables of ``RelativePoseEstimator``.

    Attributes:
        min_matches: Raw descriptor matches needed to attempt a solve
        min_depth_matches: Matches with depth on both sides needed to solve
        match_ratio_squared: Squared nearest / second-nearest distance ratio
        min_inlier_ratio: Solver inliers as a fraction of the depth matches
            below which the estimate is rejected
        max_normalized_residual: Mean inlier residual above which the
            estimate is rejected
        use_depth_residual: Score pairs with the 3D distance instead of the
            image-plane reprojection distance
        refine_with_rgbd_icp: Run dense RGBD-ICP after the robust solve
        num_refinement_samples: Source cloud size handed to RGBD-ICP
        features: Keypoint detection parameters
    """

    min_matches: int = 10
    min_depth_matches: int = 10
    match_ratio_squared: float = 0.8 * 0.8
    min_inlier_ratio: float = 0.5
    max_normalized_residual: float = 0.005
    use_depth_residual: bool = False
    refine_with_rgbd_icp: bool = False
    num_refinement_samples: int = 1000
    features: FeatureParameters = field(default_factory=FeatureParameters)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EstimatorConfig:
        """Build a config from a plain mapping, nested ``features`` allowed.

        Raises:
            ValueError: On unknown keys
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown estimator options: {sorted(unknown)}")

        feature_data = data.pop("features", None) or {}
        feature_known = {f.name for f in fields(FeatureParameters)}
        unknown = set(feature_data) - feature_known
        if unknown:
            raise ValueError(f"Unknown feature options: {sorted(unknown)}")

        return cls(features=FeatureParameters(**feature_data), **data)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> EstimatorConfig:
        """Load a config from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file is not a mapping or has unknown keys
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid estimator config in {yaml_path}")

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
