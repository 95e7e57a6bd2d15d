"""Shared synthetic RGB-D fixtures."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from rgbdpose import (
    SE3,
    Calibration,
    CameraFrame,
    CameraIntrinsics,
    CameraPose,
    FeatureParameters,
    FeaturePoint,
    FeatureSet,
    OpenCVFeatureExtractor,
    RGBDFrame,
)

COLOR_INTRINSICS = CameraIntrinsics(fx=525.0, fy=525.0, cx=319.5, cy=239.5)
DEPTH_INTRINSICS = CameraIntrinsics(fx=575.8, fy=575.8, cx=314.5, cy=235.5)
IMAGE_SHAPE = (480, 640)


def make_frame(
    calibration: Calibration | None,
    pose: CameraPose | None = None,
    mapped_depth: bool = True,
) -> RGBDFrame:
    """Blank frame; synthetic tests inject features directly."""
    return RGBDFrame(
        color=np.zeros(IMAGE_SHAPE, dtype=np.uint8),
        depth=np.zeros(IMAGE_SHAPE, dtype=np.float32),
        calibration=calibration,
        mapped_depth=np.zeros(IMAGE_SHAPE, dtype=np.float32) if mapped_depth else None,
        pose=pose,
    )


def feature_set_from_observations(
    observations: np.ndarray, descriptors: np.ndarray
) -> FeatureSet:
    """Build a fresh FeatureSet from Nx3 (x, y, depth) rows."""
    locations = [
        FeaturePoint(pt=(float(x), float(y)), depth=float(d))
        for x, y, d in observations
    ]
    return FeatureSet(locations, descriptors.copy())


@dataclass
class SyntheticScene:
    """Two frames observing the same world points."""

    target_frame: RGBDFrame
    source_frame: RGBDFrame
    world_points: np.ndarray
    descriptors: np.ndarray
    target_observations: np.ndarray
    source_observations: np.ndarray
    source_depth_pose: CameraPose

    def target_features(self) -> FeatureSet:
        return feature_set_from_observations(self.target_observations, self.descriptors)

    def source_features(self) -> FeatureSet:
        return feature_set_from_observations(self.source_observations, self.descriptors)

    def extractor(self) -> SceneExtractor:
        return SceneExtractor(self)


class SceneExtractor(OpenCVFeatureExtractor):
    """Returns the scene's keypoints instead of detecting them.

    Matching is the real descriptor matcher.
    """

    def __init__(self, scene: SyntheticScene) -> None:
        super().__init__()
        self.scene = scene
        self.calls = 0

    def extract(self, frame: RGBDFrame, params: FeatureParameters) -> FeatureSet:
        self.calls += 1
        if frame is self.scene.target_frame:
            return self.scene.target_features()
        return self.scene.source_features()


@pytest.fixture
def calibration() -> Calibration:
    """Kinect-like calibration with a small rotation between the cameras."""
    R = SE3.from_rvec_tvec([0.0, 0.01, -0.005], [0.0, 0.0, 0.0]).rotation
    return Calibration(
        color_intrinsics=COLOR_INTRINSICS,
        depth_intrinsics=DEPTH_INTRINSICS,
        R=R,
        T=[0.025, 0.001, -0.002],
    )


@pytest.fixture
def make_scene(calibration: Calibration):
    """Factory for synthetic two-frame scenes.

    The target depth camera sits at the origin; the source depth camera is
    displaced by ``source_translation`` (pure translation by default).
    """

    def _make(
        n_points: int = 50,
        source_translation=(0.1, 0.0, 0.0),
        source_rotation=(0.0, 0.0, 0.0),
        pixel_noise: float = 0.0,
        depth_noise: float = 0.0,
        seed: int = 0,
    ) -> SyntheticScene:
        rng = np.random.default_rng(seed)

        target_depth_pose = CameraPose(
            se3=SE3.identity(), intrinsics=DEPTH_INTRINSICS, frame=CameraFrame.DEPTH
        )
        source_depth_pose = CameraPose(
            se3=SE3.from_rvec_tvec(source_rotation, source_translation),
            intrinsics=DEPTH_INTRINSICS,
            frame=CameraFrame.DEPTH,
        )
        target_color = target_depth_pose.to_color_camera(calibration)
        source_color = source_depth_pose.to_color_camera(calibration)

        z = rng.uniform(1.5, 3.0, n_points)
        local = np.column_stack(
            [
                rng.uniform(-0.4, 0.4, n_points) * z,
                rng.uniform(-0.3, 0.3, n_points) * z,
                z,
            ]
        )
        world = target_color.se3.transform_points(local)

        target_obs = target_color.project(world)
        source_obs = source_color.project(world)
        source_obs[:, :2] += rng.normal(0.0, pixel_noise, (n_points, 2)) if pixel_noise else 0.0
        source_obs[:, 2] += rng.normal(0.0, depth_noise, n_points) if depth_noise else 0.0

        descriptors = rng.standard_normal((n_points, 32)).astype(np.float32)

        return SyntheticScene(
            target_frame=make_frame(calibration, pose=target_depth_pose),
            source_frame=make_frame(calibration),
            world_points=world,
            descriptors=descriptors,
            target_observations=target_obs,
            source_observations=source_obs,
            source_depth_pose=source_depth_pose,
        )

    return _make
