"""Camera intrinsics, RGB-D calibration and frame-tagged camera poses.

An RGB-D sensor is two physically distinct cameras: the depth camera and the
color camera, related by a fixed extrinsic transform

    p_color = R @ p_depth + T

A ``CameraPose`` always carries a ``CameraFrame`` tag telling which of the two
cameras it describes, and the intrinsics of that camera. The only way to move
a pose from one tag to the other is ``to_color_camera`` / ``to_depth_camera``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..errors import FrameMismatchError
from .se3 import SE3


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera intrinsic parameters."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def unproject(self, pixels: np.ndarray, depths: np.ndarray) -> np.ndarray:
        """Lift pixels with metric depth to camera-local 3D points.

        Args:
            pixels: Nx2 array of (x, y) pixel coordinates
            depths: (N,) depth along the optical axis

        Returns:
            Nx3 array of points in the camera frame
        """
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        depths = np.asarray(depths, dtype=np.float64).reshape(-1)
        x = (pixels[:, 0] - self.cx) * depths / self.fx
        y = (pixels[:, 1] - self.cy) * depths / self.fy
        return np.column_stack([x, y, depths])

    def project(self, points: np.ndarray) -> np.ndarray:
        """Project camera-local points to (x, y, depth).

        Points with non-positive depth project to NaN pixel coordinates.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        z = points[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            safe_z = np.where(z > 0, z, np.nan)
            x = self.fx * points[:, 0] / safe_z + self.cx
            y = self.fy * points[:, 1] / safe_z + self.cy
        return np.column_stack([x, y, z])

    def normalize(self, pixels: np.ndarray) -> np.ndarray:
        """Convert Nx2 pixels to normalized image-plane coordinates."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        return np.column_stack(
            [(pixels[:, 0] - self.cx) / self.fx, (pixels[:, 1] - self.cy) / self.fy]
        )


@dataclass(frozen=True)
class Calibration:
    """RGB-D sensor calibration.

    Attributes:
        color_intrinsics: Intrinsics of the color camera
        depth_intrinsics: Intrinsics of the depth camera
        R: 3x3 rotation from the depth camera to the color camera
        T: (3,) translation from the depth camera to the color camera
    """

    color_intrinsics: CameraIntrinsics
    depth_intrinsics: CameraIntrinsics
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    T: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        R = np.array(self.R, dtype=np.float64)
        T = np.array(self.T, dtype=np.float64).flatten()
        if R.shape != (3, 3):
            raise ValueError(f"Extrinsic R must be 3x3, got {R.shape}")
        if T.shape != (3,):
            raise ValueError(f"Extrinsic T must be (3,), got {T.shape}")
        R.setflags(write=False)
        T.setflags(write=False)
        object.__setattr__(self, "R", R)
        object.__setattr__(self, "T", T)

    @property
    def depth_to_color(self) -> SE3:
        """Return the extrinsic as T_color_depth."""
        return SE3(rotation=self.R, translation=self.T)

    def map_depth_to_color(
        self, depth: np.ndarray, color_shape: tuple[int, int]
    ) -> np.ndarray:
        """Resample a depth image into the color camera pixel grid.

        Every valid depth pixel is lifted with the depth intrinsics, moved
        into the color camera and splatted to its nearest color pixel. When
        several depth pixels land on the same color pixel the closest wins.

        Args:
            depth: HxW float depth image in meters (0 = no measurement)
            color_shape: (height, width) of the color image

        Returns:
            float32 depth image with the color image's height and width
        """
        height, width = color_shape[:2]
        mapped = np.full((height, width), np.inf, dtype=np.float64)

        vs, us = np.nonzero(depth > 0)
        if len(us) == 0:
            return np.zeros((height, width), dtype=np.float32)

        pixels = np.column_stack([us, vs]).astype(np.float64)
        points_depth = self.depth_intrinsics.unproject(pixels, depth[vs, us])
        points_color = self.depth_to_color.transform_points(points_depth)
        projected = self.color_intrinsics.project(points_color)

        valid = np.isfinite(projected[:, 0]) & (projected[:, 2] > 0)
        cols = np.round(projected[valid, 0]).astype(np.int64)
        rows = np.round(projected[valid, 1]).astype(np.int64)
        z = projected[valid, 2]

        inside = (cols >= 0) & (cols < width) & (rows >= 0) & (rows < height)
        np.minimum.at(mapped, (rows[inside], cols[inside]), z[inside])

        mapped[~np.isfinite(mapped)] = 0.0
        return mapped.astype(np.float32)


class CameraFrame(Enum):
    """Which of the two sensor cameras a pose describes."""

    DEPTH = "depth"
    COLOR = "color"


@dataclass(frozen=True)
class CameraPose:
    """Camera-to-world transform tagged with the camera it belongs to.

    Attributes:
        se3: T_world_camera
        intrinsics: Intrinsics used to project with this pose
        frame: Camera frame tag
        is_valid: False for the placeholder returned by ``CameraPose.invalid``
    """

    se3: SE3
    intrinsics: CameraIntrinsics
    frame: CameraFrame
    is_valid: bool = True

    @classmethod
    def invalid(cls, frame: CameraFrame = CameraFrame.DEPTH) -> CameraPose:
        """Return an unset pose placeholder."""
        return cls(
            se3=SE3.identity(),
            intrinsics=CameraIntrinsics(1.0, 1.0, 0.0, 0.0),
            frame=frame,
            is_valid=False,
        )

    def require_frame(self, frame: CameraFrame) -> None:
        """Raise FrameMismatchError unless this pose is tagged ``frame``."""
        if self.frame is not frame:
            raise FrameMismatchError(
                f"Expected a {frame.value}-camera pose, got a "
                f"{self.frame.value}-camera pose"
            )

    def with_se3(self, se3: SE3) -> CameraPose:
        """Return a copy with a new transform, same camera and intrinsics."""
        return CameraPose(
            se3=se3, intrinsics=self.intrinsics, frame=self.frame, is_valid=True
        )

    def unproject(self, pixels: np.ndarray, depths: np.ndarray) -> np.ndarray:
        """Back-project pixels with depth to world coordinates."""
        return self.se3.transform_points(self.intrinsics.unproject(pixels, depths))

    def project(self, points_world: np.ndarray) -> np.ndarray:
        """Project world points to (x, y, depth) in this camera."""
        local = self.se3.inverse().transform_points(points_world)
        return self.intrinsics.project(local)

    def to_color_camera(self, calibration: Calibration) -> CameraPose:
        """Re-express a depth-camera pose in the color camera."""
        return to_color_camera(
            self, calibration.color_intrinsics, calibration.R, calibration.T
        )

    def to_depth_camera(self, calibration: Calibration) -> CameraPose:
        """Re-express a color-camera pose in the depth camera."""
        return to_depth_camera(
            self, calibration.depth_intrinsics, calibration.R, calibration.T
        )


def to_color_camera(
    pose: CameraPose,
    color_intrinsics: CameraIntrinsics,
    R: np.ndarray,
    T: np.ndarray,
) -> CameraPose:
    """Convert a depth-camera pose to the color camera.

    T_world_color = T_world_depth @ inv(T_color_depth)
    """
    pose.require_frame(CameraFrame.DEPTH)
    color_to_depth = SE3(rotation=R, translation=T).inverse()
    return CameraPose(
        se3=pose.se3 @ color_to_depth,
        intrinsics=color_intrinsics,
        frame=CameraFrame.COLOR,
        is_valid=pose.is_valid,
    )


def to_depth_camera(
    pose: CameraPose,
    depth_intrinsics: CameraIntrinsics,
    R: np.ndarray,
    T: np.ndarray,
) -> CameraPose:
    """Convert a color-camera pose to the depth camera.

    T_world_depth = T_world_color @ T_color_depth
    """
    pose.require_frame(CameraFrame.COLOR)
    depth_to_color = SE3(rotation=R, translation=T)
    return CameraPose(
        se3=pose.se3 @ depth_to_color,
        intrinsics=depth_intrinsics,
        frame=CameraFrame.DEPTH,
        is_valid=pose.is_valid,
    )
