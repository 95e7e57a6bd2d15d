"""RGB-D frames and the depth filters applied before dense alignment."""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np

from .errors import PreconditionError
from .geometry import SE3, Calibration, CameraFrame, CameraPose


@dataclass
class RGBDFrame:
    """A color image with its depth measurements and calibration.

    Attributes:
        color: HxW(x3) color image (uint8)
        depth: Depth image in meters, in the depth camera grid (0 = invalid)
        calibration: Sensor calibration. Required before the frame can be
            handed to the pose estimator.
        mapped_depth: Depth resampled into the color camera grid. Required
            for depth-augmented keypoints.
        pose: Depth-camera pose of the frame, if known
        normals: Per color pixel unit normals (HxWx3, zeros where unknown),
            filled by ``RGBDProcessor.compute_normals``
    """

    color: np.ndarray
    depth: np.ndarray
    calibration: Calibration | None = None
    mapped_depth: np.ndarray | None = None
    pose: CameraPose | None = None
    normals: np.ndarray | None = field(default=None, repr=False)

    @property
    def has_mapped_depth(self) -> bool:
        return self.mapped_depth is not None and self.mapped_depth.size > 0

    @property
    def depth_pose(self) -> CameraPose:
        """Return the frame pose, defaulting to identity in the depth camera."""
        if self.pose is not None and self.pose.is_valid:
            self.pose.require_frame(CameraFrame.DEPTH)
            return self.pose
        if self.calibration is None:
            raise PreconditionError("Image must be calibrated.")
        return CameraPose(
            se3=SE3.identity(),
            intrinsics=self.calibration.depth_intrinsics,
            frame=CameraFrame.DEPTH,
        )

    def compute_mapped_depth(self) -> np.ndarray:
        """Fill ``mapped_depth`` by resampling depth into the color grid."""
        if self.calibration is None:
            raise PreconditionError("Image must be calibrated.")
        self.mapped_depth = self.calibration.map_depth_to_color(
            self.depth, self.color.shape[:2]
        )
        return self.mapped_depth

    def copy(self) -> RGBDFrame:
        """Deep-copy the images; calibration and pose are immutable and shared."""
        return RGBDFrame(
            color=self.color.copy(),
            depth=self.depth.copy(),
            calibration=self.calibration,
            mapped_depth=None if self.mapped_depth is None else self.mapped_depth.copy(),
            pose=self.pose,
            normals=None if self.normals is None else self.normals.copy(),
        )


class RGBDProcessor:
    """In-place filters preparing a frame for point cloud extraction."""

    def __init__(
        self,
        bilateral_diameter: int = 5,
        bilateral_sigma_depth: float = 0.03,
        bilateral_sigma_space: float = 4.5,
        max_depth_jump: float = 0.05,
    ) -> None:
        """Initialize the processor.

        Args:
            bilateral_diameter: Pixel neighbourhood diameter of the filter
            bilateral_sigma_depth: Range sigma in meters. Depth differences
                well above this are not smoothed together (edges survive).
            bilateral_sigma_space: Spatial sigma in pixels
            max_depth_jump: Neighbour depth difference (meters, scaled by
                depth) above which no normal is estimated
        """
        self._diameter = bilateral_diameter
        self._sigma_depth = bilateral_sigma_depth
        self._sigma_space = bilateral_sigma_space
        self._max_depth_jump = max_depth_jump

    def bilateral_filter(self, frame: RGBDFrame) -> None:
        """Edge-preserving smoothing of the depth and mapped depth images."""
        frame.depth = self._filter_depth(frame.depth)
        if frame.mapped_depth is not None:
            frame.mapped_depth = self._filter_depth(frame.mapped_depth)

    def _filter_depth(self, depth: np.ndarray) -> np.ndarray:
        depth = np.asarray(depth, dtype=np.float32)
        valid = depth > 0
        if not valid.any():
            return depth.copy()

        filtered = cv2.bilateralFilter(
            depth,
            d=self._diameter,
            sigmaColor=self._sigma_depth,
            sigmaSpace=self._sigma_space,
        )
        # Invalid pixels stay invalid
        filtered[~valid] = 0.0
        return filtered

    def compute_normals(self, frame: RGBDFrame) -> None:
        """Estimate per-pixel normals on the mapped depth image.

        Normals come from the cross product of central differences of the
        organized color-camera point map, oriented towards the camera.
        """
        if frame.calibration is None:
            raise PreconditionError("Image must be calibrated.")
        if not frame.has_mapped_depth:
            raise PreconditionError("Image must have depth mapping.")

        depth = frame.mapped_depth.astype(np.float64)
        height, width = depth.shape
        normals = np.zeros((height, width, 3), dtype=np.float32)
        if height < 3 or width < 3:
            frame.normals = normals
            return

        vs, us = np.mgrid[0:height, 0:width]
        pixels = np.column_stack([us.ravel(), vs.ravel()])
        points = frame.calibration.color_intrinsics.unproject(
            pixels, depth.ravel()
        ).reshape(height, width, 3)

        dx = points[1:-1, 2:] - points[1:-1, :-2]
        dy = points[2:, 1:-1] - points[:-2, 1:-1]
        n = np.cross(dx, dy)
        norm = np.linalg.norm(n, axis=2, keepdims=True)

        center = depth[1:-1, 1:-1]
        neighbours = np.stack(
            [depth[1:-1, 2:], depth[1:-1, :-2], depth[2:, 1:-1], depth[:-2, 1:-1]]
        )
        valid = (center > 0) & (neighbours > 0).all(axis=0)
        jump = np.abs(neighbours - center).max(axis=0)
        valid &= jump < self._max_depth_jump * np.maximum(center, 1.0)
        valid &= norm[..., 0] > 1e-12

        with np.errstate(divide="ignore", invalid="ignore"):
            n = np.where(valid[..., None], n / norm, 0.0)

        # Orient towards the camera center
        facing = np.einsum("ijk,ijk->ij", n, points[1:-1, 1:-1])
        n[facing > 0] *= -1.0

        normals[1:-1, 1:-1] = n
        frame.normals = normals
