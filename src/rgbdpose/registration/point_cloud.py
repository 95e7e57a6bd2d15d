"""Oriented point clouds built from filtered RGB-D frames."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..errors import PreconditionError
from ..frame import RGBDFrame


@dataclass
class OrientedPointCloud:
    """Points with unit surface normals.

    Attributes:
        points: Nx3 positions
        normals: Nx3 unit normals
    """

    points: np.ndarray
    normals: np.ndarray

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        self.normals = np.asarray(self.normals, dtype=np.float64).reshape(-1, 3)
        if len(self.points) != len(self.normals):
            raise ValueError(
                f"Got {len(self.normals)} normals for {len(self.points)} points"
            )

    @classmethod
    def empty(cls) -> OrientedPointCloud:
        return cls(points=np.empty((0, 3)), normals=np.empty((0, 3)))

    @classmethod
    def from_frame(cls, frame: RGBDFrame) -> OrientedPointCloud:
        """Build the cloud of every pixel with depth and a normal.

        Points are expressed in the color camera frame: they come from the
        mapped depth image lifted with the color intrinsics. The frame must
        have gone through ``RGBDProcessor.compute_normals``.
        """
        if frame.calibration is None:
            raise PreconditionError("Image must be calibrated.")
        if not frame.has_mapped_depth:
            raise PreconditionError("Image must have depth mapping.")
        if frame.normals is None:
            raise PreconditionError("Normals must be computed before building a cloud.")

        depth = frame.mapped_depth
        normals = frame.normals
        valid = (depth > 0) & (np.linalg.norm(normals, axis=2) > 0.5)
        vs, us = np.nonzero(valid)
        if len(us) == 0:
            return cls.empty()

        pixels = np.column_stack([us, vs])
        points = frame.calibration.color_intrinsics.unproject(pixels, depth[vs, us])
        return cls(points=points, normals=normals[vs, us])

    def select(self, indices: np.ndarray) -> OrientedPointCloud:
        """Return the sub-cloud at the given indices."""
        return OrientedPointCloud(
            points=self.points[indices], normals=self.normals[indices]
        )

    def __len__(self) -> int:
        return len(self.points)
