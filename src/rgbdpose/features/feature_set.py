"""Depth-augmented keypoints and descriptor matches."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..errors import PreconditionError
from ..geometry import CameraFrame, CameraPose


@dataclass
class FeaturePoint:
    """A keypoint in the color image.

    Attributes:
        pt: (x, y) pixel location in the color image
        depth: Depth sampled from the mapped depth image (0 = no depth)
        p3d: World location, set by ``FeatureSet.compute_3d_locations``
        size: Keypoint diameter in pixels
        response: Detector response
    """

    pt: tuple[float, float]
    depth: float = 0.0
    p3d: np.ndarray | None = None
    size: float = 0.0
    response: float = 0.0

    @property
    def has_depth(self) -> bool:
        return self.depth > 0


class FeatureSet:
    """Keypoints of one frame with their descriptors.

    Row i of ``descriptors`` describes ``locations[i]``.
    """

    def __init__(
        self,
        locations: list[FeaturePoint] | None = None,
        descriptors: np.ndarray | None = None,
    ) -> None:
        self._locations: list[FeaturePoint] = list(locations or [])
        self._descriptors = descriptors
        self._reference_frame: CameraFrame | None = None

        if descriptors is not None and len(descriptors) != len(self._locations):
            raise ValueError(
                f"Got {len(descriptors)} descriptors for "
                f"{len(self._locations)} keypoints"
            )

    @property
    def locations(self) -> list[FeaturePoint]:
        return self._locations

    @property
    def descriptors(self) -> np.ndarray | None:
        return self._descriptors

    @property
    def reference_frame(self) -> CameraFrame | None:
        """Camera frame of the pose used for 3D locations, None if not computed."""
        return self._reference_frame

    @property
    def points(self) -> np.ndarray:
        """Return Nx2 array of keypoint (x, y) coordinates."""
        if len(self._locations) == 0:
            return np.empty((0, 2), dtype=np.float64)
        return np.array([loc.pt for loc in self._locations], dtype=np.float64)

    @property
    def depths(self) -> np.ndarray:
        """Return (N,) depth samples."""
        return np.array([loc.depth for loc in self._locations], dtype=np.float64)

    @property
    def has_3d_locations(self) -> bool:
        return self._reference_frame is not None

    def compute_3d_locations(self, pose: CameraPose) -> None:
        """Back-project every keypoint with depth to world coordinates.

        Keypoints are in the color image, so the pose must be a color-camera
        pose. Keypoints without depth keep ``p3d = None``.
        """
        pose.require_frame(CameraFrame.COLOR)
        if not pose.is_valid:
            raise PreconditionError("Cannot back-project features with an invalid pose")

        if len(self._locations) > 0:
            depths = self.depths
            with_depth = np.flatnonzero(depths > 0)
            points_3d = pose.unproject(self.points[with_depth], depths[with_depth])
            for idx, p3d in zip(with_depth, points_3d):
                self._locations[idx].p3d = p3d

        self._reference_frame = pose.frame

    def __len__(self) -> int:
        """Return number of keypoints."""
        return len(self._locations)

    def is_empty(self) -> bool:
        return len(self._locations) == 0


@dataclass
class Correspondences:
    """Descriptor matches between a target and a source FeatureSet.

    Attributes:
        target_indices: Indices into the target set's locations
        source_indices: Indices into the source set's locations
        distances: Descriptor distances of the matches
    """

    target_indices: np.ndarray  # (N,) int
    source_indices: np.ndarray  # (N,) int
    distances: np.ndarray  # (N,) float32

    @classmethod
    def empty(cls) -> Correspondences:
        return cls(
            target_indices=np.empty(0, dtype=np.int32),
            source_indices=np.empty(0, dtype=np.int32),
            distances=np.empty(0, dtype=np.float32),
        )

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.target_indices)

    def __iter__(self):
        return zip(self.target_indices.tolist(), self.source_indices.tolist())
