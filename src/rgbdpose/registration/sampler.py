"""Point cloud subsampling that keeps the spread of surface orientations."""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from .point_cloud import OrientedPointCloud


class PointCloudSampler(ABC):
    """Reduces an oriented point cloud to at most a given number of points."""

    @abstractmethod
    def subsample(self, cloud: OrientedPointCloud, n_samples: int) -> OrientedPointCloud:
        """Return a subset of at most ``n_samples`` points."""


class NormalCloudSampler(PointCloudSampler):
    """Normal-space sampling.

    Normals are binned on an azimuth / elevation grid and points are drawn
    round-robin across the non-empty bins, so small surfaces with a distinct
    orientation (which constrain point-to-plane ICP the most) are not drowned
    by large flat ones. Within a bin the draw order is a seeded permutation.
    """

    def __init__(
        self,
        n_azimuth_bins: int = 8,
        n_elevation_bins: int = 4,
        seed: int = 0,
    ) -> None:
        if n_azimuth_bins < 1 or n_elevation_bins < 1:
            raise ValueError("Bin counts must be positive")
        self._n_azimuth = n_azimuth_bins
        self._n_elevation = n_elevation_bins
        self._seed = seed

    def bin_indices(self, normals: np.ndarray) -> np.ndarray:
        """Return the orientation bin of each normal."""
        normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        azimuth = np.arctan2(normals[:, 1], normals[:, 0])  # [-pi, pi]
        elevation = np.arcsin(np.clip(normals[:, 2], -1.0, 1.0))  # [-pi/2, pi/2]

        az_bin = np.floor((azimuth + np.pi) / (2 * np.pi) * self._n_azimuth)
        el_bin = np.floor((elevation + np.pi / 2) / np.pi * self._n_elevation)
        az_bin = np.clip(az_bin, 0, self._n_azimuth - 1).astype(np.int64)
        el_bin = np.clip(el_bin, 0, self._n_elevation - 1).astype(np.int64)
        return el_bin * self._n_azimuth + az_bin

    def subsample(self, cloud: OrientedPointCloud, n_samples: int) -> OrientedPointCloud:
        if n_samples <= 0:
            return OrientedPointCloud.empty()
        if len(cloud) <= n_samples:
            return cloud

        rng = np.random.default_rng(self._seed)
        bins = self.bin_indices(cloud.normals)

        # Rank of each point inside its bin, following a random permutation
        order = rng.permutation(len(cloud))
        shuffled_bins = bins[order]
        by_bin = np.argsort(shuffled_bins, kind="stable")
        sorted_bins = shuffled_bins[by_bin]
        bin_starts = np.searchsorted(sorted_bins, sorted_bins, side="left")
        ranks = np.empty(len(cloud), dtype=np.int64)
        ranks[order[by_bin]] = np.arange(len(cloud)) - bin_starts

        # Round-robin: every bin's first point, then every bin's second, ...
        selection = np.lexsort((bins, ranks))[:n_samples]
        return cloud.select(np.sort(selection))
