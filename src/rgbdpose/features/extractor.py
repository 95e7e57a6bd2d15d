"""Keypoint extraction from RGB-D frames and descriptor matching."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import cv2
import numpy as np

from ..config import FeatureParameters
from ..frame import RGBDFrame
from .feature_set import Correspondences, FeaturePoint, FeatureSet

logger = logging.getLogger(__name__)


class FeatureExtractor(ABC):
    """Produces depth-augmented keypoints and matches them between frames."""

    @abstractmethod
    def extract(self, frame: RGBDFrame, params: FeatureParameters) -> FeatureSet:
        """Detect keypoints in the color image and sample their depth."""

    @abstractmethod
    def match(
        self,
        target: FeatureSet,
        source: FeatureSet,
        ratio_threshold_squared: float,
    ) -> Correspondences:
        """Match source keypoints against the depth-bearing target keypoints."""


class OpenCVFeatureExtractor(FeatureExtractor):
    """ORB or SIFT keypoints with brute-force ratio-test matching.

    Depth is sampled from the frame's mapped depth at the nearest pixel.
    Matching only considers target keypoints that have depth, since the
    target side of every match must be back-projected to 3D.
    """

    def __init__(self) -> None:
        self._detectors: dict[tuple, cv2.Feature2D] = {}

    def _detector(self, params: FeatureParameters) -> cv2.Feature2D:
        key = (
            params.detector,
            params.n_features,
            params.scale_factor,
            params.n_levels,
            params.edge_threshold,
            params.fast_threshold,
        )
        detector = self._detectors.get(key)
        if detector is None:
            if params.detector == "sift":
                detector = cv2.SIFT_create(nfeatures=params.n_features)
            else:
                detector = cv2.ORB_create(
                    nfeatures=params.n_features,
                    scaleFactor=params.scale_factor,
                    nlevels=params.n_levels,
                    edgeThreshold=params.edge_threshold,
                    fastThreshold=params.fast_threshold,
                )
            self._detectors[key] = detector
        return detector

    def extract(self, frame: RGBDFrame, params: FeatureParameters) -> FeatureSet:
        """Detect keypoints and attach depth samples.

        Args:
            frame: Frame whose color image is searched
            params: Detector parameters and valid depth range

        Returns:
            FeatureSet with one FeaturePoint per keypoint. Keypoints without
            a valid depth sample get depth 0.
        """
        image = frame.color
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

        keypoints, descriptors = self._detector(params).detectAndCompute(image, None)
        if keypoints is None or descriptors is None or len(keypoints) == 0:
            return FeatureSet()

        depth = frame.mapped_depth if frame.has_mapped_depth else None
        locations = []
        for kp in keypoints:
            d = 0.0
            if depth is not None:
                col = int(round(kp.pt[0]))
                row = int(round(kp.pt[1]))
                if 0 <= row < depth.shape[0] and 0 <= col < depth.shape[1]:
                    d = float(depth[row, col])
                    if not (params.min_depth <= d <= params.max_depth):
                        d = 0.0
            locations.append(
                FeaturePoint(
                    pt=(float(kp.pt[0]), float(kp.pt[1])),
                    depth=d,
                    size=float(kp.size),
                    response=float(kp.response),
                )
            )

        logger.debug(
            "Extracted %d keypoints (%d with depth)",
            len(locations),
            sum(loc.has_depth for loc in locations),
        )
        return FeatureSet(locations, descriptors)

    def match(
        self,
        target: FeatureSet,
        source: FeatureSet,
        ratio_threshold_squared: float,
    ) -> Correspondences:
        """Match with Lowe's ratio test on squared distances.

        A source keypoint matches its nearest target keypoint when
        best^2 < ratio_threshold_squared * second_best^2. With fewer than two
        depth-bearing target keypoints nothing can be matched.
        """
        if (
            target.descriptors is None
            or source.descriptors is None
            or len(target) == 0
            or len(source) == 0
        ):
            return Correspondences.empty()

        target_with_depth = np.flatnonzero(target.depths > 0)
        if len(target_with_depth) < 2:
            return Correspondences.empty()

        train = target.descriptors[target_with_depth]
        query = source.descriptors
        if train.dtype == np.uint8:
            norm = cv2.NORM_HAMMING
        else:
            norm = cv2.NORM_L2
            train = train.astype(np.float32)
            query = query.astype(np.float32)

        matcher = cv2.BFMatcher(norm, crossCheck=False)
        knn_matches = matcher.knnMatch(query, train, k=2)

        target_indices = []
        source_indices = []
        distances = []
        for match_pair in knn_matches:
            # Without a second neighbour the ratio test cannot reject anything
            if len(match_pair) < 2:
                continue
            best, second = match_pair[0], match_pair[1]
            if best.distance**2 >= ratio_threshold_squared * second.distance**2:
                continue

            target_indices.append(target_with_depth[best.trainIdx])
            source_indices.append(best.queryIdx)
            distances.append(best.distance)

        if len(target_indices) == 0:
            return Correspondences.empty()

        return Correspondences(
            target_indices=np.array(target_indices, dtype=np.int32),
            source_indices=np.array(source_indices, dtype=np.int32),
            distances=np.array(distances, dtype=np.float32),
        )
