"""Keypoint extraction and matching."""

from .extractor import FeatureExtractor, OpenCVFeatureExtractor
from .feature_set import Correspondences, FeaturePoint, FeatureSet

__all__ = [
    "FeatureExtractor",
    "OpenCVFeatureExtractor",
    "FeaturePoint",
    "FeatureSet",
    "Correspondences",
]
