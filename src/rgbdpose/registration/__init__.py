"""Dense RGB-D alignment: oriented clouds, sampling and RGBD-ICP."""

from .point_cloud import OrientedPointCloud
from .rgbd_icp import DenseRefiner, RefinementResult, RGBDICPRefiner
from .sampler import NormalCloudSampler, PointCloudSampler

__all__ = [
    "OrientedPointCloud",
    "PointCloudSampler",
    "NormalCloudSampler",
    "DenseRefiner",
    "RGBDICPRefiner",
    "RefinementResult",
]
