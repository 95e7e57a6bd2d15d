"""Rigid transforms and RGB-D camera models."""

from .camera import (
    Calibration,
    CameraFrame,
    CameraIntrinsics,
    CameraPose,
    to_color_camera,
    to_depth_camera,
)
from .se3 import SE3

__all__ = [
    "SE3",
    "CameraIntrinsics",
    "Calibration",
    "CameraFrame",
    "CameraPose",
    "to_color_camera",
    "to_depth_camera",
]
