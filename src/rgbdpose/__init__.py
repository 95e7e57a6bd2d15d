"""RGB-D relative pose estimation."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import EstimatorConfig, FeatureParameters
from .errors import FrameMismatchError, PreconditionError
from .estimator import (
    EstimationResult,
    EstimationStatus,
    EstimatorState,
    EstimatorTiming,
    RelativePoseEstimator,
)
from .features import (
    Correspondences,
    FeatureExtractor,
    FeaturePoint,
    FeatureSet,
    OpenCVFeatureExtractor,
)
from .frame import RGBDFrame, RGBDProcessor
from .geometry import (
    SE3,
    Calibration,
    CameraFrame,
    CameraIntrinsics,
    CameraPose,
    to_color_camera,
    to_depth_camera,
)
from .registration import (
    DenseRefiner,
    NormalCloudSampler,
    OrientedPointCloud,
    PointCloudSampler,
    RefinementResult,
    RGBDICPRefiner,
)
from .solver import RansacPoseSolver, RobustPoseSolver, SolverResult

__all__ = [
    "__version__",
    # Estimator
    "RelativePoseEstimator",
    "EstimatorState",
    "EstimationStatus",
    "EstimationResult",
    "EstimatorTiming",
    # Configuration / errors
    "EstimatorConfig",
    "FeatureParameters",
    "PreconditionError",
    "FrameMismatchError",
    # Geometry
    "SE3",
    "CameraIntrinsics",
    "Calibration",
    "CameraFrame",
    "CameraPose",
    "to_color_camera",
    "to_depth_camera",
    # Frames
    "RGBDFrame",
    "RGBDProcessor",
    # Features
    "FeatureExtractor",
    "OpenCVFeatureExtractor",
    "FeaturePoint",
    "FeatureSet",
    "Correspondences",
    # Robust solver
    "RobustPoseSolver",
    "RansacPoseSolver",
    "SolverResult",
    # Dense refinement
    "OrientedPointCloud",
    "PointCloudSampler",
    "NormalCloudSampler",
    "DenseRefiner",
    "RGBDICPRefiner",
    "RefinementResult",
]
