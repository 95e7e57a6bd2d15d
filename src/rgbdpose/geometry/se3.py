"""SE(3) rigid transforms."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation).

    Used throughout as a camera-to-world transform T_world_camera:

        p_world = R @ p_camera + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: (3,) translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Coerce to float64 and check shapes."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Return the identity transform."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from a 4x4 homogeneous matrix [[R, t], [0, 1]]."""
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from a Rodrigues rotation vector and a translation.

        Args:
            rvec: 3D rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (rvec, tvec) with rvec a (3,) Rodrigues vector."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def inverse(self) -> SE3:
        """Return T^{-1} = [R^T, -R^T @ t]."""
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Return self @ other.

        With self = T_A_B and other = T_B_C the result is T_A_C, e.g.
        T_world_depth.compose(T_depth_color) gives T_world_color.
        """
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return SE3(rotation=R, translation=t)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply p' = R @ p + t to an Nx3 array (or a single 3-vector)."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)

        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")

        return points @ self.rotation.T + self.translation

    def rotate_vectors(self, vectors: np.ndarray) -> np.ndarray:
        """Rotate Nx3 direction vectors (normals) without translating them."""
        vectors = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
        return vectors @ self.rotation.T

    def rotation_angle_to(self, other: SE3) -> float:
        """Return the angle (radians) of the relative rotation to other."""
        R = self.rotation.T @ other.rotation
        cos_angle = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
        return float(np.arccos(cos_angle))

    def is_finite(self) -> bool:
        """Return True if rotation and translation hold only finite values."""
        return bool(
            np.isfinite(self.rotation).all() and np.isfinite(self.translation).all()
        )

    @property
    def position(self) -> np.ndarray:
        """Return the camera origin in world coordinates."""
        return self.translation.copy()

    def __repr__(self) -> str:
        """Return string representation."""
        pos = self.position
        return f"SE3(position=[{pos[0]:.4f}, {pos[1]:.4f}, {pos[2]:.4f}])"

    def __matmul__(self, other: SE3) -> SE3:
        """Composition operator: T1 @ T2 == T1.compose(T2)."""
        return self.compose(other)
