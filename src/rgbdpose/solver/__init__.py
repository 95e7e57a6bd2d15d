"""Robust pose solvers."""

from .ransac import RansacPoseSolver, RobustPoseSolver, SolverResult, kabsch

__all__ = [
    "RobustPoseSolver",
    "RansacPoseSolver",
    "SolverResult",
    "kabsch",
]
