"""Solvers used by the particle world."""

from .mpm import MPMSolver, SolverParams

__all__ = [
    "MPMSolver",
    "SolverParams",
]
