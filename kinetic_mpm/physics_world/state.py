"""Dataclasses describing the evolving particle state handed to consumers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import numpy as np


@dataclass
class StepStats:
    step: int
    dt: float  # seconds (s), after scaling and clamping
    time: float  # elapsed simulation time (s)
    live_particles: int
    repaired_particles: int = 0  # non-finite particles reset by the NaN guard
    spawned_particles: int = 0


@dataclass
class ParticleSnapshot:
    """Read-only view of the live particles after a step (render consumer)."""

    step_index: int
    time: float  # seconds (s)
    positions: np.ndarray  # grid space (N, 3)
    velocities: np.ndarray  # cells per second (N, 3)
    densities: np.ndarray  # smoothed grid density (N,)
    materials: np.ndarray  # MaterialType ids (N,)
    ages: np.ndarray  # seconds (s) (N,)

    @property
    def live_particle_count(self) -> int:
        return len(self.positions)

    @classmethod
    def from_arrays(cls, step_index: int, time: float, arrays: Dict[str, np.ndarray]) -> "ParticleSnapshot":
        return cls(
            step_index=step_index,
            time=time,
            positions=arrays["positions"],
            velocities=arrays["velocities"],
            densities=arrays["densities"],
            materials=arrays["materials"],
            ages=arrays["ages"],
        )

    def centroid(self) -> np.ndarray:
        if self.live_particle_count == 0:
            return np.zeros(3)
        return self.positions.mean(axis=0)

    def total_momentum(self, masses: np.ndarray) -> np.ndarray:
        return (self.velocities * masses[:, None]).sum(axis=0)
