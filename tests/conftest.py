from __future__ import annotations

import pytest

from kinetic_mpm.configuration import BoundaryConfig, SceneConfig, SimulationConfig
from kinetic_mpm.physics_world.solvers.mpm import init_taichi


@pytest.fixture(scope="session", autouse=True)
def taichi_cpu() -> str:
    return init_taichi("cpu")


def make_scene(grid: int = 32, particles: int = 0, boundary: BoundaryConfig | None = None, **simulation) -> SceneConfig:
    """Small zero-gravity CPU scene; keyword arguments override SimulationConfig fields."""
    values = dict(
        grid_size=(grid, grid, grid),
        max_particles=4096,
        particle_count=particles,
        gravity=(0.0, 0.0, 0.0),
        seed=0,
        arch="cpu",
    )
    values.update(simulation)
    return SceneConfig(
        scene_name="test",
        simulation=SimulationConfig(**values),
        boundary=boundary or BoundaryConfig(),
    )
