"""High-level orchestration layer around the particle world and exporter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .configuration import SceneConfig, load_scene_config
from .exporter import SimulationExporter
from .physics_world.state import ParticleSnapshot
from .physics_world.world import ParticleWorld


@dataclass
class SimulationContainer:
    """Bundles scene configuration, particle world, and exporter."""

    config: SceneConfig
    world: ParticleWorld
    exporter: Optional[SimulationExporter] = None
    current_step: int = 0

    @classmethod
    def from_config(cls, config: SceneConfig, *, export: bool = True) -> "SimulationContainer":
        world = ParticleWorld.from_config(config)
        exporter = SimulationExporter.from_config(config.export) if export and config.export else None
        return cls(config=config, world=world, exporter=exporter)

    @classmethod
    def from_config_file(cls, config_path: str | Path, *, export: bool = True) -> "SimulationContainer":
        return cls.from_config(load_scene_config(config_path), export=export)

    def step(self, dt: float | None = None) -> ParticleSnapshot:
        """Advance the world by a single step and export the frame when due."""
        snapshot = self.world.step(dt)
        if self.exporter is not None:
            self.exporter.export_step(self.current_step, snapshot)
        self.current_step += 1
        return snapshot

    def run(self, steps: Optional[int] = None) -> Optional[ParticleSnapshot]:
        """Execute multiple simulation steps; returns the last snapshot."""
        total_steps = steps if steps is not None else self.config.simulation.total_steps
        snapshot = None
        for _ in range(total_steps):
            snapshot = self.step()
        return snapshot
