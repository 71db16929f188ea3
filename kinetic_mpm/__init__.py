"""Core engine package for the kinetic MPM particle simulator."""

from .world_container import SimulationContainer
from .configuration import load_scene_config, SceneConfig

__all__ = [
    "SimulationContainer",
    "SceneConfig",
    "load_scene_config",
]
