"""Particle world package aggregating the MPM solver, boundaries, fields and emitters."""

from .emitters import EmitterDescriptor, EmitterSystem
from .force_fields import ForceFieldDescriptor, ForceFieldManager
from .kinetic import KineticState
from .state import ParticleSnapshot, StepStats
from .viewport import Rect, ViewportTracker
from .world import ParticleWorld

__all__ = [
    "EmitterDescriptor",
    "EmitterSystem",
    "ForceFieldDescriptor",
    "ForceFieldManager",
    "KineticState",
    "ParticleSnapshot",
    "ParticleWorld",
    "Rect",
    "StepStats",
    "ViewportTracker",
]
