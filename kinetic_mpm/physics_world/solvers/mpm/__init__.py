"""
MPM (Material Point Method) solver module.
Provides grid-based continuum simulation for fluids, granular and elastic materials.
"""

from .mpm_backend import active_arch, init_taichi
from .mpm_boundary import BoundaryShape, BoundaryState, BoundarySystem, CollisionMode, parse_enum
from .mpm_forces import ForceFieldBuffer
from .mpm_grid import GridStore
from .mpm_kinetic import KineticUniforms
from .mpm_materials import (
    MATERIAL_PRESETS,
    MaterialDescriptor,
    MaterialLibrary,
    MaterialTable,
    MaterialType,
    parse_material_type,
)
from .mpm_solver import GravityType, MPMSolver, SolverParams, TransferMode
from .mpm_state import ParticleStore

__all__ = [
    'active_arch', 'init_taichi',
    'BoundaryShape', 'BoundaryState', 'BoundarySystem', 'CollisionMode', 'parse_enum',
    'ForceFieldBuffer', 'GridStore', 'KineticUniforms',
    'MATERIAL_PRESETS', 'MaterialDescriptor', 'MaterialLibrary', 'MaterialTable', 'MaterialType',
    'parse_material_type',
    'GravityType', 'MPMSolver', 'SolverParams', 'TransferMode',
    'ParticleStore',
]
