"""
MPM material models - constitutive parameter table and stress functions.

The table is data: one MaterialDescriptor per MaterialType, uploaded to Taichi
fields between frames. Behaviour is a switch on the material id inside the
stress functions.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Dict, Iterable, List, Optional

import numpy as np
import taichi as ti


class MaterialType(IntEnum):
    FLUID = 0
    ELASTIC = 1
    SAND = 2
    SNOW = 3
    FOAM = 4
    VISCOUS = 5
    RIGID = 6
    PLASMA = 7


NUM_MATERIALS = len(MaterialType)

# Plain ints for use inside kernels
FLUID = int(MaterialType.FLUID)
ELASTIC = int(MaterialType.ELASTIC)
SAND = int(MaterialType.SAND)
SNOW = int(MaterialType.SNOW)
FOAM = int(MaterialType.FOAM)
VISCOUS = int(MaterialType.VISCOUS)
RIGID = int(MaterialType.RIGID)
PLASMA = int(MaterialType.PLASMA)

# Strain-rate response per material type, multiplies the descriptor viscosity
VISCOSITY_FACTORS = (0.1, 2.0, 0.5, 0.3, 0.2, 5.0, 10.0, 0.05)

# Snow plasticity window on singular values of F
SNOW_CRITICAL_COMPRESSION = 2.5e-2
SNOW_CRITICAL_STRETCH = 4.5e-3
# Elastic solids are kept away from inversion / runaway stretch
ELASTIC_SIGMA_MIN = 0.6
ELASTIC_SIGMA_MAX = 1.6


def parse_material_type(value) -> MaterialType:
    """Accept a MaterialType, its int id or its (case-insensitive) name."""
    if isinstance(value, MaterialType):
        return value
    if isinstance(value, str):
        try:
            return MaterialType[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown material type '{value}'") from exc
    try:
        return MaterialType(int(value))
    except ValueError as exc:
        raise ValueError(f"Unknown material type id {value}") from exc


@dataclass(frozen=True)
class MaterialDescriptor:
    type: MaterialType
    name: str
    density: float  # rest density, mass per cell
    stiffness: float  # equation-of-state / elastic modulus scale
    viscosity: float
    friction: float  # [0, 1]
    cohesion: float  # [0, 1]
    elasticity: float  # [0, 1]
    plasticity: float  # [0, 1]
    compressibility: float  # [0, 1]
    surface_tension: float

    def validated(self) -> "MaterialDescriptor":
        """Return a copy with every parameter finite and inside its valid range."""
        values = {}
        for f in fields(self):
            if f.name in ("type", "name"):
                continue
            value = float(getattr(self, f.name))
            if not np.isfinite(value):
                print(f"[MaterialTable] Warning: {self.name}.{f.name} is not finite, using 0")
                value = 0.0
            values[f.name] = value
        values["density"] = max(values["density"], 1e-3)
        values["stiffness"] = max(values["stiffness"], 0.0)
        values["viscosity"] = max(values["viscosity"], 0.0)
        values["surface_tension"] = max(values["surface_tension"], 0.0)
        for key in ("friction", "cohesion", "elasticity", "plasticity", "compressibility"):
            values[key] = min(max(values[key], 0.0), 1.0)
        return replace(self, **values)


MATERIAL_PRESETS: Dict[str, MaterialDescriptor] = {
    "WATER": MaterialDescriptor(MaterialType.FLUID, "Water", 1.0, 3.0, 0.1, 0.1, 0.3, 0.0, 1.0, 0.0, 0.5),
    "OIL": MaterialDescriptor(MaterialType.VISCOUS, "Oil", 0.8, 2.0, 2.5, 0.3, 0.4, 0.0, 1.0, 0.1, 0.3),
    "HONEY": MaterialDescriptor(MaterialType.VISCOUS, "Honey", 1.4, 4.0, 8.0, 0.5, 0.8, 0.0, 1.0, 0.05, 0.7),
    "SAND": MaterialDescriptor(MaterialType.SAND, "Sand", 1.6, 5.0, 0.5, 0.8, 0.05, 0.05, 0.95, 0.2, 0.0),
    "SNOW": MaterialDescriptor(MaterialType.SNOW, "Snow", 0.3, 1.5, 0.3, 0.4, 0.5, 0.2, 0.8, 0.6, 0.2),
    "RUBBER": MaterialDescriptor(MaterialType.ELASTIC, "Rubber", 1.1, 8.0, 1.0, 0.9, 0.9, 0.9, 0.1, 0.1, 0.4),
    "JELLY": MaterialDescriptor(MaterialType.ELASTIC, "Jelly", 1.0, 2.0, 0.8, 0.2, 0.7, 0.7, 0.3, 0.2, 0.5),
    "FOAM": MaterialDescriptor(MaterialType.FOAM, "Foam", 0.1, 0.5, 0.2, 0.3, 0.2, 0.4, 0.6, 0.9, 0.1),
    "LAVA": MaterialDescriptor(MaterialType.VISCOUS, "Lava", 2.5, 6.0, 5.0, 0.4, 0.6, 0.0, 1.0, 0.05, 0.8),
    "PLASMA": MaterialDescriptor(MaterialType.PLASMA, "Plasma", 0.05, 0.5, 0.05, 0.0, 0.0, 0.0, 1.0, 0.95, 0.0),
    "METAL": MaterialDescriptor(MaterialType.RIGID, "Metal", 7.8, 50.0, 10.0, 0.6, 1.0, 0.3, 0.7, 0.01, 0.0),
}


def default_material_table(presets: Optional[Dict[str, MaterialDescriptor]] = None) -> List[MaterialDescriptor]:
    """One entry per MaterialType; the last preset declared for a type wins."""
    presets = MATERIAL_PRESETS if presets is None else presets
    table: List[Optional[MaterialDescriptor]] = [None] * NUM_MATERIALS
    for descriptor in presets.values():
        table[int(descriptor.type)] = descriptor
    missing = [MaterialType(i).name for i, entry in enumerate(table) if entry is None]
    if missing:
        raise ValueError(f"No preset for material types: {', '.join(missing)}")
    return list(table)


class MaterialLibrary:
    """Named material presets, extendable with custom descriptors."""

    def __init__(self, presets: Optional[Dict[str, MaterialDescriptor]] = None):
        self._materials: Dict[str, MaterialDescriptor] = dict(MATERIAL_PRESETS if presets is None else presets)

    def get(self, name: str) -> Optional[MaterialDescriptor]:
        return self._materials.get(name.upper())

    def names(self) -> List[str]:
        return list(self._materials.keys())

    def add(self, name: str, descriptor: MaterialDescriptor) -> None:
        self._materials[name.upper()] = descriptor.validated()

    def table(self) -> List[MaterialDescriptor]:
        return default_material_table(self._materials)


_TABLE_COLUMNS = (
    "density", "stiffness", "viscosity", "friction", "cohesion",
    "elasticity", "plasticity", "compressibility", "surface_tension",
)


@ti.data_oriented
class MaterialTable:
    """Read-only (per step) constitutive parameter table, one row per MaterialType."""

    def __init__(self, entries: Optional[Iterable[MaterialDescriptor]] = None):
        for column in _TABLE_COLUMNS:
            setattr(self, column, ti.field(dtype=ti.f32, shape=NUM_MATERIALS))
        self.viscosity_factor = ti.field(dtype=ti.f32, shape=NUM_MATERIALS)
        self.viscosity_factor.from_numpy(np.asarray(VISCOSITY_FACTORS, dtype=np.float32))
        self._entries: List[MaterialDescriptor] = []
        self.replace(default_material_table() if entries is None else entries)

    def replace(self, entries: Iterable[MaterialDescriptor]):
        """Swap the whole table. Call between steps only."""
        entries = list(entries)
        if len(entries) != NUM_MATERIALS:
            raise ValueError(f"Material table needs {NUM_MATERIALS} entries, got {len(entries)}")
        ordered: List[Optional[MaterialDescriptor]] = [None] * NUM_MATERIALS
        for entry in entries:
            ordered[int(entry.type)] = entry.validated()
        if any(entry is None for entry in ordered):
            raise ValueError("Material table must contain exactly one entry per material type")
        self._entries = list(ordered)
        for column in _TABLE_COLUMNS:
            values = np.asarray([getattr(entry, column) for entry in self._entries], dtype=np.float32)
            getattr(self, column).from_numpy(values)

    def apply_preset(self, name: str, library: Optional[MaterialLibrary] = None):
        """Replace the entry of the preset's material type with the named preset."""
        library = library or MaterialLibrary()
        descriptor = library.get(name)
        if descriptor is None:
            raise ValueError(f"Unknown material preset '{name}'. Available: {', '.join(library.names())}")
        entries = list(self._entries)
        entries[int(descriptor.type)] = descriptor
        self.replace(entries)
        print(f"[MaterialTable] {descriptor.type.name} <- preset {name.upper()}")

    def entries(self) -> List[MaterialDescriptor]:
        return list(self._entries)

    def get(self, material_type) -> MaterialDescriptor:
        return self._entries[int(parse_material_type(material_type))]

    @ti.func
    def rest_volume(self, mat, mass):
        return mass / self.density[mat]

    @ti.func
    def fluid_stress(self, mat, density, C, dt, surface_tension_on):
        """
        Cauchy stress from the equation of state and strain rate.

        Args:
            mat: MaterialType id
            density: Grid-sampled density at the particle (> 0)
            C: Affine velocity matrix
            dt: Time step, bounds the explicit viscous coefficient
            surface_tension_on: 1 to add the cohesive free-surface term
        """
        ratio = density / self.density[mat]
        pressure = ti.max(0.0, (ratio ** 5 - 1.0) * self.stiffness[mat])
        if surface_tension_on == 1:
            pressure -= self.surface_tension[mat] * ti.max(0.0, 1.0 - ratio)

        strain = C + C.transpose()
        mu = self.viscosity[mat] * self.viscosity_factor[mat]
        mu = ti.min(mu, 0.125 * density / dt)
        deviatoric = strain * mu
        if mat == SAND:
            # Drucker-Prager cone: shear capped by friction * pressure + cohesion
            limit = self.friction[mat] * ti.max(pressure, 0.0) + self.cohesion[mat]
            magnitude = deviatoric.norm()
            if magnitude > limit:
                deviatoric *= limit / magnitude

        stress = -pressure * ti.Matrix.identity(ti.f32, 3) + deviatoric
        if mat == FOAM:
            stress *= 0.3
        return stress

    @ti.func
    def project_deformation(self, mat, F):
        """Plastic / stability projection of a trial deformation gradient."""
        result = ti.Matrix.identity(ti.f32, 3)
        if mat == ELASTIC or mat == RIGID or mat == SNOW:
            U, sig, V = ti.svd(F)
            lo = ELASTIC_SIGMA_MIN
            hi = ELASTIC_SIGMA_MAX
            if mat == SNOW:
                lo = 1.0 - SNOW_CRITICAL_COMPRESSION
                hi = 1.0 + SNOW_CRITICAL_STRETCH
            for d in ti.static(range(3)):
                sig[d, d] = ti.min(ti.max(sig[d, d], lo), hi)
            result = U @ sig @ V.transpose()
        return result

    @ti.func
    def elastic_stress(self, mat, F, Jp):
        """
        Fixed-corotated Kirchhoff stress for ELASTIC, RIGID and SNOW; zero otherwise.

        Snow hardens with compaction through the plastic volume ratio Jp.
        """
        tau = ti.Matrix.zero(ti.f32, 3, 3)
        if mat == ELASTIC or mat == RIGID or mat == SNOW:
            mu = 0.5 * self.stiffness[mat] * self.elasticity[mat]
            la = 0.5 * self.stiffness[mat] * (1.0 - self.compressibility[mat])
            if mat == SNOW:
                h = ti.min(ti.max(ti.exp(10.0 * (1.0 - Jp)), 0.1), 5.0)
                mu *= h
                la *= h
            U, sig, V = ti.svd(F)
            J = sig[0, 0] * sig[1, 1] * sig[2, 2]
            R = U @ V.transpose()
            tau = 2.0 * mu * (F - R) @ F.transpose() + ti.Matrix.identity(ti.f32, 3) * la * J * (J - 1.0)
        return tau
