"""Particle emitters: descriptors, presets and the spawning system that recycles dead slots."""

from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import numpy as np

from .solvers.mpm.mpm_materials import MaterialType, parse_material_type
from .solvers.mpm.mpm_state import ParticleStore

Vec3 = Tuple[float, float, float]

MAX_EMITTERS = 8
MIN_LIFETIME = 0.1  # seconds (s)


class EmitterType(IntEnum):
    POINT = 0
    SPHERE = 1
    DISC = 2
    BOX = 3
    CONE = 4
    RING = 5


class EmissionPattern(IntEnum):
    CONTINUOUS = 0
    BURST = 1
    PULSE = 2
    FOUNTAIN = 3
    EXPLOSION = 4
    STREAM = 5


def _parse(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown {enum_cls.__name__} '{value}'") from exc
    return enum_cls(int(value))


def _vec3(value) -> Vec3:
    x, y, z = (float(c) for c in value)
    return (x, y, z)


@dataclass(frozen=True)
class EmitterDescriptor:
    type: EmitterType = EmitterType.POINT
    pattern: EmissionPattern = EmissionPattern.CONTINUOUS
    position: Vec3 = (0.0, 0.0, 0.0)  # grid space
    direction: Vec3 = (0.0, 1.0, 0.0)
    rate: float = 100.0  # particles / s
    velocity: float = 10.0  # cells / s
    velocity_variance: float = 0.3  # [0, 1] relative
    spread: float = math.pi / 6  # radians around direction
    lifetime: float = 5.0  # seconds (s), <= 0 immortal
    lifetime_variance: float = 0.2  # [0, 1] relative
    burst_count: int = 1000
    burst_interval: float = 1.0  # seconds (s)
    material: MaterialType = MaterialType.FLUID
    scale: Vec3 = (1.0, 1.0, 1.0)  # shape extents in cells
    particle_mass: float = 1.0
    enabled: bool = True
    name: str = ""

    def normalized(self) -> "EmitterDescriptor":
        """Coerce enums/vectors and validate the numeric parameters."""
        values = dict(
            type=_parse(EmitterType, self.type),
            pattern=_parse(EmissionPattern, self.pattern),
            material=parse_material_type(self.material),
            position=_vec3(self.position),
            direction=_vec3(self.direction),
            scale=_vec3(self.scale),
            rate=float(self.rate),
            velocity=float(self.velocity),
            velocity_variance=float(self.velocity_variance),
            spread=float(self.spread),
            lifetime=float(self.lifetime),
            lifetime_variance=float(self.lifetime_variance),
            burst_count=int(self.burst_count),
            burst_interval=float(self.burst_interval),
            particle_mass=float(self.particle_mass),
            enabled=bool(self.enabled),
        )
        numbers = list(values["position"] + values["direction"] + values["scale"]) + [
            values["rate"], values["velocity"], values["velocity_variance"], values["spread"],
            values["lifetime"], values["lifetime_variance"], values["burst_interval"], values["particle_mass"]]
        if not np.isfinite(numbers).all():
            raise ValueError("Emitter parameters must be finite")
        if values["rate"] < 0.0 or values["burst_count"] < 0:
            raise ValueError("Emitter rate and burst count must be >= 0")
        if values["particle_mass"] <= 0.0:
            raise ValueError(f"Emitter particle mass must be > 0, got {values['particle_mass']}")
        if np.linalg.norm(values["direction"]) < 1e-8:
            raise ValueError("Emitter direction must be non-zero")
        values["velocity_variance"] = min(max(values["velocity_variance"], 0.0), 1.0)
        values["lifetime_variance"] = min(max(values["lifetime_variance"], 0.0), 1.0)
        return replace(self, **values)


EMITTER_PRESETS: Dict[str, EmitterDescriptor] = {
    "FOUNTAIN": EmitterDescriptor(EmitterType.DISC, EmissionPattern.FOUNTAIN, rate=500.0, velocity=20.0,
                                  spread=math.pi / 8, lifetime=3.0, material=MaterialType.FLUID,
                                  scale=(0.5, 0.5, 0.5), name="Fountain"),
    "EXPLOSION": EmitterDescriptor(EmitterType.SPHERE, EmissionPattern.EXPLOSION, rate=0.0, burst_count=5000,
                                   burst_interval=2.0, velocity=30.0, velocity_variance=0.5, spread=math.pi,
                                   lifetime=2.0, material=MaterialType.PLASMA, name="Explosion"),
    "SMOKE": EmitterDescriptor(EmitterType.DISC, EmissionPattern.CONTINUOUS, rate=200.0, velocity=5.0,
                               velocity_variance=0.5, spread=math.pi / 4, lifetime=6.0,
                               material=MaterialType.FOAM, name="Smoke"),
    "WATERFALL": EmitterDescriptor(EmitterType.BOX, EmissionPattern.STREAM, rate=1000.0, velocity=15.0,
                                   velocity_variance=0.1, spread=math.pi / 16, lifetime=4.0,
                                   direction=(0.0, -1.0, 0.0), material=MaterialType.FLUID,
                                   scale=(3.0, 0.5, 1.0), name="Waterfall"),
    "FIRE": EmitterDescriptor(EmitterType.CONE, EmissionPattern.CONTINUOUS, rate=800.0, velocity=8.0,
                              velocity_variance=0.6, spread=math.pi / 6, lifetime=1.5, lifetime_variance=0.5,
                              material=MaterialType.PLASMA, name="Fire"),
    "SNOW": EmitterDescriptor(EmitterType.BOX, EmissionPattern.CONTINUOUS, rate=300.0, velocity=2.0,
                              velocity_variance=0.8, spread=math.pi / 3, lifetime=8.0,
                              direction=(0.0, -1.0, 0.0), material=MaterialType.SNOW,
                              scale=(10.0, 0.5, 10.0), name="Snow"),
    "SPARK_BURST": EmitterDescriptor(EmitterType.POINT, EmissionPattern.PULSE, rate=0.0, burst_count=100,
                                     burst_interval=0.5, velocity=25.0, velocity_variance=0.7, spread=math.pi,
                                     lifetime=1.0, material=MaterialType.PLASMA, name="Spark Burst"),
    "SANDSTORM": EmitterDescriptor(EmitterType.BOX, EmissionPattern.CONTINUOUS, rate=600.0, velocity=10.0,
                                   velocity_variance=0.6, spread=math.pi / 4, lifetime=5.0,
                                   direction=(1.0, 0.2, 0.0), material=MaterialType.SAND,
                                   scale=(1.0, 5.0, 8.0), name="Sandstorm"),
}


@dataclass
class EmitterRuntime:
    accumulator: float = 0.0  # unconsumed fractional particles
    time_since_burst: float = 0.0  # seconds (s)
    has_exploded: bool = False
    emitted: int = 0


def emission_count(descriptor: EmitterDescriptor, runtime: EmitterRuntime, dt: float) -> int:
    """Advance the emitter clock by dt and return how many particles it releases."""
    pattern = descriptor.pattern
    if pattern in (EmissionPattern.CONTINUOUS, EmissionPattern.FOUNTAIN, EmissionPattern.STREAM):
        runtime.accumulator += descriptor.rate * dt
        count = int(math.floor(runtime.accumulator))
        runtime.accumulator -= count
        return count
    if pattern == EmissionPattern.BURST:
        count = 0
        if runtime.time_since_burst >= descriptor.burst_interval:
            count = descriptor.burst_count
            runtime.time_since_burst = 0.0
        runtime.time_since_burst += dt
        return count
    if pattern == EmissionPattern.PULSE:
        runtime.time_since_burst += dt
        if runtime.time_since_burst >= descriptor.burst_interval:
            runtime.time_since_burst = 0.0
            return descriptor.burst_count
        return 0
    # EXPLOSION: one radial burst, re-armed after burst_interval
    count = 0
    if not runtime.has_exploded:
        count = descriptor.burst_count
        runtime.has_exploded = True
        runtime.time_since_burst = 0.0
    runtime.time_since_burst += dt
    if runtime.time_since_burst >= descriptor.burst_interval:
        runtime.has_exploded = False
    return count


def sample_positions(descriptor: EmitterDescriptor, count: int, rng: np.random.Generator) -> np.ndarray:
    """Grid-space spawn positions for the emitter shape."""
    origin = np.asarray(descriptor.position, dtype=np.float64)
    sx, sy, sz = descriptor.scale
    kind = descriptor.type
    offsets = np.zeros((count, 3))
    if kind == EmitterType.SPHERE:
        theta = rng.random(count) * 2.0 * np.pi
        phi = np.arccos(rng.random(count) * 2.0 - 1.0)
        offsets = sx * np.stack([np.sin(phi) * np.cos(theta), np.sin(phi) * np.sin(theta), np.cos(phi)], axis=1)
    elif kind in (EmitterType.DISC, EmitterType.CONE, EmitterType.RING):
        angle = rng.random(count) * 2.0 * np.pi
        if kind == EmitterType.DISC:
            radius = np.sqrt(rng.random(count)) * sx
        elif kind == EmitterType.CONE:
            radius = rng.random(count) * math.tan(min(descriptor.spread, 1.5)) * sx
        else:
            radius = np.full(count, sx)
        offsets = np.stack([radius * np.cos(angle), np.zeros(count), radius * np.sin(angle)], axis=1)
    elif kind == EmitterType.BOX:
        offsets = (rng.random((count, 3)) - 0.5) * np.array([sx, sy, sz])
    return origin + offsets


def _perpendiculars(direction: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    reference = np.array([0.0, 1.0, 0.0]) if abs(direction[1]) < 0.9 else np.array([1.0, 0.0, 0.0])
    p1 = np.cross(direction, reference)
    p1 /= np.linalg.norm(p1)
    p2 = np.cross(direction, p1)
    p2 /= np.linalg.norm(p2)
    return p1, p2


def sample_velocities(descriptor: EmitterDescriptor, count: int, rng: np.random.Generator) -> np.ndarray:
    """Velocities spread inside a cone of half-angle `spread` around the emitter direction."""
    direction = np.asarray(descriptor.direction, dtype=np.float64)
    direction = direction / np.linalg.norm(direction)
    speed = descriptor.velocity * (1.0 + (rng.random(count) * 2.0 - 1.0) * descriptor.velocity_variance)

    if descriptor.pattern == EmissionPattern.EXPLOSION:
        radial = rng.random((count, 3)) * 2.0 - 1.0
        radial /= np.maximum(np.linalg.norm(radial, axis=1, keepdims=True), 1e-8)
        return radial * descriptor.velocity

    p1, p2 = _perpendiculars(direction)
    theta = (rng.random(count) * 2.0 - 1.0) * descriptor.spread
    phi = rng.random(count) * 2.0 * np.pi
    spread_dir = (direction[None, :]
                  + p1[None, :] * (np.sin(theta) * np.cos(phi))[:, None]
                  + p2[None, :] * (np.sin(theta) * np.sin(phi))[:, None])
    spread_dir /= np.maximum(np.linalg.norm(spread_dir, axis=1, keepdims=True), 1e-8)
    velocities = spread_dir * speed[:, None]
    if descriptor.pattern == EmissionPattern.FOUNTAIN:
        velocities[:, 1] += descriptor.velocity * 0.5
    return velocities


def sample_lifetimes(descriptor: EmitterDescriptor, count: int, rng: np.random.Generator) -> np.ndarray:
    if descriptor.lifetime <= 0.0:
        return np.zeros(count)
    lifetimes = descriptor.lifetime * (1.0 + (rng.random(count) * 2.0 - 1.0) * descriptor.lifetime_variance)
    return np.maximum(lifetimes, MIN_LIFETIME)


class EmitterSystem:
    """Emitters writing new particles into a ParticleStore, dead slots first."""

    def __init__(self, store: ParticleStore, max_emitters: int = MAX_EMITTERS, seed: Optional[int] = None):
        self.store = store
        self.max_emitters = max_emitters
        self.rng = np.random.default_rng(seed)
        self._emitters: Dict[int, EmitterDescriptor] = {}
        self._runtime: Dict[int, EmitterRuntime] = {}
        self._next_id = 0
        self._store_full = False

    def __len__(self) -> int:
        return len(self._emitters)

    def add(self, descriptor: Optional[EmitterDescriptor] = None, **kwargs) -> int:
        """Register an emitter and return its id."""
        if len(self._emitters) >= self.max_emitters:
            raise ValueError(f"At most {self.max_emitters} emitters are supported")
        descriptor = descriptor or EmitterDescriptor()
        if kwargs:
            descriptor = replace(descriptor, **kwargs)
        emitter_id = self._next_id
        self._next_id += 1
        self._emitters[emitter_id] = descriptor.normalized()
        self._runtime[emitter_id] = EmitterRuntime()
        return emitter_id

    def add_preset(self, name: str, **overrides) -> int:
        preset = EMITTER_PRESETS.get(name.upper())
        if preset is None:
            raise ValueError(f"Unknown emitter preset '{name}'. Available: {', '.join(EMITTER_PRESETS)}")
        return self.add(preset, **overrides)

    def remove(self, emitter_id: int) -> None:
        if emitter_id not in self._emitters:
            raise KeyError(f"No emitter with id {emitter_id}")
        del self._emitters[emitter_id]
        del self._runtime[emitter_id]

    def update(self, emitter_id: int, **partial) -> EmitterDescriptor:
        """Merge partial values into an emitter. Invalid values are rejected with a warning."""
        if emitter_id not in self._emitters:
            raise KeyError(f"No emitter with id {emitter_id}")
        known = {f.name for f in fields(EmitterDescriptor)}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(f"Unknown emitter attributes: {', '.join(sorted(unknown))}")
        current = self._emitters[emitter_id]
        try:
            updated = replace(current, **partial).normalized()
        except ValueError as exc:
            print(f"[EmitterSystem] Warning: rejected update of emitter {emitter_id}: {exc}")
            return current
        self._emitters[emitter_id] = updated
        return updated

    def get(self, emitter_id: int) -> EmitterDescriptor:
        if emitter_id not in self._emitters:
            raise KeyError(f"No emitter with id {emitter_id}")
        return self._emitters[emitter_id]

    def runtime(self, emitter_id: int) -> EmitterRuntime:
        if emitter_id not in self._runtime:
            raise KeyError(f"No emitter with id {emitter_id}")
        return self._runtime[emitter_id]

    def list(self) -> List[EmitterDescriptor]:
        return list(self._emitters.values())

    def ids(self) -> List[int]:
        return list(self._emitters.keys())

    def clear(self) -> None:
        self._emitters.clear()
        self._runtime.clear()

    def spawn(self, emitter_id: int, dt: float) -> int:
        """
        Run one emitter for dt seconds and write its particles into the store.

        Returns:
            Number of particles written (0 when the store has no free slot)
        """
        descriptor = self.get(emitter_id)
        runtime = self._runtime[emitter_id]
        if not descriptor.enabled:
            return 0
        if not np.isfinite(dt) or dt <= 0.0:
            print(f"[EmitterSystem] Warning: invalid dt {dt} for emitter {emitter_id}, skipping")
            return 0
        count = emission_count(descriptor, runtime, dt)
        if count <= 0:
            return 0

        slots = self.store.free_slots(count)
        if len(slots) == 0:
            if not self._store_full:
                print(f"[EmitterSystem] Warning: particle store full ({self.store.max_particles}), emission paused")
            self._store_full = True
            return 0
        self._store_full = False
        n = len(slots)

        self.store.write_particles(
            slots,
            sample_positions(descriptor, n, self.rng),
            velocities=sample_velocities(descriptor, n, self.rng),
            masses=np.full(n, descriptor.particle_mass),
            materials=np.full(n, int(descriptor.material), dtype=np.int32),
            lifetimes=sample_lifetimes(descriptor, n, self.rng),
        )
        runtime.emitted += n
        return n

    def spawn_all(self, dt: float) -> int:
        """Run every enabled emitter; returns the total number of particles written."""
        return sum(self.spawn(emitter_id, dt) for emitter_id in list(self._emitters))
