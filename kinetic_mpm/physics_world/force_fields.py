"""Force-field descriptors, presets and the CRUD manager feeding the solver buffer."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import numpy as np

from .solvers.mpm.mpm_forces import CURL_EPSILON, MAX_FORCE_FIELDS, NOISE_CENTER
from .solvers.mpm.mpm_kernels import tri_noise_3d_np

Vec3 = Tuple[float, float, float]


class ForceFieldType(IntEnum):
    ATTRACTOR = 0
    REPELLER = 1
    VORTEX = 2
    TURBULENCE = 3
    DIRECTIONAL = 4
    VORTEX_TUBE = 5
    SPHERICAL = 6
    CURL_NOISE = 7


class Falloff(IntEnum):
    CONSTANT = 0
    LINEAR = 1
    QUADRATIC = 2
    SMOOTH = 3


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
class ForceFieldDescriptor:
    type: ForceFieldType = ForceFieldType.ATTRACTOR
    position: Vec3 = (0.0, 0.0, 0.0)  # grid space
    strength: float = 10.0  # cells / s^2 at the field center
    radius: float = 20.0  # cells
    falloff: Falloff = Falloff.QUADRATIC
    enabled: bool = True
    direction: Vec3 = (1.0, 0.0, 0.0)  # DIRECTIONAL
    axis: Vec3 = (0.0, 1.0, 0.0)  # VORTEX / VORTEX_TUBE
    turbulence_scale: float = 1.0  # TURBULENCE / CURL_NOISE sampling scale
    noise_speed: float = 1.0
    name: str = ""

    def normalized(self) -> "ForceFieldDescriptor":
        """Coerce enums/vectors and check every numeric value is finite."""
        values = dict(
            type=_parse(ForceFieldType, self.type),
            falloff=_parse(Falloff, self.falloff),
            position=_vec3(self.position),
            direction=_vec3(self.direction),
            axis=_vec3(self.axis),
            strength=float(self.strength),
            radius=float(self.radius),
            turbulence_scale=float(self.turbulence_scale),
            noise_speed=float(self.noise_speed),
            enabled=bool(self.enabled),
        )
        numbers = list(values["position"] + values["direction"] + values["axis"]) + [
            values["strength"], values["radius"], values["turbulence_scale"], values["noise_speed"]]
        if not np.isfinite(numbers).all():
            raise ValueError("Force field parameters must be finite")
        if values["radius"] < 0.0:
            raise ValueError(f"Force field radius must be >= 0, got {values['radius']}")
        return replace(self, **values)


FORCE_FIELD_PRESETS: Dict[str, ForceFieldDescriptor] = {
    "GRAVITY_WELL": ForceFieldDescriptor(ForceFieldType.ATTRACTOR, strength=50.0, radius=30.0,
                                         falloff=Falloff.QUADRATIC, name="Gravity Well"),
    "BLACK_HOLE": ForceFieldDescriptor(ForceFieldType.ATTRACTOR, strength=200.0, radius=15.0,
                                       falloff=Falloff.QUADRATIC, name="Black Hole"),
    "EXPLOSION": ForceFieldDescriptor(ForceFieldType.REPELLER, strength=100.0, radius=25.0,
                                      falloff=Falloff.LINEAR, name="Explosion"),
    "TORNADO": ForceFieldDescriptor(ForceFieldType.VORTEX_TUBE, strength=30.0, radius=10.0,
                                    falloff=Falloff.SMOOTH, axis=(0.0, 1.0, 0.0), name="Tornado"),
    "WIND": ForceFieldDescriptor(ForceFieldType.DIRECTIONAL, strength=5.0, radius=100.0,
                                 falloff=Falloff.CONSTANT, direction=(1.0, 0.0, 0.0), name="Wind"),
    "TURBULENCE": ForceFieldDescriptor(ForceFieldType.TURBULENCE, strength=15.0, radius=30.0,
                                       falloff=Falloff.QUADRATIC, turbulence_scale=2.0, noise_speed=1.0,
                                       name="Turbulence"),
    "GALAXY_SPIRAL": ForceFieldDescriptor(ForceFieldType.VORTEX, strength=20.0, radius=40.0,
                                          falloff=Falloff.SMOOTH, axis=(0.0, 0.0, 1.0), name="Galaxy Spiral"),
}


def falloff_weight(kind: Falloff, t: float) -> float:
    if kind == Falloff.LINEAR:
        return 1.0 - t
    if kind == Falloff.QUADRATIC:
        return (1.0 - t) ** 2
    if kind == Falloff.SMOOTH:
        return 1.0 - t * t * (3.0 - 2.0 * t)
    return 1.0


def _normalize(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v)
    return v / n if n > 1e-6 else np.zeros(3)


def _curl_noise(p: np.ndarray, speed: float, time: float) -> np.ndarray:
    e = CURL_EPSILON
    diffs = []
    for axis in range(3):
        step = np.zeros(3)
        step[axis] = e
        diffs.append(tri_noise_3d_np(p + step, speed, time) - tri_noise_3d_np(p - step, speed, time))
    px, py, pz = diffs
    return np.array([py[2] - pz[1], pz[0] - px[2], px[1] - py[0]]) / (2.0 * e)


def field_force(descriptor: ForceFieldDescriptor, position, time: float = 0.0) -> np.ndarray:
    """Force of one field at a grid-space position (host-side mirror of the kernel)."""
    if not descriptor.enabled:
        return np.zeros(3)
    pos = np.asarray(position, dtype=np.float64)
    offset = np.asarray(descriptor.position) - pos
    dist = float(np.linalg.norm(offset))
    radius = descriptor.radius
    if dist > radius or radius <= 0.0:
        return np.zeros(3)
    t = min(max(dist / radius, 0.0), 1.0)
    s = descriptor.strength * falloff_weight(descriptor.falloff, t)
    kind = descriptor.type

    if kind == ForceFieldType.ATTRACTOR:
        return _normalize(offset) * s
    if kind == ForceFieldType.REPELLER:
        return -_normalize(offset) * s
    if kind in (ForceFieldType.VORTEX, ForceFieldType.VORTEX_TUBE):
        a = _normalize(np.asarray(descriptor.axis, dtype=np.float64))
        rel = -offset
        along = float(rel @ a)
        radial = rel - along * a
        radial_dist = float(np.linalg.norm(radial))
        if radial_dist <= 0.001:
            return np.zeros(3)
        outward = radial / radial_dist
        tangent = np.cross(a, outward)
        if kind == ForceFieldType.VORTEX:
            return tangent * s - outward * 0.3 * s + a * 0.2 * s
        lift = max(0.0, 1.0 - abs(along) / radius)
        return tangent * 2.0 * s - outward * 0.8 * s + a * 0.5 * s * lift
    if kind == ForceFieldType.TURBULENCE:
        n = tri_noise_3d_np(pos * descriptor.turbulence_scale, descriptor.noise_speed, time)
        return (n - NOISE_CENTER) * 2.0 * s
    if kind == ForceFieldType.DIRECTIONAL:
        return _normalize(np.asarray(descriptor.direction, dtype=np.float64)) * s
    if kind == ForceFieldType.SPHERICAL:
        pulse = np.sin(time * 2.0) * 0.5 + 0.5
        return -_normalize(offset) * s * pulse
    if kind == ForceFieldType.CURL_NOISE:
        return _curl_noise(pos * descriptor.turbulence_scale, descriptor.noise_speed, time) * s
    return np.zeros(3)


class ForceFieldManager:
    """Ordered collection of force fields with integer ids."""

    def __init__(self, max_fields: int = MAX_FORCE_FIELDS):
        self.max_fields = max_fields
        self.enabled = True
        self._fields: Dict[int, ForceFieldDescriptor] = {}
        self._next_id = 0
        self.dirty = True

    def __len__(self) -> int:
        return len(self._fields)

    def add(self, descriptor: Optional[ForceFieldDescriptor] = None, **kwargs) -> int:
        """Register a field and return its id."""
        if len(self._fields) >= self.max_fields:
            raise ValueError(f"At most {self.max_fields} force fields are supported")
        descriptor = descriptor or ForceFieldDescriptor()
        if kwargs:
            descriptor = replace(descriptor, **kwargs)
        field_id = self._next_id
        self._next_id += 1
        self._fields[field_id] = descriptor.normalized()
        self.dirty = True
        return field_id

    def add_preset(self, name: str, **overrides) -> int:
        preset = FORCE_FIELD_PRESETS.get(name.upper())
        if preset is None:
            raise ValueError(f"Unknown force field preset '{name}'. Available: {', '.join(FORCE_FIELD_PRESETS)}")
        return self.add(preset, **overrides)

    def remove(self, field_id: int) -> None:
        if field_id not in self._fields:
            raise KeyError(f"No force field with id {field_id}")
        del self._fields[field_id]
        self.dirty = True

    def update(self, field_id: int, **partial) -> ForceFieldDescriptor:
        """Merge partial values into a field. Invalid values are rejected with a warning."""
        if field_id not in self._fields:
            raise KeyError(f"No force field with id {field_id}")
        known = {f.name for f in fields(ForceFieldDescriptor)}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(f"Unknown force field attributes: {', '.join(sorted(unknown))}")
        current = self._fields[field_id]
        try:
            updated = replace(current, **partial).normalized()
        except ValueError as exc:
            print(f"[ForceFieldManager] Warning: rejected update of field {field_id}: {exc}")
            return current
        self._fields[field_id] = updated
        self.dirty = True
        return updated

    def get(self, field_id: int) -> ForceFieldDescriptor:
        if field_id not in self._fields:
            raise KeyError(f"No force field with id {field_id}")
        return self._fields[field_id]

    def list(self) -> List[ForceFieldDescriptor]:
        return list(self._fields.values())

    def ids(self) -> List[int]:
        return list(self._fields.keys())

    def clear(self) -> None:
        self._fields.clear()
        self.dirty = True

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        self.dirty = True

    def active(self) -> List[ForceFieldDescriptor]:
        """Descriptors to upload this frame (none when the system is switched off)."""
        if not self.enabled:
            return []
        return [d for d in self._fields.values() if d.enabled]

    def force_at(self, position, time: float = 0.0) -> np.ndarray:
        total = np.zeros(3)
        for descriptor in self.active():
            total += field_force(descriptor, position, time)
        return total
