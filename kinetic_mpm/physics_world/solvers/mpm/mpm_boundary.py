"""
MPM boundary handling - containment shapes, collision modes and soft radial containment.
"""
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Optional, Sequence, Tuple

import numpy as np
import taichi as ti

from .mpm_kernels import safe_normalize


class BoundaryShape(IntEnum):
    NONE = 0           # soft radial containment, no walls
    BOX = 1
    SPHERE = 2
    TUBE = 3           # cylinder along z, capped by the box z extents
    DODECAHEDRON = 4   # collides as its circumscribed sphere


class CollisionMode(IntEnum):
    REFLECT = 0
    CLAMP = 1
    WRAP = 2


# Plain ints for use inside kernels
SHAPE_NONE = int(BoundaryShape.NONE)
SHAPE_BOX = int(BoundaryShape.BOX)
SHAPE_TUBE = int(BoundaryShape.TUBE)
MODE_REFLECT = int(CollisionMode.REFLECT)
MODE_WRAP = int(CollisionMode.WRAP)

# Grid nodes only get wall treatment once they are this far outside the shape (cells)
GRID_WALL_MARGIN = 1.0
# Capacity of the diagnostic probe buffers
PROBE_CAPACITY = 4096


def parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown {enum_cls.__name__} '{value}'") from exc
    return enum_cls(int(value))


def fit_envelope(grid_size: Sequence[int], center, half_extents) -> Tuple[np.ndarray, np.ndarray]:
    """Intersect an envelope with the particle range [1, N - 2] the solver clamps positions to."""
    size = np.asarray(grid_size, dtype=np.float64)
    center = np.asarray(center, dtype=np.float64)
    half_extents = np.asarray(half_extents, dtype=np.float64)
    lo = np.maximum(center - half_extents, 1.0)
    hi = np.minimum(center + half_extents, size - 2.0)
    hi = np.maximum(hi, lo + 1.0)
    return (lo + hi) * 0.5, (hi - lo) * 0.5


def default_envelope(grid_size: Sequence[int], wall_thickness: float) -> Tuple[np.ndarray, np.ndarray]:
    """Center and half extents of the whole grid minus the wall layer."""
    size = np.asarray(grid_size, dtype=np.float64)
    center = size * 0.5
    half = np.maximum(center - wall_thickness, 1.0)
    return fit_envelope(grid_size, center, half)


@dataclass
class BoundaryState:
    shape: BoundaryShape = BoundaryShape.NONE
    collision_mode: CollisionMode = CollisionMode.REFLECT
    restitution: float = 0.3  # [0, 1]
    friction: float = 0.1  # [0, 1], tangential loss per contact
    wall_thickness: float = 2.0  # cells
    wall_stiffness: float = 0.3
    enabled: bool = True
    containment_strength: float = 4.0  # cells / s^2 at the ramp end
    soft_start: float = 0.7  # normalized radius where the inward force starts
    soft_ramp_end: float = 0.95  # end of the quadratic ramp, linear growth beyond
    soft_clamp: float = 1.05  # hard position clamp
    center: np.ndarray = field(default_factory=lambda: np.zeros(3))  # grid space
    half_extents: np.ndarray = field(default_factory=lambda: np.ones(3))  # grid space

    @property
    def box_min(self) -> np.ndarray:
        return self.center - self.half_extents

    @property
    def box_max(self) -> np.ndarray:
        return self.center + self.half_extents

    @property
    def radius(self) -> float:
        return float(np.min(self.half_extents))

    @property
    def tube_radius(self) -> float:
        return float(min(self.half_extents[0], self.half_extents[1]))


@ti.data_oriented
class BoundarySystem:
    """Shape-selectable containment applied on grid velocities and particle positions."""

    def __init__(self, grid_size: Sequence[int], state: Optional[BoundaryState] = None):
        """
        Initialize the boundary system.

        Args:
            grid_size: Grid cells per axis
            state: Initial boundary parameters; the envelope defaults to the full grid
        """
        self.grid_size = tuple(int(n) for n in grid_size)
        if state is None:
            state = BoundaryState()
            state.center, state.half_extents = default_envelope(self.grid_size, state.wall_thickness)
        else:
            state.center, state.half_extents = fit_envelope(self.grid_size, state.center, state.half_extents)
        self.state = state

        self.shape = ti.field(dtype=ti.i32, shape=())
        self.mode = ti.field(dtype=ti.i32, shape=())
        self.enabled = ti.field(dtype=ti.i32, shape=())
        self.restitution = ti.field(dtype=ti.f32, shape=())
        self.friction = ti.field(dtype=ti.f32, shape=())
        self.containment_strength = ti.field(dtype=ti.f32, shape=())
        self.soft_start = ti.field(dtype=ti.f32, shape=())
        self.soft_ramp_end = ti.field(dtype=ti.f32, shape=())
        self.soft_clamp = ti.field(dtype=ti.f32, shape=())
        self.center = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.half_extents = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.radius = ti.field(dtype=ti.f32, shape=())
        self.tube_radius = ti.field(dtype=ti.f32, shape=())

        self._probe_x = ti.Vector.field(3, dtype=ti.f32, shape=PROBE_CAPACITY)
        self._probe_v = ti.Vector.field(3, dtype=ti.f32, shape=PROBE_CAPACITY)

        self.set_restitution(state.restitution)
        self.set_friction(state.friction)
        self.set_soft_thresholds(state.soft_start, state.soft_ramp_end, state.soft_clamp)
        self._upload()

    # ------------------------------------------------------------------
    # Host-side configuration (between steps only)
    # ------------------------------------------------------------------

    def _upload(self):
        s = self.state
        self.shape[None] = int(s.shape)
        self.mode[None] = int(s.collision_mode)
        self.enabled[None] = 1 if s.enabled else 0
        self.restitution[None] = s.restitution
        self.friction[None] = s.friction
        self.containment_strength[None] = s.containment_strength
        self.soft_start[None] = s.soft_start
        self.soft_ramp_end[None] = s.soft_ramp_end
        self.soft_clamp[None] = s.soft_clamp
        self.center[None] = ti.Vector([float(c) for c in s.center])
        self.half_extents[None] = ti.Vector([float(h) for h in s.half_extents])
        self.radius[None] = s.radius
        self.tube_radius[None] = s.tube_radius

    def set_shape(self, shape):
        self.state.shape = parse_enum(BoundaryShape, shape)
        self._upload()
        print(f"[BoundarySystem] Shape: {self.state.shape.name}")

    def set_collision_mode(self, mode):
        self.state.collision_mode = parse_enum(CollisionMode, mode)
        self._upload()

    def set_enabled(self, enabled: bool):
        self.state.enabled = bool(enabled)
        self._upload()

    def set_restitution(self, value: float):
        self.state.restitution = self._unit_interval("restitution", value, self.state.restitution)
        self._upload_scalars()

    def set_friction(self, value: float):
        self.state.friction = self._unit_interval("friction", value, self.state.friction)
        self._upload_scalars()

    def set_containment_strength(self, value: float):
        if not np.isfinite(value) or value < 0.0:
            print(f"[BoundarySystem] Warning: invalid containment strength {value}, keeping "
                  f"{self.state.containment_strength}")
            return
        self.state.containment_strength = float(value)
        self._upload_scalars()

    def set_soft_thresholds(self, start: float, ramp_end: float, clamp: float):
        values = (start, ramp_end, clamp)
        if not all(np.isfinite(values)) or not (0.0 <= start < ramp_end < clamp):
            print(f"[BoundarySystem] Warning: invalid soft thresholds {values}, keeping "
                  f"({self.state.soft_start}, {self.state.soft_ramp_end}, {self.state.soft_clamp})")
            return
        self.state.soft_start, self.state.soft_ramp_end, self.state.soft_clamp = (float(v) for v in values)
        self._upload_scalars()

    def set_envelope(self, center, half_extents):
        """Install the usable region (grid space) derived by the viewport tracker."""
        center = np.asarray(center, dtype=np.float64).reshape(3)
        half_extents = np.asarray(half_extents, dtype=np.float64).reshape(3)
        if not (np.isfinite(center).all() and np.isfinite(half_extents).all()) or (half_extents <= 0.0).any():
            print(f"[BoundarySystem] Warning: invalid envelope {center}, {half_extents}, keeping previous")
            return
        self.state.center, self.state.half_extents = fit_envelope(self.grid_size, center, half_extents)
        self._upload()

    def _upload_scalars(self):
        self.restitution[None] = self.state.restitution
        self.friction[None] = self.state.friction
        self.containment_strength[None] = self.state.containment_strength
        self.soft_start[None] = self.state.soft_start
        self.soft_ramp_end[None] = self.state.soft_ramp_end
        self.soft_clamp[None] = self.state.soft_clamp

    @staticmethod
    def _unit_interval(name: str, value: float, previous: float) -> float:
        if not np.isfinite(value):
            print(f"[BoundarySystem] Warning: {name} is not finite, keeping {previous}")
            return previous
        return float(min(max(value, 0.0), 1.0))

    def snapshot(self) -> BoundaryState:
        return replace(self.state, center=self.state.center.copy(), half_extents=self.state.half_extents.copy())

    # ------------------------------------------------------------------
    # Taichi functions used by the solver
    # ------------------------------------------------------------------

    @ti.func
    def _soft_magnitude(self, r):
        start = self.soft_start[None]
        ramp_end = self.soft_ramp_end[None]
        strength = self.containment_strength[None]
        magnitude = 0.0
        if r > ramp_end:
            magnitude = strength * (1.0 + 20.0 * (r - ramp_end))
        elif r > start:
            t = (r - start) / (ramp_end - start)
            magnitude = strength * t * t
        return magnitude

    @ti.func
    def soft_containment(self, pos):
        """Inward acceleration of the soft radial envelope at a grid-space position."""
        offset = pos - self.center[None]
        r = (offset / self.half_extents[None]).norm()
        return -safe_normalize(offset) * self._soft_magnitude(r)

    @ti.func
    def _wall_response(self, vel, n):
        """Reflect or clamp the component of vel along the outward normal n."""
        result = vel
        vn = vel.dot(n)
        if vn > 0.0:
            tangential = (vel - vn * n) * (1.0 - self.friction[None])
            if self.mode[None] == MODE_REFLECT:
                result = tangential - self.restitution[None] * vn * n
            else:
                result = tangential
        return result

    @ti.func
    def grid_velocity(self, pos, vel, dt):
        """
        Apply the containment policy to a resolved grid-node velocity.

        Args:
            pos: Node position in grid space (cell center)
            vel: Node velocity after global forces
            dt: Time step
        """
        result = vel
        if self.enabled[None] == 1:
            shape = self.shape[None]
            c = self.center[None]
            h = self.half_extents[None]
            if shape == SHAPE_NONE:
                result = vel + self.soft_containment(pos) * dt
            elif self.mode[None] != MODE_WRAP:
                if shape == SHAPE_BOX or shape == SHAPE_TUBE:
                    for d in ti.static(range(3)):
                        walled = shape == SHAPE_BOX
                        if ti.static(d == 2):
                            walled = True
                        if walled:
                            n = ti.Vector.zero(ti.f32, 3)
                            n[d] = 1.0
                            if pos[d] > c[d] + h[d] + GRID_WALL_MARGIN:
                                result = self._wall_response(result, n)
                            elif pos[d] < c[d] - h[d] - GRID_WALL_MARGIN:
                                result = self._wall_response(result, -n)
                    if shape == SHAPE_TUBE:
                        radial = ti.Vector([pos[0] - c[0], pos[1] - c[1], 0.0])
                        if radial.norm() > self.tube_radius[None] + GRID_WALL_MARGIN:
                            result = self._wall_response(result, safe_normalize(radial))
                else:
                    offset = pos - c
                    if offset.norm() > self.radius[None] + GRID_WALL_MARGIN:
                        result = self._wall_response(result, safe_normalize(offset))
        return result

    @ti.func
    def resolve_particle(self, x: ti.template(), v: ti.template(), p):
        """
        Particle-level safety net: keep particle p inside the active shape.

        Args:
            x: Particle position field (modified in place)
            v: Particle velocity field (modified in place)
            p: Particle index
        """
        if self.enabled[None] == 1:
            pos = x[p]
            vel = v[p]
            shape = self.shape[None]
            mode = self.mode[None]
            c = self.center[None]
            h = self.half_extents[None]
            if shape == SHAPE_NONE:
                offset = pos - c
                r = (offset / h).norm()
                limit = self.soft_clamp[None]
                if r > limit:
                    pos = c + offset * (limit / r)
                    n = safe_normalize(offset)
                    vn = vel.dot(n)
                    if vn > 0.0:
                        vel -= vn * n
            elif shape == SHAPE_BOX or shape == SHAPE_TUBE:
                for d in ti.static(range(3)):
                    walled = shape == SHAPE_BOX
                    if ti.static(d == 2):
                        walled = True
                    if walled:
                        lo = c[d] - h[d]
                        hi = c[d] + h[d]
                        if mode == MODE_WRAP:
                            if pos[d] < lo:
                                pos[d] += hi - lo
                            elif pos[d] > hi:
                                pos[d] -= hi - lo
                        elif pos[d] < lo or pos[d] > hi:
                            n = ti.Vector.zero(ti.f32, 3)
                            n[d] = ti.select(pos[d] > hi, 1.0, -1.0)
                            pos[d] = ti.min(ti.max(pos[d], lo), hi)
                            vel = self._wall_response(vel, n)
                if shape == SHAPE_TUBE:
                    radial = ti.Vector([pos[0] - c[0], pos[1] - c[1], 0.0])
                    dist = radial.norm()
                    R = self.tube_radius[None]
                    if dist > R and dist > 1e-6:
                        n = radial / dist
                        if mode == MODE_WRAP:
                            pos -= n * (dist + R * 0.999)
                        else:
                            pos -= n * (dist - R)
                            vel = self._wall_response(vel, n)
            else:
                offset = pos - c
                dist = offset.norm()
                R = self.radius[None]
                if dist > R and dist > 1e-6:
                    n = offset / dist
                    if mode == MODE_WRAP:
                        pos = c - n * R * 0.999
                    else:
                        pos = c + n * R
                        vel = self._wall_response(vel, n)
            x[p] = pos
            v[p] = vel

    # ------------------------------------------------------------------
    # Diagnostic sampling of the Taichi versions
    # ------------------------------------------------------------------

    @ti.kernel
    def _sample_containment(self, positions: ti.types.ndarray(), out: ti.types.ndarray()):
        for i in range(positions.shape[0]):
            f = self.soft_containment(ti.Vector([positions[i, 0], positions[i, 1], positions[i, 2]]))
            for d in ti.static(range(3)):
                out[i, d] = f[d]

    def sample_containment(self, positions: np.ndarray) -> np.ndarray:
        """Evaluate the kernel soft-containment force at (N, 3) grid-space positions."""
        positions = np.ascontiguousarray(positions, dtype=np.float32).reshape(-1, 3)
        out = np.zeros_like(positions)
        self._sample_containment(positions, out)
        return out

    @ti.kernel
    def _resolve_probes(self, n: ti.i32):
        for i in range(n):
            self.resolve_particle(self._probe_x, self._probe_v, i)

    def sample_collision(self, positions: np.ndarray, velocities: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Run the kernel collision response on (N, 3) probe particles."""
        positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
        velocities = np.asarray(velocities, dtype=np.float32).reshape(-1, 3)
        n = len(positions)
        if n > PROBE_CAPACITY:
            raise ValueError(f"At most {PROBE_CAPACITY} probes per call, got {n}")
        xs = np.zeros((PROBE_CAPACITY, 3), dtype=np.float32)
        vs = np.zeros((PROBE_CAPACITY, 3), dtype=np.float32)
        xs[:n] = positions
        vs[:n] = velocities
        self._probe_x.from_numpy(xs)
        self._probe_v.from_numpy(vs)
        self._resolve_probes(n)
        return self._probe_x.to_numpy()[:n], self._probe_v.to_numpy()[:n]

    # ------------------------------------------------------------------
    # CPU mirrors
    # ------------------------------------------------------------------

    def _soft_magnitude_np(self, r: float) -> float:
        s = self.state
        if r > s.soft_ramp_end:
            return s.containment_strength * (1.0 + 20.0 * (r - s.soft_ramp_end))
        if r > s.soft_start:
            t = (r - s.soft_start) / (s.soft_ramp_end - s.soft_start)
            return s.containment_strength * t * t
        return 0.0

    def containment_force(self, position) -> np.ndarray:
        """Soft-containment acceleration at a grid-space position."""
        offset = np.asarray(position, dtype=np.float64) - self.state.center
        dist = np.linalg.norm(offset)
        if dist <= 1e-6:
            return np.zeros(3)
        r = np.linalg.norm(offset / self.state.half_extents)
        return -offset / dist * self._soft_magnitude_np(r)

    def _wall_response_np(self, vel: np.ndarray, n: np.ndarray) -> np.ndarray:
        vn = float(vel @ n)
        if vn <= 0.0:
            return vel
        tangential = (vel - vn * n) * (1.0 - self.state.friction)
        if self.state.collision_mode == CollisionMode.REFLECT:
            return tangential - self.state.restitution * vn * n
        return tangential

    def resolve_collision(self, position, velocity) -> Tuple[np.ndarray, np.ndarray]:
        """
        Apply the particle-level collision response to one particle.

        Returns:
            (position', velocity')
        """
        s = self.state
        pos = np.asarray(position, dtype=np.float64).copy()
        vel = np.asarray(velocity, dtype=np.float64).copy()
        if not s.enabled:
            return pos, vel
        c, h = s.center, s.half_extents
        if s.shape == BoundaryShape.NONE:
            offset = pos - c
            r = np.linalg.norm(offset / h)
            if r > s.soft_clamp:
                pos = c + offset * (s.soft_clamp / r)
                n = offset / np.linalg.norm(offset)
                vn = vel @ n
                if vn > 0.0:
                    vel = vel - vn * n
        elif s.shape in (BoundaryShape.BOX, BoundaryShape.TUBE):
            axes = range(3) if s.shape == BoundaryShape.BOX else (2,)
            for d in axes:
                lo, hi = c[d] - h[d], c[d] + h[d]
                if s.collision_mode == CollisionMode.WRAP:
                    if pos[d] < lo:
                        pos[d] += hi - lo
                    elif pos[d] > hi:
                        pos[d] -= hi - lo
                elif pos[d] < lo or pos[d] > hi:
                    n = np.zeros(3)
                    n[d] = 1.0 if pos[d] > hi else -1.0
                    pos[d] = min(max(pos[d], lo), hi)
                    vel = self._wall_response_np(vel, n)
            if s.shape == BoundaryShape.TUBE:
                radial = np.array([pos[0] - c[0], pos[1] - c[1], 0.0])
                dist = np.linalg.norm(radial)
                R = s.tube_radius
                if dist > R and dist > 1e-6:
                    n = radial / dist
                    if s.collision_mode == CollisionMode.WRAP:
                        pos = pos - n * (dist + R * 0.999)
                    else:
                        pos = pos - n * (dist - R)
                        vel = self._wall_response_np(vel, n)
        else:
            offset = pos - c
            dist = np.linalg.norm(offset)
            R = s.radius
            if dist > R and dist > 1e-6:
                n = offset / dist
                if s.collision_mode == CollisionMode.WRAP:
                    pos = c - n * R * 0.999
                else:
                    pos = c + n * R
                    vel = self._wall_response_np(vel, n)
        return pos, vel
