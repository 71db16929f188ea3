"""
MPM force-field buffer - packed field descriptors sampled per particle in G2P.
"""
from typing import Sequence

import numpy as np
import taichi as ti

from .mpm_kernels import safe_normalize, tri_noise_3d

MAX_FORCE_FIELDS = 8

# Field types
ATTRACTOR = 0
REPELLER = 1
VORTEX = 2
TURBULENCE = 3
DIRECTIONAL = 4
VORTEX_TUBE = 5
SPHERICAL = 6
CURL_NOISE = 7

# Falloff curves
FALLOFF_CONSTANT = 0
FALLOFF_LINEAR = 1
FALLOFF_QUADRATIC = 2
FALLOFF_SMOOTH = 3

NOISE_CENTER = 0.285
CURL_EPSILON = 0.1


@ti.func
def falloff_weight(kind, t):
    """Falloff curve value for normalized distance t in [0, 1]."""
    w = 1.0
    if kind == FALLOFF_LINEAR:
        w = 1.0 - t
    elif kind == FALLOFF_QUADRATIC:
        w = (1.0 - t) * (1.0 - t)
    elif kind == FALLOFF_SMOOTH:
        w = 1.0 - t * t * (3.0 - 2.0 * t)
    return w


@ti.func
def curl_noise(p, speed, time):
    """Curl of the tri-noise vector potential by central differences."""
    e = CURL_EPSILON
    dx = ti.Vector([e, 0.0, 0.0])
    dy = ti.Vector([0.0, e, 0.0])
    dz = ti.Vector([0.0, 0.0, e])
    px = tri_noise_3d(p + dx, speed, time) - tri_noise_3d(p - dx, speed, time)
    py = tri_noise_3d(p + dy, speed, time) - tri_noise_3d(p - dy, speed, time)
    pz = tri_noise_3d(p + dz, speed, time) - tri_noise_3d(p - dz, speed, time)
    return ti.Vector([
        py[2] - pz[1],
        pz[0] - px[2],
        px[1] - py[0],
    ]) / (2.0 * e)


@ti.data_oriented
class ForceFieldBuffer:
    """Snapshot of the enabled force fields, uploaded between steps."""

    def __init__(self):
        n = MAX_FORCE_FIELDS
        self.kind = ti.field(dtype=ti.i32, shape=n)
        self.falloff = ti.field(dtype=ti.i32, shape=n)
        self.position = ti.Vector.field(3, dtype=ti.f32, shape=n)   # grid space
        self.direction = ti.Vector.field(3, dtype=ti.f32, shape=n)
        self.axis = ti.Vector.field(3, dtype=ti.f32, shape=n)
        self.strength = ti.field(dtype=ti.f32, shape=n)
        self.radius = ti.field(dtype=ti.f32, shape=n)
        self.scale = ti.field(dtype=ti.f32, shape=n)
        self.speed = ti.field(dtype=ti.f32, shape=n)
        self.count = ti.field(dtype=ti.i32, shape=())

    def upload(self, descriptors: Sequence):
        """Pack enabled descriptors (at most MAX_FORCE_FIELDS) into the buffer."""
        enabled = [d for d in descriptors if d.enabled]
        if len(enabled) > MAX_FORCE_FIELDS:
            print(f"[ForceFieldBuffer] Warning: {len(enabled)} enabled fields, uploading first {MAX_FORCE_FIELDS}")
            enabled = enabled[:MAX_FORCE_FIELDS]
        n = MAX_FORCE_FIELDS
        kind = np.zeros(n, dtype=np.int32)
        falloff = np.zeros(n, dtype=np.int32)
        position = np.zeros((n, 3), dtype=np.float32)
        direction = np.zeros((n, 3), dtype=np.float32)
        axis = np.zeros((n, 3), dtype=np.float32)
        scalars = np.zeros((4, n), dtype=np.float32)
        for i, d in enumerate(enabled):
            kind[i] = int(d.type)
            falloff[i] = int(d.falloff)
            position[i] = d.position
            direction[i] = d.direction
            axis[i] = d.axis
            scalars[:, i] = (d.strength, d.radius, d.turbulence_scale, d.noise_speed)
        self.kind.from_numpy(kind)
        self.falloff.from_numpy(falloff)
        self.position.from_numpy(position)
        self.direction.from_numpy(direction)
        self.axis.from_numpy(axis)
        self.strength.from_numpy(scalars[0])
        self.radius.from_numpy(scalars[1])
        self.scale.from_numpy(scalars[2])
        self.speed.from_numpy(scalars[3])
        self.count[None] = len(enabled)

    @ti.func
    def field_force(self, i, pos, time):
        force = ti.Vector.zero(ti.f32, 3)
        offset = self.position[i] - pos
        dist = offset.norm()
        radius = self.radius[i]
        if dist <= radius and radius > 0.0:
            t = ti.min(ti.max(dist / radius, 0.0), 1.0)
            s = self.strength[i] * falloff_weight(self.falloff[i], t)
            kind = self.kind[i]
            if kind == ATTRACTOR:
                force = safe_normalize(offset) * s
            elif kind == REPELLER:
                force = -safe_normalize(offset) * s
            elif kind == VORTEX or kind == VORTEX_TUBE:
                a = safe_normalize(self.axis[i])
                rel = -offset
                along = rel.dot(a)
                radial = rel - along * a
                radial_dist = radial.norm()
                if radial_dist > 0.001:
                    outward = radial / radial_dist
                    tangent = a.cross(outward)
                    if kind == VORTEX:
                        force = tangent * s - outward * 0.3 * s + a * 0.2 * s
                    else:
                        lift = ti.max(0.0, 1.0 - ti.abs(along) / radius)
                        force = tangent * 2.0 * s - outward * 0.8 * s + a * 0.5 * s * lift
            elif kind == TURBULENCE:
                n = tri_noise_3d(pos * self.scale[i], self.speed[i], time)
                force = (n - NOISE_CENTER) * 2.0 * s
            elif kind == DIRECTIONAL:
                force = safe_normalize(self.direction[i]) * s
            elif kind == SPHERICAL:
                pulse = ti.sin(time * 2.0) * 0.5 + 0.5
                force = -safe_normalize(offset) * s * pulse
            elif kind == CURL_NOISE:
                force = curl_noise(pos * self.scale[i], self.speed[i], time) * s
        return force

    @ti.func
    def force_at(self, pos, time):
        """Sum of every uploaded field at a grid-space position."""
        total = ti.Vector.zero(ti.f32, 3)
        for i in range(self.count[None]):
            total += self.field_force(i, pos, time)
        return total

    @ti.kernel
    def _sample(self, positions: ti.types.ndarray(), time: ti.f32, out: ti.types.ndarray()):
        for i in range(positions.shape[0]):
            f = self.force_at(ti.Vector([positions[i, 0], positions[i, 1], positions[i, 2]]), time)
            for d in ti.static(range(3)):
                out[i, d] = f[d]

    def sample(self, positions: np.ndarray, time: float = 0.0) -> np.ndarray:
        """Evaluate the uploaded fields at (N, 3) grid-space positions."""
        positions = np.ascontiguousarray(positions, dtype=np.float32).reshape(-1, 3)
        out = np.zeros_like(positions)
        self._sample(positions, time, out)
        return out
