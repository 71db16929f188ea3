"""
MPM particle store - fixed-capacity structure-of-arrays particle buffers.
"""
from typing import Dict, Optional

import numpy as np
import taichi as ti


@ti.data_oriented
class ParticleStore:
    """Manages MPM particle state (positions, velocities, affine matrices, lifecycle, etc.)"""

    def __init__(self, max_particles: int):
        """
        Initialize the particle store.

        Args:
            max_particles: Number of particle slots (live and recyclable)
        """
        if not np.isfinite(max_particles) or max_particles < 1:
            print(f"[ParticleStore] Warning: max_particles={max_particles} is invalid, using 1")
            max_particles = 1
        self.max_particles = int(max_particles)

        # Particle data (using Taichi fields for GPU acceleration)
        self.x = ti.Vector.field(3, dtype=ti.f32, shape=self.max_particles)      # grid-space positions
        self.v = ti.Vector.field(3, dtype=ti.f32, shape=self.max_particles)      # velocities (cells/s)
        self.C = ti.Matrix.field(3, 3, dtype=ti.f32, shape=self.max_particles)   # APIC affine matrix
        self.F = ti.Matrix.field(3, 3, dtype=ti.f32, shape=self.max_particles)   # deformation gradient
        self.Jp = ti.field(dtype=ti.f32, shape=self.max_particles)               # plastic volume ratio

        # Particle properties
        self.mass = ti.field(dtype=ti.f32, shape=self.max_particles)
        self.density = ti.field(dtype=ti.f32, shape=self.max_particles)          # smoothed grid density
        self.material = ti.field(dtype=ti.i32, shape=self.max_particles)         # MaterialType id
        self.phase = ti.field(dtype=ti.i32, shape=self.max_particles)
        self.temperature = ti.field(dtype=ti.f32, shape=self.max_particles)

        # Lifecycle
        self.age = ti.field(dtype=ti.f32, shape=self.max_particles)              # seconds (s)
        self.lifetime = ti.field(dtype=ti.f32, shape=self.max_particles)         # seconds (s), <= 0 immortal
        self.active = ti.field(dtype=ti.i32, shape=self.max_particles)

        # Slots [0, high_water) have been used at least once; kernels only visit those
        self.high_water = ti.field(dtype=ti.i32, shape=())

    @ti.kernel
    def live_count(self) -> ti.i32:
        """Number of active particles."""
        count = 0
        for p in range(self.high_water[None]):
            if self.active[p] == 1:
                count += 1
        return count

    def free_slots(self, count: int) -> np.ndarray:
        """
        Pick up to `count` writable slots: dead slots first, then never-used ones.

        Returns:
            int32 array of slot indices, shorter than `count` when the store is full
        """
        if count <= 0:
            return np.zeros(0, dtype=np.int32)
        hw = self.high_water[None]
        active = self.active.to_numpy()[:hw]
        dead = np.flatnonzero(active == 0)
        fresh = np.arange(hw, min(self.max_particles, hw + count))
        return np.concatenate([dead, fresh])[:count].astype(np.int32)

    def allocate(self, count: int) -> np.ndarray:
        """Reserve slots for `count` new particles, warning when the store cannot hold them all."""
        slots = self.free_slots(count)
        if len(slots) < count:
            print(f"[ParticleStore] Warning: store full, allocated {len(slots)}/{count} slots")
        return slots

    def write_particles(self,
                        indices: np.ndarray,
                        positions: np.ndarray,
                        velocities: Optional[np.ndarray] = None,
                        masses: Optional[np.ndarray] = None,
                        materials: Optional[np.ndarray] = None,
                        lifetimes: Optional[np.ndarray] = None):
        """
        Activate and initialise particles at the given slots.

        Args:
            indices: Slot indices (N,)
            positions: Grid-space positions (N, 3)
            velocities: Initial velocities (N, 3), zero when omitted
            masses: Particle masses (N,), 1.0 when omitted
            materials: MaterialType ids (N,), FLUID when omitted
            lifetimes: Lifetimes in seconds (N,), immortal when omitted
        """
        indices = np.ascontiguousarray(indices, dtype=np.int32).reshape(-1)
        n = len(indices)
        if n == 0:
            return
        if indices.max() >= self.max_particles or indices.min() < 0:
            raise ValueError(f"Slot index out of range: [{indices.min()}, {indices.max()}] vs {self.max_particles}")
        positions = np.ascontiguousarray(positions, dtype=np.float32).reshape(n, 3)
        if velocities is None:
            velocities = np.zeros((n, 3), dtype=np.float32)
        velocities = np.ascontiguousarray(velocities, dtype=np.float32).reshape(n, 3)
        if masses is None:
            masses = np.ones(n, dtype=np.float32)
        masses = np.ascontiguousarray(masses, dtype=np.float32).reshape(n)
        if materials is None:
            materials = np.zeros(n, dtype=np.int32)
        materials = np.ascontiguousarray(materials, dtype=np.int32).reshape(n)
        if lifetimes is None:
            lifetimes = np.zeros(n, dtype=np.float32)
        lifetimes = np.ascontiguousarray(lifetimes, dtype=np.float32).reshape(n)

        if not (np.isfinite(positions).all() and np.isfinite(velocities).all()):
            print("[ParticleStore] Warning: non-finite particle state in write, replacing with zeros")
            positions = np.nan_to_num(positions, nan=0.0, posinf=0.0, neginf=0.0)
            velocities = np.nan_to_num(velocities, nan=0.0, posinf=0.0, neginf=0.0)
        bad_mass = ~(np.isfinite(masses) & (masses > 0.0))
        if bad_mass.any():
            print(f"[ParticleStore] Warning: {int(bad_mass.sum())} particles with invalid mass, using 1.0")
            masses = np.where(bad_mass, 1.0, masses).astype(np.float32)

        self._write_particles(indices, positions, velocities, masses, materials, lifetimes)

    @ti.kernel
    def _write_particles(self,
                         indices: ti.types.ndarray(),
                         positions: ti.types.ndarray(),
                         velocities: ti.types.ndarray(),
                         masses: ti.types.ndarray(),
                         materials: ti.types.ndarray(),
                         lifetimes: ti.types.ndarray()):
        for n in range(indices.shape[0]):
            p = indices[n]
            self.x[p] = ti.Vector([positions[n, 0], positions[n, 1], positions[n, 2]])
            self.v[p] = ti.Vector([velocities[n, 0], velocities[n, 1], velocities[n, 2]])
            self.C[p] = ti.Matrix.zero(ti.f32, 3, 3)
            self.F[p] = ti.Matrix.identity(ti.f32, 3)
            self.Jp[p] = 1.0
            self.mass[p] = masses[n]
            self.density[p] = 0.0
            self.material[p] = materials[n]
            self.phase[p] = 0
            self.temperature[p] = 0.0
            self.age[p] = 0.0
            self.lifetime[p] = lifetimes[n]
            self.active[p] = 1
            ti.atomic_max(self.high_water[None], p + 1)

    def kill(self, indices: np.ndarray):
        """Deactivate particles; their slots become recyclable."""
        indices = np.ascontiguousarray(indices, dtype=np.int32).reshape(-1)
        if len(indices) == 0:
            return
        self._kill(indices)

    @ti.kernel
    def _kill(self, indices: ti.types.ndarray()):
        for n in range(indices.shape[0]):
            self.active[indices[n]] = 0

    def seed_sphere(self,
                    count: int,
                    center: np.ndarray,
                    radius: float,
                    mass: float = 1.0,
                    material: int = 0,
                    rng: Optional[np.random.Generator] = None) -> int:
        """
        Bulk-initialise particles uniformly inside a sphere.

        Returns:
            Number of particles actually written
        """
        if rng is None:
            rng = np.random.default_rng(0)
        slots = self.allocate(count)
        n = len(slots)
        if n == 0:
            return 0
        direction = rng.normal(size=(n, 3))
        direction /= np.maximum(np.linalg.norm(direction, axis=1, keepdims=True), 1e-8)
        r = radius * np.cbrt(rng.random(n))
        positions = np.asarray(center, dtype=np.float64) + direction * r[:, None]
        masses = mass * (1.0 - rng.random(n) * 0.002)
        self.write_particles(
            slots,
            positions,
            masses=masses,
            materials=np.full(n, material, dtype=np.int32),
        )
        return n

    def _live_mask(self) -> np.ndarray:
        hw = self.high_water[None]
        return self.active.to_numpy()[:hw] == 1

    def get_positions(self) -> np.ndarray:
        """Get live particle positions as numpy array."""
        mask = self._live_mask()
        return self.x.to_numpy()[:len(mask)][mask]

    def get_velocities(self) -> np.ndarray:
        """Get live particle velocities as numpy array."""
        mask = self._live_mask()
        return self.v.to_numpy()[:len(mask)][mask]

    def snapshot(self) -> Dict[str, np.ndarray]:
        """Read back the render-facing attributes of every live particle."""
        mask = self._live_mask()
        hw = len(mask)
        return {
            "positions": self.x.to_numpy()[:hw][mask],
            "velocities": self.v.to_numpy()[:hw][mask],
            "affine": self.C.to_numpy()[:hw][mask],
            "masses": self.mass.to_numpy()[:hw][mask],
            "densities": self.density.to_numpy()[:hw][mask],
            "materials": self.material.to_numpy()[:hw][mask],
            "ages": self.age.to_numpy()[:hw][mask],
        }

    def clear(self):
        """Deactivate all particles."""
        self.active.fill(0)
        self.high_water[None] = 0
