"""
MPM solver - main Material Point Method simulation engine.

Each step runs five kernels in order: clear grid, P2G momentum, P2G stress,
grid update (plus the vorticity pass) and G2P.
"""
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence

import numpy as np
import taichi as ti

from ...state import StepStats
from .mpm_boundary import BoundarySystem
from .mpm_forces import ForceFieldBuffer
from .mpm_grid import GridStore
from .mpm_kernels import (
    is_finite_mat3,
    is_finite_vec3,
    safe_normalize,
    stencil_base,
    stencil_weights,
    tri_noise_3d,
)
from .mpm_kinetic import KineticUniforms
from .mpm_materials import ELASTIC, RIGID, SNOW, MaterialTable
from .mpm_state import ParticleStore


class TransferMode(IntEnum):
    PIC = 0     # APIC: velocity and C both from the grid
    FLIP = 1    # particle velocity + grid velocity change
    HYBRID = 2  # blend of the two by flip_ratio


class GravityType(IntEnum):
    VECTOR = 0  # uniform gravity vector
    CENTER = 1  # pull toward the grid center


TRANSFER_PIC = int(TransferMode.PIC)
TRANSFER_FLIP = int(TransferMode.FLIP)
GRAVITY_VECTOR = int(GravityType.VECTOR)
GRAVITY_CENTER = int(GravityType.CENTER)

DEFAULT_DT = 1.0 / 60.0
DEFAULT_CENTER_GRAVITY = 0.3
MOUSE_HISTORY = 3


@dataclass
class SolverParams:
    gravity: Sequence[float] = (0.0, -9.8, 0.0)  # cells / s^2
    gravity_type: GravityType = GravityType.VECTOR
    noise: float = 0.0  # ambient tri-noise turbulence scale
    transfer_mode: TransferMode = TransferMode.PIC
    flip_ratio: float = 0.95
    vorticity_enabled: bool = False
    vorticity_epsilon: float = 0.0
    surface_tension_enabled: bool = False
    max_speed: float = 60.0  # cells / s
    time_scale: float = 1.0
    min_dt: float = 1e-4  # s
    max_dt: float = 0.1  # s
    adaptive_dt: bool = False
    cfl: float = 0.5
    force_fields_enabled: bool = True
    kinetic_enabled: bool = True
    debug_interval: int = 0  # steps between debug prints, 0 = off


@ti.data_oriented
class MPMSolver:
    """Main MPM solver using Taichi for GPU acceleration."""

    def __init__(self,
                 particles: ParticleStore,
                 grid: GridStore,
                 materials: MaterialTable,
                 boundary: BoundarySystem,
                 force_fields: Optional[ForceFieldBuffer] = None,
                 kinetic: Optional[KineticUniforms] = None,
                 params: Optional[SolverParams] = None):
        """
        Initialize MPM solver.

        Args:
            particles: Particle store advanced by the solver
            grid: Background grid (dx = 1, grid space)
            materials: Constitutive parameter table
            boundary: Containment policy
            force_fields: Uploaded force fields (empty buffer when omitted)
            kinetic: Kinetic channel uniforms (zero state when omitted)
            params: Global simulation parameters
        """
        self.particles = particles
        self.grid = grid
        self.materials = materials
        self.boundary = boundary
        self.fields = force_fields if force_fields is not None else ForceFieldBuffer()
        self.kinetic = kinetic if kinetic is not None else KineticUniforms()
        self.params = params or SolverParams()

        n = self.grid.grid_size
        # Compile-time constants (grid space)
        self.lower = (1.0, 1.0, 1.0)
        self.upper = tuple(float(s - 2) for s in n)
        self.extent = tuple(float(s - 1) for s in n)
        self.grid_center = tuple(s * 0.5 for s in n)
        self.grid_length = float(max(n))

        # Per-step uniforms
        self.dt = ti.field(dtype=ti.f32, shape=())
        self.time = ti.field(dtype=ti.f32, shape=())
        self.gravity = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.gravity_type = ti.field(dtype=ti.i32, shape=())
        self.center_gravity = ti.field(dtype=ti.f32, shape=())
        self.noise = ti.field(dtype=ti.f32, shape=())
        self.transfer_mode = ti.field(dtype=ti.i32, shape=())
        self.flip_ratio = ti.field(dtype=ti.f32, shape=())
        self.vorticity_enabled = ti.field(dtype=ti.i32, shape=())
        self.vorticity_epsilon = ti.field(dtype=ti.f32, shape=())
        self.surface_tension_enabled = ti.field(dtype=ti.i32, shape=())
        self.max_speed = ti.field(dtype=ti.f32, shape=())
        self.force_fields_enabled = ti.field(dtype=ti.i32, shape=())
        self.kinetic_enabled = ti.field(dtype=ti.i32, shape=())
        self.mouse_origin = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.mouse_direction = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.mouse_force = ti.Vector.field(3, dtype=ti.f32, shape=())
        self._mouse_positions = deque(maxlen=MOUSE_HISTORY)

        # Diagnostics
        self.repaired = ti.field(dtype=ti.i32, shape=())
        self.stat_count = ti.field(dtype=ti.i32, shape=())
        self.stat_speed_sum = ti.field(dtype=ti.f32, shape=())
        self.stat_speed_max = ti.field(dtype=ti.f32, shape=())
        self.stat_density_sum = ti.field(dtype=ti.f32, shape=())
        self.stat_min = ti.Vector.field(3, dtype=ti.f32, shape=())
        self.stat_max = ti.Vector.field(3, dtype=ti.f32, shape=())

        self.step_count = 0
        self.configure(self.params)

        print(f"[MPMSolver] Initialized with max_particles={particles.max_particles}, "
              f"grid={n[0]}x{n[1]}x{n[2]}")
        print(f"[MPMSolver] Transfer: {self.params.transfer_mode.name}, "
              f"gravity={tuple(self.params.gravity)} ({self.params.gravity_type.name})")

    # ------------------------------------------------------------------
    # Host-side parameters
    # ------------------------------------------------------------------

    def configure(self, params: SolverParams):
        """Validate and upload global parameters (between steps only)."""
        gravity = np.asarray(params.gravity, dtype=np.float64).reshape(3)
        if not np.isfinite(gravity).all():
            print(f"[MPMSolver] Warning: non-finite gravity {gravity}, using zero")
            gravity = np.zeros(3)
        params.gravity = tuple(float(g) for g in gravity)
        params.gravity_type = GravityType(int(params.gravity_type))
        params.transfer_mode = TransferMode(int(params.transfer_mode))
        params.flip_ratio = float(min(max(params.flip_ratio, 0.0), 1.0))
        if not np.isfinite(params.max_speed) or params.max_speed <= 0.0:
            print(f"[MPMSolver] Warning: invalid max_speed {params.max_speed}, using 60")
            params.max_speed = 60.0
        if not (0.0 < params.min_dt <= params.max_dt):
            raise ValueError(f"Invalid dt range [{params.min_dt}, {params.max_dt}]")
        self.params = params

        self.gravity[None] = ti.Vector(list(params.gravity))
        self.gravity_type[None] = int(params.gravity_type)
        magnitude = float(np.linalg.norm(gravity))
        self.center_gravity[None] = magnitude if magnitude > 0.0 else DEFAULT_CENTER_GRAVITY
        self.noise[None] = params.noise
        self.transfer_mode[None] = int(params.transfer_mode)
        self.flip_ratio[None] = params.flip_ratio
        self.vorticity_enabled[None] = int(params.vorticity_enabled)
        self.vorticity_epsilon[None] = params.vorticity_epsilon
        self.surface_tension_enabled[None] = int(params.surface_tension_enabled)
        self.max_speed[None] = params.max_speed
        self.force_fields_enabled[None] = int(params.force_fields_enabled)
        self.kinetic_enabled[None] = int(params.kinetic_enabled)

    def set_mouse_ray(self, origin, direction, position):
        """
        Update the pointer ray (grid space).

        The interaction force is the averaged motion of the last three pointer positions.
        """
        origin = np.asarray(origin, dtype=np.float64).reshape(3)
        direction = np.asarray(direction, dtype=np.float64).reshape(3)
        position = np.asarray(position, dtype=np.float64).reshape(3)
        if not (np.isfinite(origin).all() and np.isfinite(direction).all() and np.isfinite(position).all()):
            print("[MPMSolver] Warning: non-finite mouse ray ignored")
            return
        norm = np.linalg.norm(direction)
        direction = direction / norm if norm > 1e-8 else np.zeros(3)
        self._mouse_positions.append(position)
        force = (self._mouse_positions[-1] - self._mouse_positions[0]) / len(self._mouse_positions)
        self.mouse_origin[None] = ti.Vector(list(origin))
        self.mouse_direction[None] = ti.Vector(list(direction))
        self.mouse_force[None] = ti.Vector(list(force))

    def clear_mouse(self):
        self._mouse_positions.clear()
        self.mouse_force[None] = ti.Vector([0.0, 0.0, 0.0])

    def resolve_dt(self, dt: float) -> float:
        """Scale, validate and clamp the frame time step."""
        p = self.params
        scaled = dt * p.time_scale if np.isfinite(dt) else dt
        if not np.isfinite(scaled) or scaled <= 0.0:
            print(f"[MPMSolver] Warning: invalid dt {dt}, using {DEFAULT_DT:.5f}")
            scaled = DEFAULT_DT
        if scaled > p.max_dt:
            print(f"[MPMSolver] Warning: dt {scaled:.4f} above {p.max_dt}, clamping")
        clamped = min(max(scaled, p.min_dt), p.max_dt)
        if p.adaptive_dt:
            v_max = self.max_particle_speed()
            if v_max > 1e-6:
                clamped = max(min(clamped, p.cfl / v_max), p.min_dt)
        return float(clamped)

    # ------------------------------------------------------------------
    # Stencil helpers
    # ------------------------------------------------------------------

    @ti.func
    def _grid_position(self, p):
        return ti.min(ti.max(self.particles.x[p], ti.Vector(self.lower)), ti.Vector(self.upper))

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    @ti.kernel
    def p2g_momentum(self):
        """P2G pass 1: scatter mass and APIC momentum."""
        for p in range(self.particles.high_water[None]):
            if self.particles.active[p] == 1:
                x = self._grid_position(p)
                base = stencil_base(x)
                W = stencil_weights(x)
                m = self.particles.mass[p]
                v = self.particles.v[p]
                C = self.particles.C[p]
                for i, j, k in ti.static(ti.ndrange(3, 3, 3)):
                    offset = ti.Vector([i, j, k])
                    node = base + offset
                    dist = node.cast(ti.f32) + 0.5 - x
                    weight = W[i, 0] * W[j, 1] * W[k, 2]
                    self.grid.mass[node] += weight * m
                    self.grid.momentum[node] += weight * m * (v + C @ dist)

    @ti.kernel
    def p2g_stress(self):
        """P2G pass 2: density estimate, constitutive stress and stress scatter."""
        dt = self.dt[None]
        surface_tension_on = self.surface_tension_enabled[None]
        for p in range(self.particles.high_water[None]):
            if self.particles.active[p] == 1:
                x = self._grid_position(p)
                base = stencil_base(x)
                W = stencil_weights(x)

                density = 0.0
                for i, j, k in ti.static(ti.ndrange(3, 3, 3)):
                    weight = W[i, 0] * W[j, 1] * W[k, 2]
                    density += self.grid.mass[base + ti.Vector([i, j, k])] * weight
                # Smoothed copy for display only
                self.particles.density[p] += (density - self.particles.density[p]) * 0.05

                mat = self.particles.material[p]
                m = self.particles.mass[p]
                C = self.particles.C[p]
                rho = ti.max(density, 1e-4)
                volume = m / rho
                affine = volume * self.materials.fluid_stress(mat, rho, C, dt, surface_tension_on)

                if mat == ELASTIC or mat == RIGID or mat == SNOW:
                    F_trial = (ti.Matrix.identity(ti.f32, 3) + dt * C) @ self.particles.F[p]
                    F_new = self.materials.project_deformation(mat, F_trial)
                    if mat == SNOW:
                        Jp = self.particles.Jp[p] * F_trial.determinant() / F_new.determinant()
                        self.particles.Jp[p] = ti.min(ti.max(Jp, 0.6), 20.0)
                    self.particles.F[p] = F_new
                    tau = self.materials.elastic_stress(mat, F_new, self.particles.Jp[p])
                    affine += self.materials.rest_volume(mat, m) * tau

                for i, j, k in ti.static(ti.ndrange(3, 3, 3)):
                    node = base + ti.Vector([i, j, k])
                    dist = node.cast(ti.f32) + 0.5 - x
                    weight = W[i, 0] * W[j, 1] * W[k, 2]
                    self.grid.stress[node] += -4.0 * dt * weight * (affine @ dist)

    @ti.kernel
    def grid_update(self):
        """Resolve node velocities, apply global forces and the boundary policy."""
        dt = self.dt[None]
        gravity = ti.Vector.zero(ti.f32, 3)
        if self.gravity_type[None] == GRAVITY_VECTOR:
            gravity = self.gravity[None]
        mouse_force = self.mouse_force[None]
        mouse_origin = self.mouse_origin[None]
        mouse_direction = self.mouse_direction[None]
        for I in ti.grouped(self.grid.mass):
            m = self.grid.mass[I]
            v = ti.Vector.zero(ti.f32, 3)
            v_prev = ti.Vector.zero(ti.f32, 3)
            if m > 1e-10:
                v_prev = self.grid.momentum[I] / m
                v = (self.grid.momentum[I] + self.grid.stress[I]) / m
                v += gravity * dt
                pos = I.cast(ti.f32) + 0.5
                if mouse_force.norm_sqr() > 0.0:
                    dist = (pos - mouse_origin).cross(mouse_direction).norm()
                    falloff = ti.max(0.0, 1.0 - 0.1 * dist)
                    v += mouse_force * falloff * falloff
                v = self.boundary.grid_velocity(pos, v, dt)
                if is_finite_vec3(v) == 0 or is_finite_vec3(v_prev) == 0:
                    v = ti.Vector.zero(ti.f32, 3)
                    v_prev = ti.Vector.zero(ti.f32, 3)
            self.grid.velocity[I] = v
            self.grid.velocity_prev[I] = v_prev

    @ti.kernel
    def compute_vorticity(self):
        """Curl of the resolved grid velocity (central differences, interior nodes)."""
        for I in ti.grouped(self.grid.velocity):
            w = ti.Vector.zero(ti.f32, 3)
            if self.vorticity_enabled[None] == 1 and self.grid.is_interior(I) == 1:
                ex = ti.Vector([1, 0, 0])
                ey = ti.Vector([0, 1, 0])
                ez = ti.Vector([0, 0, 1])
                dvdx = (self.grid.velocity[I + ex] - self.grid.velocity[I - ex]) * 0.5
                dvdy = (self.grid.velocity[I + ey] - self.grid.velocity[I - ey]) * 0.5
                dvdz = (self.grid.velocity[I + ez] - self.grid.velocity[I - ez]) * 0.5
                w = ti.Vector([dvdy[2] - dvdz[1], dvdz[0] - dvdx[2], dvdx[1] - dvdy[0]])
            self.grid.vorticity[I] = w

    @ti.kernel
    def g2p(self):
        """G2P: gather velocity and C, add particle forces, advect, contain and age."""
        dt = self.dt[None]
        time = self.time[None]
        mode = self.transfer_mode[None]
        flip_ratio = self.flip_ratio[None]
        max_speed = self.max_speed[None]
        vorticity_on = self.vorticity_enabled[None]
        for p in range(self.particles.high_water[None]):
            if self.particles.active[p] == 1:
                x_old = self.particles.x[p]
                x = self._grid_position(p)
                base = stencil_base(x)
                W = stencil_weights(x)
                v_pic = ti.Vector.zero(ti.f32, 3)
                delta = ti.Vector.zero(ti.f32, 3)
                omega = ti.Vector.zero(ti.f32, 3)
                omega_grad = ti.Vector.zero(ti.f32, 3)
                B = ti.Matrix.zero(ti.f32, 3, 3)
                for i, j, k in ti.static(ti.ndrange(3, 3, 3)):
                    node = base + ti.Vector([i, j, k])
                    dist = node.cast(ti.f32) + 0.5 - x
                    weight = W[i, 0] * W[j, 1] * W[k, 2]
                    g_v = self.grid.velocity[node]
                    v_pic += weight * g_v
                    delta += weight * (g_v - self.grid.velocity_prev[node])
                    B += weight * g_v.outer_product(dist)
                    if vorticity_on == 1:
                        node_omega = self.grid.vorticity[node]
                        omega += weight * node_omega
                        omega_grad += 4.0 * weight * node_omega.norm() * dist
                C = 4.0 * B

                v = v_pic
                if mode != TRANSFER_PIC:
                    v_flip = self.particles.v[p] + delta
                    if mode == TRANSFER_FLIP:
                        v = v_flip
                    else:
                        v = v_pic + (v_flip - v_pic) * flip_ratio

                force = ti.Vector.zero(ti.f32, 3)
                if self.gravity_type[None] == GRAVITY_CENTER:
                    force -= safe_normalize(x / ti.Vector(self.extent) - 0.5) * self.center_gravity[None]
                if self.noise[None] > 0.0:
                    n = tri_noise_3d(x * 0.015, 0.11, time) - 0.285
                    force -= safe_normalize(n) * 0.28 * self.noise[None]
                if self.force_fields_enabled[None] == 1:
                    force += self.fields.force_at(x, time)
                if self.kinetic_enabled[None] == 1:
                    force += self.kinetic.kinetic_force(x, v, ti.Vector(self.grid_center), self.grid_length, time)
                if vorticity_on == 1:
                    force += self.vorticity_epsilon[None] * safe_normalize(omega_grad).cross(omega)
                v += force * dt

                speed = v.norm()
                if speed > max_speed:
                    v *= max_speed / speed

                self.particles.x[p] = x + v * dt
                self.particles.v[p] = v
                self.boundary.resolve_particle(self.particles.x, self.particles.v, p)
                self.particles.x[p] = ti.min(ti.max(self.particles.x[p], ti.Vector(self.lower)), ti.Vector(self.upper))

                if is_finite_vec3(self.particles.x[p]) == 0 or is_finite_vec3(self.particles.v[p]) == 0 \
                        or is_finite_mat3(C) == 0:
                    self.particles.x[p] = ti.min(ti.max(x_old, ti.Vector(self.lower)), ti.Vector(self.upper))
                    if is_finite_vec3(x_old) == 0:
                        self.particles.x[p] = ti.Vector(self.grid_center)
                    self.particles.v[p] = ti.Vector.zero(ti.f32, 3)
                    C = ti.Matrix.zero(ti.f32, 3, 3)
                    self.repaired[None] += 1
                self.particles.C[p] = C

                age = self.particles.age[p] + dt
                self.particles.age[p] = age
                lifetime = self.particles.lifetime[p]
                if lifetime > 0.0 and age > lifetime:
                    self.particles.active[p] = 0

    def step(self, dt: float, time: float = 0.0) -> StepStats:
        """
        Advance simulation by one time step.

        Args:
            dt: Frame time step in seconds (scaled, validated and clamped)
            time: Elapsed simulation time in seconds

        Returns:
            StepStats for this step
        """
        return self.advance(self.resolve_dt(dt), time)

    def advance(self, dt: float, time: float = 0.0) -> StepStats:
        """Run the five pipeline stages with an already resolved dt."""
        self.dt[None] = dt
        time = float(time) if np.isfinite(time) else 0.0
        self.time[None] = time
        self.repaired[None] = 0

        self.grid.clear()
        self.p2g_momentum()
        self.p2g_stress()
        self.grid_update()
        self.compute_vorticity()
        self.g2p()

        self.step_count += 1
        repaired = self.repaired[None]
        if repaired > 0:
            print(f"[MPMSolver] Warning: repaired {repaired} non-finite particles at step {self.step_count}")
        stats = StepStats(
            step=self.step_count,
            dt=dt,
            time=time,
            live_particles=self.particles.live_count(),
            repaired_particles=repaired,
        )
        interval = self.params.debug_interval
        if interval > 0 and self.step_count % interval == 0:
            self.print_debug(stats)
        return stats

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @ti.kernel
    def max_particle_speed(self) -> ti.f32:
        self.stat_speed_max[None] = 0.0
        for p in range(self.particles.high_water[None]):
            if self.particles.active[p] == 1:
                ti.atomic_max(self.stat_speed_max[None], self.particles.v[p].norm())
        return self.stat_speed_max[None]

    @ti.kernel
    def compute_stats(self):
        """Velocity, density and bounds statistics of the live particles."""
        self.stat_count[None] = 0
        self.stat_speed_sum[None] = 0.0
        self.stat_speed_max[None] = 0.0
        self.stat_density_sum[None] = 0.0
        self.stat_min[None] = ti.Vector([1e10, 1e10, 1e10])
        self.stat_max[None] = ti.Vector([-1e10, -1e10, -1e10])
        for p in range(self.particles.high_water[None]):
            if self.particles.active[p] == 1:
                speed = self.particles.v[p].norm()
                self.stat_count[None] += 1
                self.stat_speed_sum[None] += speed
                ti.atomic_max(self.stat_speed_max[None], speed)
                self.stat_density_sum[None] += self.particles.density[p]
                for d in ti.static(range(3)):
                    ti.atomic_min(self.stat_min[None][d], self.particles.x[p][d])
                    ti.atomic_max(self.stat_max[None][d], self.particles.x[p][d])

    def print_debug(self, stats: StepStats):
        self.compute_stats()
        n = self.stat_count[None]
        n_grid = self.grid.grid_size
        print(f"[MPM Step {stats.step}] Particles: {n}, dt={stats.dt:.5f}s, t={stats.time:.2f}s, "
              f"repaired: {stats.repaired_particles}")
        if n > 0:
            print(f"  Velocity: v_avg={self.stat_speed_sum[None] / n:.3f}, v_max={self.stat_speed_max[None]:.3f} cells/s")
            print(f"  Density: avg={self.stat_density_sum[None] / n:.3f}")
            pmin = self.stat_min[None]
            pmax = self.stat_max[None]
            print(f"  Particles range: X[{pmin[0]:.2f}, {pmax[0]:.2f}], Y[{pmin[1]:.2f}, {pmax[1]:.2f}], "
                  f"Z[{pmin[2]:.2f}, {pmax[2]:.2f}]")
        print(f"  Grid: {n_grid[0]}x{n_grid[1]}x{n_grid[2]}, active cells: {self.grid.active_cell_count()}")
