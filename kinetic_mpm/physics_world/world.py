"""Particle world core that wires the stores, tables and managers into the MPM solver."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Optional

import numpy as np

from ..configuration import SceneConfig
from .emitters import EmitterSystem
from .force_fields import ForceFieldManager
from .kinetic import Gesture, KineticState, Personality
from .state import ParticleSnapshot, StepStats
from .viewport import Rect, ViewportTracker
from .solvers.mpm import (
    BoundaryShape,
    BoundaryState,
    BoundarySystem,
    CollisionMode,
    ForceFieldBuffer,
    GravityType,
    GridStore,
    KineticUniforms,
    MaterialLibrary,
    MaterialTable,
    MPMSolver,
    ParticleStore,
    SolverParams,
    TransferMode,
    init_taichi,
    parse_enum,
    parse_material_type,
)


@dataclass
class ParticleWorld:
    config: SceneConfig
    particles: ParticleStore
    grid: GridStore
    library: MaterialLibrary
    materials: MaterialTable
    viewport: ViewportTracker
    boundary: BoundarySystem
    force_fields: ForceFieldManager
    emitters: EmitterSystem
    solver: MPMSolver
    kinetic_state: KineticState
    current_time: float = 0.0
    current_step: int = 0
    last_stats: Optional[StepStats] = None
    _kinetic_dirty: bool = True
    _unsubscribe_viewport: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(cls, config: SceneConfig) -> "ParticleWorld":
        sim = config.simulation
        init_taichi(sim.arch)

        grid = GridStore(sim.grid_size)
        particles = ParticleStore(sim.max_particles)

        # ==== Materials ====
        library = MaterialLibrary()
        for name, params in config.materials.custom.items():
            library.add(name, _custom_material(library, name, params))
        materials = MaterialTable()
        for preset in config.materials.presets:
            materials.apply_preset(preset, library)

        # ==== Viewport envelope and boundary ====
        bc = config.boundary
        vc = config.viewport
        viewport = ViewportTracker(grid.grid_size, bc.wall_thickness, vc.min_grid_margin, vc.ui_margin)
        with viewport.batch():
            if vc.width > 0.0 and vc.height > 0.0:
                viewport.set_viewport(vc.width, vc.height)
            for zone in vc.exclusion_zones:
                viewport.register_exclusion_zone(
                    zone.name, Rect(zone.left, zone.top, zone.width, zone.height), zone.margin)
        center, half = viewport.grid_envelope()
        boundary_state = BoundaryState(
            shape=parse_enum(BoundaryShape, bc.shape),
            collision_mode=parse_enum(CollisionMode, bc.collision_mode),
            restitution=bc.restitution,
            friction=bc.friction,
            wall_thickness=bc.wall_thickness,
            wall_stiffness=bc.wall_stiffness,
            enabled=bc.enabled,
            containment_strength=bc.containment_strength,
            soft_start=bc.soft_start,
            soft_ramp_end=bc.soft_ramp_end,
            soft_clamp=bc.soft_clamp,
            center=center,
            half_extents=half,
        )
        boundary = BoundarySystem(grid.grid_size, boundary_state)
        unsubscribe = viewport.on_update(
            lambda bounds: boundary.set_envelope(bounds.envelope_center, bounds.envelope_half_extents))
        print(f"[ParticleWorld] Boundary {boundary_state.shape.name}/{boundary_state.collision_mode.name}, "
              f"envelope center={tuple(round(float(c), 2) for c in center)}, "
              f"half={tuple(round(float(h), 2) for h in half)}")

        # ==== Force fields and emitters (positioned at the grid center unless given) ====
        grid_center = tuple(float(c) for c in grid.center())
        force_fields = ForceFieldManager()
        for entry in config.force_fields:
            params = dict(entry.params)
            params.setdefault("position", grid_center)
            if entry.preset:
                force_fields.add_preset(entry.preset, **params)
            else:
                force_fields.add(**params)
        emitters = EmitterSystem(particles, seed=sim.seed)
        for entry in config.emitters:
            params = dict(entry.params)
            params.setdefault("position", grid_center)
            if entry.preset:
                emitters.add_preset(entry.preset, **params)
            else:
                emitters.add(**params)

        # ==== Solver ====
        params = SolverParams(
            gravity=tuple(sim.gravity),
            gravity_type=parse_enum(GravityType, sim.gravity_type),
            noise=sim.noise,
            transfer_mode=parse_enum(TransferMode, sim.transfer_mode),
            flip_ratio=sim.flip_ratio,
            vorticity_enabled=sim.vorticity_enabled,
            vorticity_epsilon=sim.vorticity_epsilon,
            surface_tension_enabled=sim.surface_tension_enabled,
            max_speed=sim.max_speed,
            time_scale=sim.time_scale,
            min_dt=sim.min_dt,
            max_dt=sim.max_dt,
            adaptive_dt=sim.adaptive_dt,
            cfl=sim.cfl,
            force_fields_enabled=sim.force_fields_enabled,
            kinetic_enabled=sim.kinetic_enabled,
            debug_interval=sim.debug_interval,
        )
        solver = MPMSolver(particles, grid, materials, boundary, ForceFieldBuffer(), KineticUniforms(), params)

        world = cls(
            config=config,
            particles=particles,
            grid=grid,
            library=library,
            materials=materials,
            viewport=viewport,
            boundary=boundary,
            force_fields=force_fields,
            emitters=emitters,
            solver=solver,
            kinetic_state=build_kinetic_state(config.kinetic.state),
            _unsubscribe_viewport=unsubscribe,
        )
        world.seed_particles(sim.particle_count, rng=np.random.default_rng(sim.seed))
        return world

    # ------------------------------------------------------------------
    # Between-step configuration
    # ------------------------------------------------------------------

    def seed_particles(self, count: int, rng: Optional[np.random.Generator] = None) -> int:
        """
        Seed `count` particles in a sphere around the envelope center.

        A count of 0 is valid and seeds nothing: emitter-only scenes start from an
        empty store. NaN, inf and negative counts are replaced by 1.
        """
        sim = self.config.simulation
        if not np.isfinite(count) or count < 0:
            print(f"[ParticleWorld] Warning: invalid particle count {count}, seeding 1")
            count = 1
        elif count == 0:
            return 0
        state = self.boundary.state
        radius = max(float(sim.seed_radius) * state.radius, 0.5)
        seeded = self.particles.seed_sphere(
            int(count),
            state.center,
            radius,
            mass=sim.particle_mass,
            material=int(parse_material_type(sim.material)),
            rng=rng,
        )
        print(f"[ParticleWorld] Seeded {seeded} particles (radius {radius:.2f} cells)")
        return seeded

    def set_kinetic_state(self, state: Optional[KineticState] = None, **values) -> KineticState:
        """Replace (or partially update) the kinetic uniforms used from the next step on."""
        state = state or self.kinetic_state
        if values:
            state = build_kinetic_state(values, base=state)
        self.kinetic_state = state.validated()
        self._kinetic_dirty = True
        return self.kinetic_state

    def apply_material_preset(self, name: str) -> None:
        self.materials.apply_preset(name, self.library)

    def set_mouse_ray(self, origin, direction, position) -> None:
        self.solver.set_mouse_ray(origin, direction, position)

    def clear_mouse(self) -> None:
        self.solver.clear_mouse()

    def close(self) -> None:
        if self._unsubscribe_viewport is not None:
            self._unsubscribe_viewport()
            self._unsubscribe_viewport = None

    @property
    def live_particle_count(self) -> int:
        return self.particles.live_count()

    # ------------------------------------------------------------------
    # Frame
    # ------------------------------------------------------------------

    def _upload_tables(self) -> None:
        if self.force_fields.dirty:
            self.solver.fields.upload(self.force_fields.active())
            self.force_fields.dirty = False
        if self._kinetic_dirty:
            self.solver.kinetic.upload(self.kinetic_state.validated())
            self._kinetic_dirty = False

    def step(self, dt: float | None = None, elapsed: float | None = None) -> ParticleSnapshot:
        """
        Advance the simulation by one frame.

        Args:
            dt: Frame time in seconds, the configured time step when omitted
            elapsed: Elapsed simulation time, the world clock when omitted

        Returns:
            ParticleSnapshot of the live particles after the step
        """
        if dt is None:
            dt = self.config.simulation.time_step
        if elapsed is None or not np.isfinite(elapsed):
            elapsed = self.current_time
        dt = self.solver.resolve_dt(dt)

        spawned = self.emitters.spawn_all(dt)
        self._upload_tables()
        stats = self.solver.advance(dt, elapsed)
        stats.spawned_particles = spawned
        self.last_stats = stats

        self.current_time = elapsed + dt
        snapshot = ParticleSnapshot.from_arrays(self.current_step, self.current_time, self.particles.snapshot())
        self.current_step += 1
        return snapshot


def _custom_material(library: MaterialLibrary, name: str, params: Dict[str, Any]):
    params = dict(params)
    base_name = params.pop("base", "WATER")
    base = library.get(base_name)
    if base is None:
        raise ValueError(f"Unknown base material '{base_name}' for custom material '{name}'")
    if "type" in params:
        params["type"] = parse_material_type(params["type"])
    return replace(base, name=name, **params)


def build_kinetic_state(values: Dict[str, Any], base: Optional[KineticState] = None) -> KineticState:
    """KineticState from a plain mapping; gesture and personality may be given by name."""
    known = {f.name for f in fields(KineticState)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown kinetic state attributes: {', '.join(sorted(unknown))}")
    values = dict(values)
    for key in ("gesture", "secondary_gesture"):
        if key in values:
            values[key] = parse_enum(Gesture, values[key])
    if "personality" in values:
        values["personality"] = parse_enum(Personality, values["personality"])
    return replace(base or KineticState(), **values).validated()
