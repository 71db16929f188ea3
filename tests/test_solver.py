"""Tests for the MPM step pipeline.

Validates:
- No NaN/Inf in positions, velocities or the affine matrix after any step.
- Particles stay inside hard boundary shapes; masses stay positive.
- Internal forces conserve total momentum.
- dt validation, clamping and the CFL limit.
- Non-finite particle state is repaired instead of spreading.
- Lifetimes, transfer modes, materials, pointer interaction and vorticity.
"""

from __future__ import annotations

import numpy as np
import pytest

from kinetic_mpm.configuration import BoundaryConfig
from kinetic_mpm.physics_world import ParticleWorld
from kinetic_mpm.physics_world.solvers.mpm import MaterialType
from kinetic_mpm.physics_world.solvers.mpm.mpm_solver import DEFAULT_DT

from .conftest import make_scene

GRAVITY = (0.0, -9.8, 0.0)


def _world(particles: int = 400, boundary: BoundaryConfig | None = None, **simulation) -> ParticleWorld:
    return ParticleWorld.from_config(make_scene(particles=particles, boundary=boundary, **simulation))


def _assert_finite(world: ParticleWorld):
    arrays = world.particles.snapshot()
    for key in ("positions", "velocities", "affine", "densities"):
        assert np.isfinite(arrays[key]).all(), key


def _run(world: ParticleWorld, steps: int, dt: float = 1.0 / 60.0):
    snapshot = None
    for _ in range(steps):
        snapshot = world.step(dt)
    return snapshot


def test_step_keeps_state_finite_and_masses_positive():
    world = _world(gravity=GRAVITY, boundary=BoundaryConfig(shape="BOX"))
    for _ in range(60):
        world.step(1.0 / 60.0)
        _assert_finite(world)
    masses = world.particles.snapshot()["masses"]
    assert len(masses) == 400
    assert np.all(masses > 0.0)


def test_sphere_boundary_contains_particles():
    world = _world(gravity=GRAVITY, boundary=BoundaryConfig(shape="SPHERE", restitution=0.5))
    state = world.boundary.state
    for _ in range(120):
        snapshot = world.step(1.0 / 60.0)
        distances = np.linalg.norm(snapshot.positions - state.center, axis=1)
        assert distances.max() <= state.radius * (1.0 + 1e-3)


def test_positions_stay_inside_grid_interior():
    world = _world(gravity=GRAVITY, boundary=BoundaryConfig(shape="NONE"))
    snapshot = _run(world, 90)
    assert snapshot.positions.min() >= 1.0
    assert snapshot.positions.max() <= 30.0


@pytest.mark.parametrize("mode", ["REFLECT", "CLAMP"])
def test_zero_thickness_box_floor_stops_falling_particle(mode):
    boundary = BoundaryConfig(shape="BOX", collision_mode=mode, wall_thickness=0.0)
    world = _world(particles=0, boundary=boundary, gravity=GRAVITY)
    state = world.boundary.state
    assert np.all(state.box_min >= 1.0)
    assert np.all(state.box_max <= 30.0)

    world.particles.write_particles(np.array([0]), np.array([[16.0, 3.0, 16.0]]))
    speeds = []
    for _ in range(120):
        snapshot = world.step(1.0 / 60.0)
        speeds.append(abs(snapshot.velocities[0][1]))
    assert snapshot.positions[0][1] == pytest.approx(state.box_min[1], abs=0.5)
    # Resting on the floor: the wall removes the downward velocity every step
    assert max(speeds[-40:]) < 1.0


def test_internal_forces_conserve_momentum():
    world = _world(particles=500, boundary=BoundaryConfig(shape="BOX"), seed_radius=0.3, kinetic_enabled=False)
    rng = np.random.default_rng(0)
    live = np.flatnonzero(world.particles.active.to_numpy() == 1)
    velocities = rng.normal(0.0, 2.0, size=(len(live), 3)).astype(np.float32)
    v = world.particles.v.to_numpy()
    v[live] = velocities
    world.particles.v.from_numpy(v)

    masses = world.particles.snapshot()["masses"]
    initial = (velocities * masses[:, None]).sum(axis=0)
    scale = float((np.linalg.norm(velocities, axis=1) * masses).sum())
    for _ in range(20):
        snapshot = world.step(1.0 / 60.0)
        momentum = snapshot.total_momentum(masses)
        assert np.linalg.norm(momentum - initial) <= 1e-3 * scale


def test_resolve_dt_validates_and_clamps(capsys):
    world = _world(particles=0)
    assert world.solver.resolve_dt(float("nan")) == pytest.approx(DEFAULT_DT)
    assert world.solver.resolve_dt(-1.0) == pytest.approx(DEFAULT_DT)
    assert world.solver.resolve_dt(10.0) == pytest.approx(world.solver.params.max_dt)
    assert world.solver.resolve_dt(1e-7) == pytest.approx(world.solver.params.min_dt)
    out = capsys.readouterr().out
    assert "invalid dt" in out and "clamping" in out


def test_time_scale_applies_once():
    world = _world(particles=0, time_scale=0.5)
    world.step(0.02)
    assert world.last_stats.dt == pytest.approx(0.01)
    assert world.current_time == pytest.approx(0.01)


def test_adaptive_dt_respects_cfl():
    world = _world(particles=10, adaptive_dt=True, cfl=0.5)
    v = world.particles.v.to_numpy()
    v[:10] = (50.0, 0.0, 0.0)
    world.particles.v.from_numpy(v)
    assert world.solver.resolve_dt(1.0 / 60.0) == pytest.approx(0.01, rel=1e-4)


def test_non_finite_velocity_is_repaired():
    world = _world(particles=200)
    world.particles.v[3] = [float("nan"), 0.0, 0.0]
    world.particles.v[7] = [0.0, float("inf"), 0.0]
    world.step(1.0 / 60.0)
    _assert_finite(world)
    world.step(1.0 / 60.0)
    _assert_finite(world)


def test_non_finite_elapsed_time_is_ignored():
    world = _world(particles=50)
    world.step(1.0 / 60.0, elapsed=float("nan"))
    assert np.isfinite(world.current_time)
    assert np.isfinite(world.last_stats.time)


def test_lifetime_expiry_frees_slots():
    world = _world(particles=0)
    store = world.particles
    slots = store.allocate(20)
    positions = np.full((20, 3), 16.0) + np.linspace(-2.0, 2.0, 20)[:, None]
    lifetimes = np.where(np.arange(20) < 10, 0.1, 0.0)
    store.write_particles(slots, positions, lifetimes=lifetimes)
    _run(world, 10)
    assert store.live_count() == 10
    ages = store.snapshot()["ages"]
    assert np.all(ages > 0.1)


@pytest.mark.parametrize("mode", ["PIC", "FLIP", "HYBRID"])
def test_transfer_modes_fall_under_gravity(mode):
    world = _world(particles=300, gravity=GRAVITY, transfer_mode=mode)
    snapshot = _run(world, 10)
    assert snapshot.velocities[:, 1].mean() < 0.0
    _assert_finite(world)


@pytest.mark.parametrize("material", [m.name for m in MaterialType])
def test_every_material_is_stable(material):
    world = _world(particles=300, gravity=GRAVITY, material=material,
                   boundary=BoundaryConfig(shape="BOX", restitution=0.3))
    snapshot = _run(world, 40)
    _assert_finite(world)
    assert snapshot.positions.min() >= 1.0 and snapshot.positions.max() <= 30.0
    assert np.all(snapshot.materials == int(MaterialType[material]))


def test_center_gravity_pulls_inward():
    world = _world(particles=300, gravity_type="CENTER", boundary=BoundaryConfig(shape="BOX"))
    snapshot = _run(world, 5)
    offsets = snapshot.positions - world.boundary.state.center
    radial = (snapshot.velocities * offsets).sum(axis=1)
    assert radial.mean() < 0.0


def test_mouse_ray_drags_particles():
    world = _world(particles=300, kinetic_enabled=False)
    world.set_mouse_ray((0.0, 16.0, 16.0), (1.0, 0.0, 0.0), (16.0, 16.0, 16.0))
    world.set_mouse_ray((0.0, 16.0, 16.0), (1.0, 0.0, 0.0), (16.0, 18.0, 16.0))
    snapshot = _run(world, 3)
    assert snapshot.velocities[:, 1].mean() > 0.0

    world.clear_mouse()
    assert np.allclose(world.solver.mouse_force.to_numpy(), 0.0)


def test_mouse_ray_rejects_non_finite(capsys):
    world = _world(particles=0)
    world.set_mouse_ray((0.0, 0.0, 0.0), (float("nan"), 0.0, 0.0), (1.0, 1.0, 1.0))
    assert "non-finite mouse ray" in capsys.readouterr().out
    assert np.allclose(world.solver.mouse_force.to_numpy(), 0.0)


def test_vorticity_confinement_stays_finite():
    world = _world(particles=400, gravity=GRAVITY, vorticity_enabled=True, vorticity_epsilon=0.5,
                   noise=1.0, boundary=BoundaryConfig(shape="BOX"))
    world.force_fields.add_preset("TORNADO", position=(16.0, 16.0, 16.0))
    _run(world, 30)
    _assert_finite(world)


def test_force_fields_switch_off_globally():
    world = _world(particles=200, force_fields_enabled=False, kinetic_enabled=False)
    world.force_fields.add(type="DIRECTIONAL", position=(16.0, 16.0, 16.0), strength=50.0, radius=100.0,
                           falloff="CONSTANT")
    snapshot = _run(world, 5)
    assert abs(snapshot.velocities[:, 0].mean()) < 0.5


def test_kinetic_state_drives_particles():
    world = _world(particles=300)
    world.set_kinetic_state(gesture="ATTACK", gesture_intensity=1.0, gesture_progress=0.2, intensity=1.0,
                            responsiveness=1.0, personality="AGGRESSIVE")
    snapshot = _run(world, 5)
    assert snapshot.velocities[:, 1].mean() > 0.0


def test_p2g_conserves_mass():
    world = _world(particles=400, boundary=BoundaryConfig(shape="BOX"))
    world.step(1.0 / 60.0)
    # The grid still holds this step's transfer from the particle state before advection
    masses = world.particles.snapshot()["masses"]
    assert world.grid.total_mass() == pytest.approx(float(masses.sum()), rel=1e-4)
    assert world.grid.active_cell_count() > 0


def test_invalid_particle_count_seeds_one(capsys):
    world = _world(particles=0)
    assert world.seed_particles(float("nan")) == 1
    assert world.seed_particles(-5) == 1
    assert world.live_particle_count == 2
    assert "invalid particle count" in capsys.readouterr().out


def test_zero_startup_count_leaves_store_empty_for_emitters(capsys):
    world = _world(particles=0)
    assert world.live_particle_count == 0
    assert world.seed_particles(0) == 0
    assert world.live_particle_count == 0
    assert "invalid particle count" not in capsys.readouterr().out
