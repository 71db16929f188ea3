"""Tests for the boundary system.

Validates:
- Soft containment: zero at the center, strictly stronger at 99% than at 80% of the radius,
  continuous and non-decreasing along a ray.
- Reflect / clamp / wrap responses of every shape on the host mirror.
- The Taichi collision response matches the host mirror.
- Setters clamp or reject invalid values.
"""

from __future__ import annotations

import numpy as np
import pytest

from kinetic_mpm.physics_world.solvers.mpm.mpm_boundary import (
    BoundaryShape,
    BoundaryState,
    BoundarySystem,
    CollisionMode,
    default_envelope,
)

GRID = (32, 32, 32)


def _boundary(shape=BoundaryShape.BOX, mode=CollisionMode.REFLECT, restitution=0.8, friction=0.0) -> BoundarySystem:
    state = BoundaryState(shape=shape, collision_mode=mode, restitution=restitution, friction=friction)
    state.center, state.half_extents = default_envelope(GRID, state.wall_thickness)
    return BoundarySystem(GRID, state)


def _radial_point(boundary: BoundarySystem, fraction: float) -> np.ndarray:
    s = boundary.state
    return s.center + np.array([fraction * s.half_extents[0], 0.0, 0.0])


def test_default_envelope_leaves_wall_layer():
    center, half = default_envelope(GRID, 2.0)
    assert np.allclose(center, 16.0)
    assert np.allclose(half, 14.0)


@pytest.mark.parametrize("wall_thickness", [0.0, 0.5, 1.0])
def test_thin_wall_envelope_stays_inside_particle_range(wall_thickness):
    center, half = default_envelope(GRID, wall_thickness)
    assert np.allclose(center - half, 1.0)
    assert np.allclose(center + half, 30.0)


def test_installed_envelope_is_fitted_to_particle_range():
    boundary = _boundary()
    boundary.set_envelope((16.0, 16.0, 16.0), (20.0, 4.0, 16.0))
    s = boundary.state
    assert s.box_min[0] == pytest.approx(1.0)
    assert s.box_max[0] == pytest.approx(30.0)
    assert s.box_min[1] == pytest.approx(12.0)
    assert s.box_max[1] == pytest.approx(20.0)
    assert s.box_min[2] == pytest.approx(1.0)

    state = BoundaryState(shape=BoundaryShape.BOX, center=np.array([16.0, 16.0, 16.0]),
                          half_extents=np.array([16.0, 16.0, 16.0]))
    s = BoundarySystem(GRID, state).state
    assert np.allclose(s.box_min, 1.0)
    assert np.allclose(s.box_max, 30.0)


def test_soft_containment_zero_at_center_and_stronger_near_edge():
    boundary = _boundary(shape=BoundaryShape.NONE)
    center = boundary.state.center
    assert np.allclose(boundary.containment_force(center), 0.0)

    f80 = np.linalg.norm(boundary.containment_force(_radial_point(boundary, 0.80)))
    f99 = np.linalg.norm(boundary.containment_force(_radial_point(boundary, 0.99)))
    assert f99 > f80 > 0.0

    # Kernel version agrees
    probes = np.stack([center, _radial_point(boundary, 0.80), _radial_point(boundary, 0.99)])
    sampled = np.linalg.norm(boundary.sample_containment(probes), axis=1)
    assert sampled[0] == pytest.approx(0.0, abs=1e-6)
    assert sampled[1] == pytest.approx(f80, rel=1e-4)
    assert sampled[2] == pytest.approx(f99, rel=1e-4)


def test_soft_containment_points_inward():
    boundary = _boundary(shape=BoundaryShape.NONE)
    position = _radial_point(boundary, 0.9)
    force = boundary.containment_force(position)
    assert force[0] < 0.0
    assert abs(force[1]) < 1e-9 and abs(force[2]) < 1e-9


def test_soft_containment_is_continuous_and_monotone():
    boundary = _boundary(shape=BoundaryShape.NONE)
    fractions = np.linspace(0.0, 1.1, 221)
    magnitudes = np.array([np.linalg.norm(boundary.containment_force(_radial_point(boundary, f)))
                           for f in fractions])
    assert np.all(np.diff(magnitudes) >= -1e-9)
    # No jumps at the 70% / 95% thresholds
    assert np.max(np.abs(np.diff(magnitudes))) < 0.5
    assert np.all(magnitudes[fractions < 0.69] < 1e-9)


def test_box_reflect_applies_restitution_to_normal_component():
    boundary = _boundary(restitution=0.8, friction=0.0)
    s = boundary.state
    pos, vel = boundary.resolve_collision(s.box_max + np.array([0.5, -5.0, -5.0]), np.array([10.0, 2.0, 0.0]))
    assert pos[0] == pytest.approx(s.box_max[0])
    assert vel[0] == pytest.approx(-8.0)
    assert vel[1] == pytest.approx(2.0)


def test_box_friction_only_affects_tangential_velocity():
    boundary = _boundary(restitution=0.5, friction=0.5)
    s = boundary.state
    _, vel = boundary.resolve_collision(s.box_min - np.array([0.5, -5.0, -5.0]), np.array([-4.0, 2.0, 0.0]))
    assert vel[0] == pytest.approx(2.0)
    assert vel[1] == pytest.approx(1.0)


def test_clamp_mode_removes_outward_velocity():
    boundary = _boundary(shape=BoundaryShape.SPHERE, mode=CollisionMode.CLAMP, friction=0.1)
    s = boundary.state
    outside = s.center + np.array([s.radius + 2.0, 0.0, 0.0])
    pos, vel = boundary.resolve_collision(outside, np.array([3.0, 1.0, 0.0]))
    assert np.linalg.norm(pos - s.center) == pytest.approx(s.radius)
    assert vel[0] == pytest.approx(0.0)
    assert vel[1] == pytest.approx(0.9)


def test_wrap_mode_teleports_to_opposite_side():
    boundary = _boundary(mode=CollisionMode.WRAP)
    s = boundary.state
    pos, vel = boundary.resolve_collision(s.box_max + np.array([0.5, -5.0, -5.0]), np.array([10.0, 0.0, 0.0]))
    assert pos[0] == pytest.approx(s.box_min[0] + 0.5)
    assert vel[0] == pytest.approx(10.0)

    sphere = _boundary(shape=BoundaryShape.SPHERE, mode=CollisionMode.WRAP)
    c, R = sphere.state.center, sphere.state.radius
    pos, _ = sphere.resolve_collision(c + np.array([R + 1.0, 0.0, 0.0]), np.array([1.0, 0.0, 0.0]))
    assert pos[0] == pytest.approx(c[0] - 0.999 * R)


def test_dodecahedron_collides_as_sphere():
    sphere = _boundary(shape=BoundaryShape.SPHERE)
    dodeca = _boundary(shape=BoundaryShape.DODECAHEDRON)
    position = sphere.state.center + np.array([10.0, 10.0, 3.0])
    velocity = np.array([4.0, 4.0, 1.0])
    for a, b in zip(sphere.resolve_collision(position, velocity), dodeca.resolve_collision(position, velocity)):
        assert np.allclose(a, b)


def test_tube_constrains_radially_and_caps_z():
    boundary = _boundary(shape=BoundaryShape.TUBE)
    s = boundary.state
    pos, vel = boundary.resolve_collision(s.center + np.array([s.tube_radius + 1.0, 0.0, 0.0]),
                                          np.array([2.0, 0.0, 0.0]))
    assert np.hypot(pos[0] - s.center[0], pos[1] - s.center[1]) == pytest.approx(s.tube_radius)
    assert vel[0] < 0.0
    pos, vel = boundary.resolve_collision(s.center + np.array([0.0, 0.0, s.half_extents[2] + 1.0]),
                                          np.array([0.0, 0.0, 5.0]))
    assert pos[2] == pytest.approx(s.box_max[2])
    assert vel[2] == pytest.approx(-4.0)


def test_none_shape_clamps_to_soft_limit():
    boundary = _boundary(shape=BoundaryShape.NONE)
    s = boundary.state
    far = s.center + np.array([2.0 * s.half_extents[0], 0.0, 0.0])
    pos, vel = boundary.resolve_collision(far, np.array([5.0, 1.0, 0.0]))
    r = np.linalg.norm((pos - s.center) / s.half_extents)
    assert r == pytest.approx(s.soft_clamp)
    assert vel[0] == pytest.approx(0.0)
    assert vel[1] == pytest.approx(1.0)


def test_inside_particles_untouched():
    boundary = _boundary()
    position = boundary.state.center + 1.0
    velocity = np.array([3.0, -2.0, 1.0])
    pos, vel = boundary.resolve_collision(position, velocity)
    assert np.allclose(pos, position)
    assert np.allclose(vel, velocity)


@pytest.mark.parametrize("shape", list(BoundaryShape))
@pytest.mark.parametrize("mode", list(CollisionMode))
def test_kernel_matches_host_mirror(shape, mode):
    boundary = _boundary(shape=shape, mode=mode, restitution=0.6, friction=0.2)
    rng = np.random.default_rng(3)
    positions = boundary.state.center + rng.uniform(-18.0, 18.0, size=(64, 3))
    velocities = rng.normal(0.0, 5.0, size=(64, 3))
    kernel_pos, kernel_vel = boundary.sample_collision(positions, velocities)
    for i in range(len(positions)):
        pos, vel = boundary.resolve_collision(positions[i], velocities[i])
        assert np.allclose(kernel_pos[i], pos, atol=1e-3)
        assert np.allclose(kernel_vel[i], vel, atol=1e-3)


def test_setters_clamp_and_reject():
    boundary = _boundary()
    boundary.set_restitution(1.7)
    assert boundary.state.restitution == 1.0
    boundary.set_friction(-0.3)
    assert boundary.state.friction == 0.0
    boundary.set_restitution(float("nan"))
    assert boundary.state.restitution == 1.0

    before = boundary.snapshot()
    boundary.set_envelope((16.0, 16.0, 16.0), (-1.0, 4.0, 4.0))
    assert np.allclose(boundary.state.half_extents, before.half_extents)
    boundary.set_soft_thresholds(0.9, 0.8, 1.2)
    assert boundary.state.soft_start == before.soft_start

    boundary.set_shape("sphere")
    assert boundary.state.shape == BoundaryShape.SPHERE
    with pytest.raises(ValueError):
        boundary.set_collision_mode("bounce")


def test_disabled_boundary_is_a_no_op():
    boundary = _boundary()
    boundary.set_enabled(False)
    position = boundary.state.box_max + 3.0
    pos, vel = boundary.resolve_collision(position, np.array([1.0, 1.0, 1.0]))
    assert np.allclose(pos, position)
    kernel_pos, _ = boundary.sample_collision(position[None, :], np.ones((1, 3)))
    assert np.allclose(kernel_pos[0], position)
