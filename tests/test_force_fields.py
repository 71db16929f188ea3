"""Tests for the force-field manager and the packed kernel buffer.

Validates:
- CRUD: ids, idempotent update/remove semantics, capacity limit, presets.
- Rejected updates keep the previous descriptor.
- Falloff curves and the field formulas (host mirror).
- Kernel sampling matches the host mirror for every field type.
- A disabled field contributes exactly nothing.
"""

from __future__ import annotations

import numpy as np
import pytest

from kinetic_mpm.physics_world.force_fields import (
    FORCE_FIELD_PRESETS,
    Falloff,
    ForceFieldDescriptor,
    ForceFieldManager,
    ForceFieldType,
    falloff_weight,
    field_force,
)
from kinetic_mpm.physics_world.solvers.mpm import ForceFieldBuffer
from kinetic_mpm.physics_world.solvers.mpm.mpm_forces import MAX_FORCE_FIELDS

CENTER = (16.0, 16.0, 16.0)


def _probes(count: int = 48, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.asarray(CENTER) + rng.uniform(-12.0, 12.0, size=(count, 3))


def test_add_get_update_remove():
    manager = ForceFieldManager()
    field_id = manager.add(type="REPELLER", position=CENTER, strength=5.0)
    assert manager.get(field_id).type == ForceFieldType.REPELLER
    assert manager.get(field_id).position == CENTER

    manager.update(field_id, strength=7.5)
    once = manager.get(field_id)
    manager.update(field_id, strength=7.5)
    assert manager.get(field_id) == once
    assert once.strength == 7.5

    manager.remove(field_id)
    assert len(manager) == 0
    with pytest.raises(KeyError):
        manager.remove(field_id)
    with pytest.raises(KeyError):
        manager.get(field_id)


def test_ids_are_not_reused():
    manager = ForceFieldManager()
    first = manager.add()
    manager.remove(first)
    second = manager.add()
    assert second != first
    assert manager.ids() == [second]


def test_capacity_limit():
    manager = ForceFieldManager()
    for _ in range(MAX_FORCE_FIELDS):
        manager.add()
    with pytest.raises(ValueError):
        manager.add()


def test_invalid_update_keeps_previous(capsys):
    manager = ForceFieldManager()
    field_id = manager.add(strength=3.0)
    result = manager.update(field_id, strength=float("nan"))
    assert result.strength == 3.0
    assert manager.get(field_id).strength == 3.0
    assert "rejected update" in capsys.readouterr().out

    manager.update(field_id, radius=-1.0)
    assert manager.get(field_id).radius == 20.0
    with pytest.raises(ValueError):
        manager.update(field_id, colour="red")


def test_add_rejects_invalid_descriptors():
    manager = ForceFieldManager()
    with pytest.raises(ValueError):
        manager.add(type="WHIRLPOOL")
    with pytest.raises(ValueError):
        manager.add(position=(0.0, float("inf"), 0.0))
    assert len(manager) == 0


@pytest.mark.parametrize("name", sorted(FORCE_FIELD_PRESETS))
def test_presets_register(name):
    manager = ForceFieldManager()
    field_id = manager.add_preset(name.lower(), position=CENTER)
    descriptor = manager.get(field_id)
    assert descriptor.name == FORCE_FIELD_PRESETS[name].name
    assert descriptor.position == CENTER


def test_unknown_preset():
    with pytest.raises(ValueError):
        ForceFieldManager().add_preset("SUPERNOVA")


def test_falloff_curves():
    for kind in Falloff:
        assert falloff_weight(kind, 0.0) == pytest.approx(1.0)
    assert falloff_weight(Falloff.CONSTANT, 1.0) == 1.0
    assert falloff_weight(Falloff.LINEAR, 0.25) == pytest.approx(0.75)
    assert falloff_weight(Falloff.QUADRATIC, 0.5) == pytest.approx(0.25)
    assert falloff_weight(Falloff.SMOOTH, 0.5) == pytest.approx(0.5)
    for kind in (Falloff.LINEAR, Falloff.QUADRATIC, Falloff.SMOOTH):
        assert falloff_weight(kind, 1.0) == pytest.approx(0.0)


def test_attractor_points_at_center_and_vanishes_outside_radius():
    descriptor = ForceFieldDescriptor(ForceFieldType.ATTRACTOR, position=CENTER, strength=20.0, radius=15.0,
                                      falloff=Falloff.QUADRATIC).normalized()
    force = field_force(descriptor, (26.0, 16.0, 16.0))
    assert force[0] < 0.0
    assert np.linalg.norm(force) == pytest.approx(20.0 * (1.0 - 10.0 / 15.0) ** 2)
    assert np.allclose(field_force(descriptor, (16.0, 32.0, 16.0)), 0.0)


def test_vortex_is_tangential_around_axis():
    descriptor = ForceFieldDescriptor(ForceFieldType.VORTEX, position=CENTER, strength=10.0, radius=20.0,
                                      falloff=Falloff.CONSTANT, axis=(0.0, 1.0, 0.0)).normalized()
    force = field_force(descriptor, (21.0, 16.0, 16.0))
    # Tangent of +x around +y is -z; inward pull -x; lift +y
    assert force == pytest.approx([-3.0, 2.0, -10.0])
    assert np.allclose(field_force(descriptor, (16.0, 20.0, 16.0)), 0.0)


def test_disabled_field_contributes_nothing():
    positions = _probes()
    manager = ForceFieldManager()
    field_id = manager.add(type="ATTRACTOR", position=CENTER, strength=50.0, radius=30.0)
    manager.update(field_id, enabled=False)
    assert manager.active() == []

    disabled = ForceFieldBuffer()
    disabled.upload(manager.active())
    empty = ForceFieldBuffer()
    empty.upload([])
    assert np.array_equal(disabled.sample(positions), empty.sample(positions))
    assert np.all(disabled.sample(positions) == 0.0)


def test_manager_switch_disables_everything():
    manager = ForceFieldManager()
    manager.add(position=CENTER)
    manager.set_enabled(False)
    assert manager.active() == []
    assert np.allclose(manager.force_at(CENTER), 0.0)


@pytest.mark.parametrize("kind", list(ForceFieldType))
@pytest.mark.parametrize("falloff", [Falloff.LINEAR, Falloff.SMOOTH])
def test_kernel_matches_host_mirror(kind, falloff):
    descriptor = ForceFieldDescriptor(kind, position=CENTER, strength=2.0, radius=14.0, falloff=falloff,
                                      direction=(1.0, 1.0, 0.0), axis=(0.0, 0.0, 1.0),
                                      turbulence_scale=0.5, noise_speed=1.0).normalized()
    buffer = ForceFieldBuffer()
    buffer.upload([descriptor])
    positions = _probes()
    time = 0.75
    sampled = buffer.sample(positions, time)
    expected = np.stack([field_force(descriptor, p, time) for p in positions])
    atol = 2e-2 if kind in (ForceFieldType.TURBULENCE, ForceFieldType.CURL_NOISE) else 1e-4
    assert np.allclose(sampled, expected, atol=atol)


def test_buffer_sums_multiple_fields():
    fields = [
        ForceFieldDescriptor(ForceFieldType.DIRECTIONAL, position=CENTER, strength=1.0, radius=100.0,
                             falloff=Falloff.CONSTANT, direction=(0.0, 1.0, 0.0)).normalized(),
        ForceFieldDescriptor(ForceFieldType.DIRECTIONAL, position=CENTER, strength=2.0, radius=100.0,
                             falloff=Falloff.CONSTANT, direction=(1.0, 0.0, 0.0)).normalized(),
    ]
    buffer = ForceFieldBuffer()
    buffer.upload(fields)
    sampled = buffer.sample(np.array([CENTER]))
    assert sampled[0] == pytest.approx([2.0, 1.0, 0.0])
