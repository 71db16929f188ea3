"""Tests for the simulation container, exporter and world wiring.

Validates:
- Frames are exported as PLY every export interval, and not at all when disabled.
- Viewport changes re-derive the boundary envelope.
- Custom materials, material presets and kinetic state names reach the solver tables.
"""

from __future__ import annotations

import numpy as np
import pytest

from kinetic_mpm import SimulationContainer
from kinetic_mpm.configuration import (
    BoundaryConfig,
    ExclusionZoneConfig,
    ExportConfig,
    ForceFieldConfig,
    MaterialConfig,
    ViewportConfig,
)
from kinetic_mpm.exporter import SimulationExporter
from kinetic_mpm.physics_world import ParticleWorld, Rect
from kinetic_mpm.physics_world.kinetic import Gesture, Personality
from kinetic_mpm.physics_world.solvers.mpm import MaterialType

from .conftest import make_scene


def _ply_header(path):
    header = {}
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if line == "end_header":
                break
            if line.startswith("element vertex"):
                header["count"] = int(line.split()[-1])
            if line.startswith("comment step"):
                header["step"] = int(line.split()[2])
        body = handle.readlines()
    return header, body


def test_container_exports_every_interval(tmp_path):
    scene = make_scene(particles=50, total_steps=5)
    scene.export = ExportConfig(output_root=tmp_path, interval=2)
    container = SimulationContainer.from_config(scene)
    snapshot = container.run()
    assert container.current_step == 5
    assert snapshot.step_index == 4

    files = sorted(p.name for p in container.exporter.particle_dir.glob("*.ply"))
    assert files == ["particles_00000.ply", "particles_00001.ply", "particles_00002.ply"]
    header, body = _ply_header(container.exporter.frame_path(2))
    assert header == {"count": 50, "step": 4}
    assert len(body) == 50
    assert len(body[0].split()) == 9


def test_container_without_export(tmp_path):
    scene = make_scene(particles=10)
    scene.export = ExportConfig(output_root=tmp_path / "unused")
    container = SimulationContainer.from_config(scene, export=False)
    container.run(2)
    assert container.exporter is None
    assert not (tmp_path / "unused").exists()


def test_exporter_invalid_interval(tmp_path, capsys):
    exporter = SimulationExporter.from_config(ExportConfig(output_root=tmp_path, interval=0))
    assert exporter.interval == 1
    assert "invalid export interval" in capsys.readouterr().out
    assert exporter.particle_dir.is_dir()


def test_viewport_updates_boundary_envelope():
    scene = make_scene(grid=32, boundary=BoundaryConfig(shape="BOX"))
    scene.viewport = ViewportConfig(width=1000.0, height=500.0, min_grid_margin=0.0, ui_margin=0.0)
    world = ParticleWorld.from_config(scene)
    assert world.boundary.state.half_extents[0] == pytest.approx(14.0)

    world.viewport.register_exclusion_zone("panel", Rect(750.0, 0.0, 250.0, 500.0))
    assert world.boundary.state.box_max[0] == pytest.approx(24.0)
    assert world.boundary.state.box_min[0] == pytest.approx(2.0)

    world.close()
    world.viewport.unregister_exclusion_zone("panel")
    assert world.boundary.state.box_max[0] == pytest.approx(24.0)


def test_configured_exclusion_zones_apply_at_startup():
    scene = make_scene(grid=32, boundary=BoundaryConfig(shape="BOX"))
    scene.viewport = ViewportConfig(width=1000.0, height=500.0, min_grid_margin=0.0, ui_margin=0.0,
                                    exclusion_zones=[ExclusionZoneConfig("panel", 750.0, 0.0, 250.0, 500.0)])
    world = ParticleWorld.from_config(scene)
    assert world.boundary.state.box_max[0] == pytest.approx(24.0)
    assert world.viewport.recompute_count == 1


def test_custom_material_and_presets():
    scene = make_scene()
    scene.materials = MaterialConfig(presets=["HONEY"], custom={"SLIME": {"base": "JELLY", "viscosity": 3.0}})
    world = ParticleWorld.from_config(scene)
    assert world.materials.get(MaterialType.VISCOUS).name == "Honey"
    assert world.library.get("SLIME").viscosity == 3.0
    assert world.library.get("SLIME").type == MaterialType.ELASTIC
    assert world.materials.get(MaterialType.ELASTIC).name == "Jelly"

    world.apply_material_preset("SLIME")
    assert world.materials.get(MaterialType.ELASTIC).name == "SLIME"

    scene.materials = MaterialConfig(custom={"GOO": {"base": "UNOBTANIUM"}})
    with pytest.raises(ValueError):
        ParticleWorld.from_config(scene)


def test_force_field_config_defaults_to_grid_center():
    scene = make_scene(grid=32)
    scene.force_fields = [ForceFieldConfig(preset="GRAVITY_WELL"),
                          ForceFieldConfig(params={"type": "REPELLER", "position": (4.0, 4.0, 4.0)})]
    world = ParticleWorld.from_config(scene)
    first, second = world.force_fields.list()
    assert first.position == (16.0, 16.0, 16.0)
    assert second.position == (4.0, 4.0, 4.0)


def test_kinetic_state_by_name():
    scene = make_scene()
    scene.kinetic.state = {"gesture": "swell", "personality": "CALM", "intensity": 2.0}
    world = ParticleWorld.from_config(scene)
    assert world.kinetic_state.gesture == Gesture.SWELL
    assert world.kinetic_state.personality == Personality.CALM
    assert world.kinetic_state.intensity == 1.0

    updated = world.set_kinetic_state(gesture="ACCENT")
    assert updated.gesture == Gesture.ACCENT
    assert updated.personality == Personality.CALM
    with pytest.raises(ValueError):
        world.set_kinetic_state(tempo=120)
    with pytest.raises(ValueError):
        world.set_kinetic_state(gesture="SHIMMY")


def test_world_step_reports_spawned_and_time():
    scene = make_scene(particles=20)
    world = ParticleWorld.from_config(scene)
    snapshot = world.step(1.0 / 60.0)
    assert snapshot.step_index == 0
    assert snapshot.time == pytest.approx(1.0 / 60.0)
    assert world.last_stats.live_particles == 20
    assert world.last_stats.spawned_particles == 0
    assert world.live_particle_count == 20
    assert np.isfinite(snapshot.positions).all()
