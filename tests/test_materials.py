"""Tests for the material model table.

Validates:
- One default entry per material type, taken from the last preset of that type.
- Descriptor validation clamps out-of-range and non-finite parameters.
- Preset swaps replace exactly one table row.
- Unknown names and malformed tables are rejected.
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from kinetic_mpm.physics_world.solvers.mpm.mpm_materials import (
    MATERIAL_PRESETS,
    NUM_MATERIALS,
    MaterialDescriptor,
    MaterialLibrary,
    MaterialTable,
    MaterialType,
    default_material_table,
    parse_material_type,
)


@pytest.mark.parametrize(
    "material_type, preset",
    [
        (MaterialType.FLUID, "Water"),
        (MaterialType.ELASTIC, "Jelly"),
        (MaterialType.SAND, "Sand"),
        (MaterialType.SNOW, "Snow"),
        (MaterialType.FOAM, "Foam"),
        (MaterialType.VISCOUS, "Lava"),
        (MaterialType.PLASMA, "Plasma"),
        (MaterialType.RIGID, "Metal"),
    ],
)
def test_default_table_uses_last_preset_per_type(material_type, preset):
    table = default_material_table()
    assert len(table) == NUM_MATERIALS
    assert table[int(material_type)].name == preset
    assert table[int(material_type)].type == material_type


def test_presets_cover_reference_library():
    assert set(MATERIAL_PRESETS) == {
        "WATER", "OIL", "HONEY", "SAND", "SNOW", "RUBBER", "JELLY", "FOAM", "LAVA", "PLASMA", "METAL",
    }


def test_validated_clamps_and_replaces_non_finite():
    bad = MaterialDescriptor(
        MaterialType.FLUID, "Bad", -1.0, math.nan, -2.0, 1.5, -0.5, 2.0, 0.5, math.inf, -1.0,
    )
    fixed = bad.validated()
    assert fixed.density > 0.0
    assert fixed.stiffness == 0.0
    assert fixed.viscosity == 0.0
    assert fixed.friction == 1.0
    assert fixed.cohesion == 0.0
    assert fixed.elasticity == 1.0
    assert fixed.compressibility == 0.0
    assert fixed.surface_tension == 0.0


def test_apply_preset_replaces_single_row():
    table = MaterialTable()
    before = table.entries()
    table.apply_preset("honey")
    after = table.entries()
    assert after[int(MaterialType.VISCOUS)].name == "Honey"
    for i in range(NUM_MATERIALS):
        if i != int(MaterialType.VISCOUS):
            assert after[i] == before[i]
    viscosity = table.viscosity.to_numpy()
    assert np.isclose(viscosity[int(MaterialType.VISCOUS)], MATERIAL_PRESETS["HONEY"].viscosity)


def test_library_custom_material_feeds_table():
    library = MaterialLibrary()
    slime = MaterialDescriptor(
        MaterialType.ELASTIC, "Slime", 1.2, 1.0, 3.0, 0.2, 0.9, 0.4, 0.5, 0.3, 0.6,
    )
    library.add("slime", slime)
    assert "SLIME" in library.names()
    table = MaterialTable(library.table())
    assert table.get(MaterialType.ELASTIC).name == "Slime"
    assert np.isclose(table.density.to_numpy()[int(MaterialType.ELASTIC)], 1.2)


def test_unknown_names_and_bad_tables_rejected():
    with pytest.raises(ValueError):
        parse_material_type("plutonium")
    with pytest.raises(ValueError):
        parse_material_type(42)
    table = MaterialTable()
    with pytest.raises(ValueError):
        table.apply_preset("NOT_A_PRESET")
    with pytest.raises(ValueError):
        table.replace(default_material_table()[:3])
    assert parse_material_type("sand") == MaterialType.SAND
    assert parse_material_type(7) == MaterialType.PLASMA
