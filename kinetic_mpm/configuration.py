"""Scene configuration dataclasses and loader utilities."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Optional, Sequence


_YAML_MODULE: ModuleType | None = None


def _load_yaml_module() -> ModuleType:
    global _YAML_MODULE
    if _YAML_MODULE is None:
        try:
            _YAML_MODULE = import_module("yaml")
        except ModuleNotFoundError as exc:  # pragma: no cover - dependency hint
            raise ImportError(
                "PyYAML is required to load scene configurations. Install it via 'pip install pyyaml'."
            ) from exc
    return _YAML_MODULE


@dataclass
class SimulationConfig:
    grid_size: Sequence[int] = (64, 64, 64)  # cells per axis
    max_particles: int = 65536  # particle slots
    particle_count: int = 8192  # particles seeded at startup
    seed_radius: float = 0.5  # fraction of the smallest envelope half extent
    particle_mass: float = 1.0
    material: str = "FLUID"  # material of the seeded particles
    time_step: float = 1.0 / 60.0  # seconds (s)
    total_steps: int = 600
    time_scale: float = 1.0
    min_dt: float = 1e-4  # seconds (s)
    max_dt: float = 0.1  # seconds (s)
    adaptive_dt: bool = False
    cfl: float = 0.5
    gravity: Sequence[float] = (0.0, -9.8, 0.0)  # cells per second squared
    gravity_type: str = "VECTOR"  # VECTOR or CENTER
    transfer_mode: str = "PIC"  # PIC, FLIP or HYBRID
    flip_ratio: float = 0.95
    noise: float = 0.0
    vorticity_enabled: bool = False
    vorticity_epsilon: float = 0.0
    surface_tension_enabled: bool = False
    max_speed: float = 60.0  # cells per second
    force_fields_enabled: bool = True
    kinetic_enabled: bool = True
    debug_interval: int = 0  # steps, 0 disables the debug block
    seed: Optional[int] = None  # RNG seed for seeding and emission
    arch: str = "auto"  # Taichi backend: auto, gpu or cpu


@dataclass
class MaterialConfig:
    presets: List[str] = field(default_factory=list)  # applied in order, each replaces its type's entry
    custom: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # name -> MaterialDescriptor fields


@dataclass
class BoundaryConfig:
    shape: str = "NONE"  # NONE, BOX, SPHERE, TUBE, DODECAHEDRON
    collision_mode: str = "REFLECT"  # REFLECT, CLAMP, WRAP
    restitution: float = 0.3
    friction: float = 0.1
    wall_thickness: float = 2.0  # cells
    wall_stiffness: float = 0.3
    enabled: bool = True
    containment_strength: float = 4.0  # cells per second squared
    soft_start: float = 0.7  # normalized radius
    soft_ramp_end: float = 0.95
    soft_clamp: float = 1.05


@dataclass
class ExclusionZoneConfig:
    name: str
    left: float  # pixels
    top: float
    width: float
    height: float
    margin: Optional[float] = None  # pixels, tracker default when omitted


@dataclass
class ViewportConfig:
    width: float = 0.0  # pixels, 0 = no viewport (full grid)
    height: float = 0.0
    min_grid_margin: float = 8.0
    ui_margin: float = 16.0  # pixels
    exclusion_zones: List[ExclusionZoneConfig] = field(default_factory=list)


@dataclass
class ForceFieldConfig:
    preset: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)  # ForceFieldDescriptor fields


@dataclass
class EmitterConfig:
    preset: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)  # EmitterDescriptor fields


@dataclass
class KineticConfig:
    state: Dict[str, Any] = field(default_factory=dict)  # initial KineticState fields


@dataclass
class ExportConfig:
    output_root: Path = Path("outputs")
    particle_subdir: str = "particles"
    interval: int = 1  # steps between exported frames

    def particle_dir(self) -> Path:
        return self.output_root / self.particle_subdir


@dataclass
class SceneConfig:
    scene_name: str = "scene"
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    materials: MaterialConfig = field(default_factory=MaterialConfig)
    boundary: BoundaryConfig = field(default_factory=BoundaryConfig)
    viewport: ViewportConfig = field(default_factory=ViewportConfig)
    force_fields: List[ForceFieldConfig] = field(default_factory=list)
    emitters: List[EmitterConfig] = field(default_factory=list)
    kinetic: KineticConfig = field(default_factory=KineticConfig)
    export: ExportConfig | None = None


def _coerce_path(base_dir: Path, path_value: str | Path) -> Path:
    path = Path(path_value)
    return path if path.is_absolute() else (base_dir / path)


def _section(cls, raw: Optional[Dict[str, Any]], name: str):
    if raw is None:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' section: {', '.join(sorted(unknown))}")
    return cls(**raw)


def _preset_entry(cls, entry: Dict[str, Any]):
    entry = dict(entry)
    preset = entry.pop("preset", None)
    return cls(preset=preset, params=entry)


def load_scene_config(config_path: str | Path) -> SceneConfig:
    """Load a scene configuration from YAML."""
    path = Path(config_path).expanduser().resolve()
    with path.open("r", encoding="utf-8") as handle:
        yaml_module = _load_yaml_module()
        raw = yaml_module.safe_load(handle) or {}

    base_dir = path.parent

    if not raw.get("simulation"):
        print("[SceneConfig] Warning: No simulation section found, using defaults.")
    simulation = _section(SimulationConfig, raw.get("simulation"), "simulation")
    materials = _section(MaterialConfig, raw.get("materials"), "materials")
    if not raw.get("boundary"):
        print("[SceneConfig] Warning: No boundary section found, using soft containment.")
    boundary = _section(BoundaryConfig, raw.get("boundary"), "boundary")

    viewport_raw = dict(raw.get("viewport") or {})
    zones = [ExclusionZoneConfig(**entry) for entry in viewport_raw.pop("exclusion_zones", None) or []]
    viewport = _section(ViewportConfig, viewport_raw, "viewport")
    viewport.exclusion_zones = zones

    force_fields = [_preset_entry(ForceFieldConfig, entry) for entry in (raw.get("force_fields") or [])]
    emitters = [_preset_entry(EmitterConfig, entry) for entry in (raw.get("emitters") or [])]
    kinetic = KineticConfig(state=dict(raw.get("kinetic") or {}))

    export_cfg = raw.get("export")
    export = None
    if export_cfg:
        export = ExportConfig(
            output_root=_coerce_path(base_dir, export_cfg["output_root"]),
            particle_subdir=export_cfg.get("particle_subdir", "particles"),
            interval=int(export_cfg.get("interval", 1)),
        )

    return SceneConfig(
        scene_name=raw.get("scene_name", path.stem),
        simulation=simulation,
        materials=materials,
        boundary=boundary,
        viewport=viewport,
        force_fields=force_fields,
        emitters=emitters,
        kinetic=kinetic,
        export=export,
    )
