"""Exporter that writes the live particles (ASCII PLY) every export interval.

Output structure:
  outputs/
  └── particles/
      ├── particles_00000.ply
      ├── particles_00001.ply
      ...
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .configuration import ExportConfig
from .physics_world.state import ParticleSnapshot


@dataclass
class SimulationExporter:
    output_root: Path
    particle_dirname: str = "particles"
    interval: int = 1

    @classmethod
    def from_config(cls, config: Optional[ExportConfig]) -> "SimulationExporter":
        if config is None:
            config = ExportConfig()
        interval = config.interval
        if interval < 1:
            print(f"[SimulationExporter] Warning: invalid export interval {interval}, using 1")
            interval = 1

        exporter = cls(
            output_root=Path(config.output_root),
            particle_dirname=config.particle_subdir,
            interval=interval,
        )
        exporter._ensure_directories()
        return exporter

    def _ensure_directories(self) -> None:
        self.particle_dir.mkdir(parents=True, exist_ok=True)

    @property
    def particle_dir(self) -> Path:
        return self.output_root / self.particle_dirname

    def frame_path(self, frame_index: int) -> Path:
        return self.particle_dir / f"particles_{frame_index:05d}.ply"

    def export_step(self, step_index: int, snapshot: ParticleSnapshot) -> Optional[Path]:
        """Write the snapshot when step_index falls on the export interval."""
        if step_index % self.interval != 0:
            return None
        path = self.frame_path(step_index // self.interval)
        self._write_particle_ply(path, snapshot)
        return path

    def _write_particle_ply(self, path: Path, snapshot: ParticleSnapshot) -> None:
        count = snapshot.live_particle_count
        with path.open("w", encoding="utf-8") as handle:
            handle.write("ply\n")
            handle.write("format ascii 1.0\n")
            handle.write(f"comment step {snapshot.step_index} time {snapshot.time:.6f}\n")
            handle.write(f"element vertex {count}\n")
            handle.write("property float x\nproperty float y\nproperty float z\n")
            handle.write("property float vx\nproperty float vy\nproperty float vz\n")
            handle.write("property float density\n")
            handle.write("property int material\n")
            handle.write("property float age\n")
            handle.write("end_header\n")
            for pos, vel, density, material, age in zip(
                snapshot.positions, snapshot.velocities, snapshot.densities, snapshot.materials, snapshot.ages
            ):
                handle.write(
                    f"{pos[0]:.6f} {pos[1]:.6f} {pos[2]:.6f} "
                    f"{vel[0]:.6f} {vel[1]:.6f} {vel[2]:.6f} {density:.6f} {int(material)} {age:.6f}\n"
                )
