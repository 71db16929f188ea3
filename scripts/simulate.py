"""CLI entry point to run the kinetic MPM particle simulation."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add parent directory to path to find the kinetic_mpm package
sys.path.insert(0, str(Path(__file__).parent.parent))

from tqdm import tqdm
from kinetic_mpm import SimulationContainer, load_scene_config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the kinetic MPM particle simulation")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config/scene_config.yaml"),
        help="Path to the scene configuration YAML file.",
    )
    parser.add_argument("--steps", type=int, default=None, help="Optional override for number of steps")
    parser.add_argument(
        "--cpu",
        action="store_true",
        help="Use the Taichi CPU backend instead of the GPU",
    )
    parser.add_argument(
        "--no-export",
        action="store_true",
        help="Run without writing PLY frames",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    config = load_scene_config(args.config)
    if args.cpu:
        config.simulation.arch = "cpu"

    container = SimulationContainer.from_config(config, export=not args.no_export)

    steps = args.steps if args.steps is not None else config.simulation.total_steps
    progress = tqdm(range(steps), desc="Simulating")
    for _ in progress:
        snapshot = container.step()
        progress.set_postfix(particles=snapshot.live_particle_count)

    stats = container.world.last_stats
    if stats is not None:
        print(f"[Simulate] Finished {stats.step} steps, t={stats.time + stats.dt:.2f}s, "
              f"{stats.live_particles} live particles")


if __name__ == "__main__":
    main()
