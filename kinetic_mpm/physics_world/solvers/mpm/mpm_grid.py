"""
MPM grid store - dense background Eulerian grid, frame-local accumulators.
"""
from typing import Sequence, Tuple

import numpy as np
import taichi as ti

MIN_GRID_CELLS = 4


@ti.data_oriented
class GridStore:
    """Background Eulerian grid for the MPM transfers (dx = 1 in grid space)."""

    def __init__(self, grid_size: Sequence[int]):
        """
        Initialize the grid store.

        Args:
            grid_size: Cells per axis (nx, ny, nz), or a single int for a cube
        """
        if np.isscalar(grid_size):
            grid_size = (grid_size, grid_size, grid_size)
        sizes = []
        for n in grid_size:
            n = int(n) if np.isfinite(n) else 0
            if n < MIN_GRID_CELLS:
                print(f"[GridStore] Warning: grid axis size {n} too small, using {MIN_GRID_CELLS}")
                n = MIN_GRID_CELLS
            sizes.append(n)
        self.grid_size: Tuple[int, int, int] = (sizes[0], sizes[1], sizes[2])

        shape = self.grid_size
        self.momentum = ti.Vector.field(3, dtype=ti.f32, shape=shape)        # P2G momentum
        self.mass = ti.field(dtype=ti.f32, shape=shape)                      # P2G mass
        self.stress = ti.Vector.field(3, dtype=ti.f32, shape=shape)          # P2G stress impulse
        self.velocity = ti.Vector.field(3, dtype=ti.f32, shape=shape)        # resolved velocity
        self.velocity_prev = ti.Vector.field(3, dtype=ti.f32, shape=shape)   # velocity before forces (FLIP)
        self.vorticity = ti.Vector.field(3, dtype=ti.f32, shape=shape)       # curl of resolved velocity

        print(f"[GridStore] Dense grid {shape[0]}x{shape[1]}x{shape[2]} ({self.cell_count} cells)")

    @property
    def cell_count(self) -> int:
        return self.grid_size[0] * self.grid_size[1] * self.grid_size[2]

    def center(self) -> np.ndarray:
        return np.asarray(self.grid_size, dtype=np.float64) * 0.5

    @ti.kernel
    def clear(self):
        """Clear grid momentum, mass and stress accumulators."""
        for I in ti.grouped(self.mass):
            self.momentum[I] = ti.Vector.zero(ti.f32, 3)
            self.stress[I] = ti.Vector.zero(ti.f32, 3)
            self.mass[I] = 0.0

    @ti.func
    def is_interior(self, I) -> ti.i32:
        """1 if node I has a neighbour on both sides along every axis."""
        inside = 1
        for d in ti.static(range(3)):
            if I[d] <= 0 or I[d] >= self.grid_size[d] - 1:
                inside = 0
        return inside

    @ti.kernel
    def total_mass(self) -> ti.f32:
        total = 0.0
        for I in ti.grouped(self.mass):
            total += self.mass[I]
        return total

    @ti.kernel
    def active_cell_count(self) -> ti.i32:
        count = 0
        for I in ti.grouped(self.mass):
            if self.mass[I] > 0.0:
                count += 1
        return count
