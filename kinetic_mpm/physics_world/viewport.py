"""
Viewport tracker - derives the particle-safe grid envelope from the host viewport.

The safe zone is the viewport minus the UI panels docked at its edges. It is mapped
onto the x/y extents of the simulation grid (screen y points down, grid y points up);
z always spans the full grid depth.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .solvers.mpm.mpm_boundary import default_envelope

GRID_TO_WORLD = 1.0 / 64.0
WORLD_Z_COMPRESSION = 0.4
# Panels whose far edge lies inside this fraction of the viewport trim that edge
EDGE_FRACTION = 0.4


@dataclass(frozen=True)
class Rect:
    """Screen-space rectangle in pixels (origin top-left)."""

    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def is_valid(self) -> bool:
        values = (self.left, self.top, self.width, self.height)
        return bool(np.isfinite(values).all()) and self.width > 0.0 and self.height > 0.0


@dataclass(frozen=True)
class SafeZone:
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Tuple[float, float]:
        return (self.min_x + self.max_x) * 0.5, (self.min_y + self.max_y) * 0.5


@dataclass(frozen=True)
class ViewportBounds:
    width: float  # pixels
    height: float
    safe: SafeZone
    envelope_center: Tuple[float, float, float]  # grid space
    envelope_half_extents: Tuple[float, float, float]

    @property
    def aspect(self) -> float:
        return self.width / self.height if self.height > 0.0 else 1.0


@dataclass(frozen=True)
class _ExclusionZone:
    rect: Rect
    margin: float


class ViewportTracker:
    """Tracks viewport size and UI exclusion zones, re-deriving the grid envelope on change."""

    def __init__(self,
                 grid_size: Sequence[int],
                 wall_thickness: float = 2.0,
                 min_grid_margin: float = 8.0,
                 ui_margin: float = 16.0):
        """
        Initialize the tracker.

        Args:
            grid_size: Grid cells per axis
            wall_thickness: Cells kept free along every grid face
            min_grid_margin: Screen margin in pixels, also the safe-radius margin in cells
            ui_margin: Default pixel gap kept around UI panels
        """
        self.grid_size = tuple(int(n) for n in grid_size)
        self.wall_thickness = float(wall_thickness)
        self.min_grid_margin = float(min_grid_margin)
        self.ui_margin = float(ui_margin)

        self.width = 0.0
        self.height = 0.0
        self._zones: Dict[str, _ExclusionZone] = {}
        self._callbacks: List[Callable[[ViewportBounds], None]] = []
        self._updating = False
        self._batch_depth = 0
        self._last_inputs = None
        self.recompute_count = 0
        self.bounds = self._calculate_bounds()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_viewport(self, width: float, height: float) -> bool:
        """Record a resize; returns whether the bounds were recomputed."""
        if not (np.isfinite(width) and np.isfinite(height)) or width <= 0.0 or height <= 0.0:
            print(f"[ViewportTracker] Warning: invalid viewport {width}x{height}, ignoring")
            return False
        self.width = float(width)
        self.height = float(height)
        return self.update()

    def register_exclusion_zone(self, name: str, rect: Rect, margin: Optional[float] = None) -> bool:
        if not rect.is_valid():
            print(f"[ViewportTracker] Warning: invalid exclusion rect for '{name}': {rect}, ignoring")
            return False
        self._zones[name] = _ExclusionZone(rect, self.ui_margin if margin is None else float(margin))
        return self.update()

    def unregister_exclusion_zone(self, name: str) -> bool:
        if self._zones.pop(name, None) is None:
            return False
        return self.update()

    def exclusion_zones(self) -> Dict[str, Rect]:
        return {name: zone.rect for name, zone in self._zones.items()}

    def on_update(self, callback: Callable[[ViewportBounds], None]) -> Callable[[], None]:
        """Subscribe to bounds changes; returns the unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    @contextmanager
    def batch(self):
        """Group several input changes into a single recompute."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
        if self._batch_depth == 0:
            self.update()

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def _inputs(self):
        return self.width, self.height, tuple(sorted(self._zones.items()))

    def update(self, force: bool = False) -> bool:
        """
        Recompute the bounds and notify subscribers.

        Re-entrant calls (from a subscriber) and calls with unchanged inputs are no-ops.
        """
        if self._updating or self._batch_depth > 0:
            return False
        inputs = self._inputs()
        if not force and inputs == self._last_inputs:
            return False
        self._updating = True
        try:
            self.bounds = self._calculate_bounds()
            self._last_inputs = inputs
            self.recompute_count += 1
            for callback in list(self._callbacks):
                callback(self.bounds)
        finally:
            self._updating = False
        return True

    def _safe_zone(self) -> SafeZone:
        w, h = self.width, self.height
        min_x, max_x = self.min_grid_margin, w - self.min_grid_margin
        min_y, max_y = self.min_grid_margin, h - self.min_grid_margin
        for zone in self._zones.values():
            rect, margin = zone.rect, zone.margin
            if rect.left > w * (1.0 - EDGE_FRACTION):
                max_x = min(max_x, rect.left - margin)
            if rect.right < w * EDGE_FRACTION:
                min_x = max(min_x, rect.right + margin)
            if rect.bottom < h * EDGE_FRACTION:
                min_y = max(min_y, rect.bottom + margin)
            if rect.top > h * (1.0 - EDGE_FRACTION):
                max_y = min(max_y, rect.top - margin)
        return SafeZone(min_x, max_x, min_y, max_y)

    def _calculate_bounds(self) -> ViewportBounds:
        center, half = default_envelope(self.grid_size, self.wall_thickness)
        safe = SafeZone(0.0, self.width, 0.0, self.height)
        if self.width > 0.0 and self.height > 0.0:
            safe = self._safe_zone()
            if safe.width <= 0.0 or safe.height <= 0.0:
                print(f"[ViewportTracker] Warning: UI covers the viewport ({safe}), using the full grid")
            else:
                center, half = self._envelope_from_safe_zone(safe, center, half)
        return ViewportBounds(
            width=self.width,
            height=self.height,
            safe=safe,
            envelope_center=tuple(float(c) for c in center),
            envelope_half_extents=tuple(float(h) for h in half),
        )

    def _envelope_from_safe_zone(self, safe: SafeZone, center: np.ndarray, half: np.ndarray):
        nx, ny, _ = self.grid_size
        lo = center - half
        hi = center + half
        x0 = max(safe.min_x / self.width * nx, lo[0])
        x1 = min(safe.max_x / self.width * nx, hi[0])
        y0 = max((1.0 - safe.max_y / self.height) * ny, lo[1])
        y1 = min((1.0 - safe.min_y / self.height) * ny, hi[1])
        new_center = np.array([(x0 + x1) * 0.5, (y0 + y1) * 0.5, center[2]])
        new_half = np.array([max((x1 - x0) * 0.5, 1.0), max((y1 - y0) * 0.5, 1.0), half[2]])
        return new_center, new_half

    # ------------------------------------------------------------------
    # Queries and conversions
    # ------------------------------------------------------------------

    def grid_envelope(self) -> Tuple[np.ndarray, np.ndarray]:
        """(center, half extents) of the usable region in grid space."""
        return np.asarray(self.bounds.envelope_center), np.asarray(self.bounds.envelope_half_extents)

    def safe_radius(self) -> Tuple[float, float]:
        """(xy, z) radius particles may occupy around the grid center."""
        nx, ny, nz = self.grid_size
        xy = max(min(nx, ny) * 0.5 - self.min_grid_margin, 1.0)
        z = max(nz * 0.5 - self.min_grid_margin, 1.0)
        return xy, z

    def screen_to_grid(self, screen_x: float, screen_y: float) -> Tuple[float, float]:
        if self.width <= 0.0 or self.height <= 0.0:
            raise ValueError("Viewport size is not set")
        gx = screen_x / self.width * self.grid_size[0]
        gy = (1.0 - screen_y / self.height) * self.grid_size[1]
        return gx, gy

    def grid_to_world(self, position) -> np.ndarray:
        center = np.asarray(self.grid_size, dtype=np.float64) * 0.5
        world = (np.asarray(position, dtype=np.float64) - center) * GRID_TO_WORLD
        world[..., 2] *= WORLD_Z_COMPRESSION
        return world

    def world_to_grid(self, position) -> np.ndarray:
        center = np.asarray(self.grid_size, dtype=np.float64) * 0.5
        grid = np.array(position, dtype=np.float64)
        grid[..., 2] /= WORLD_Z_COMPRESSION
        return grid / GRID_TO_WORLD + center
