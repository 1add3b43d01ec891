from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from cancellation import CancelToken, row_blocks


@dataclass(frozen=True)
class Rect:
    """Integer rectangle; x2/y2 are exclusive."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def union(self, other: Rect) -> Rect:
        if other.is_empty:
            return self
        if self.is_empty:
            return other
        x = min(self.x, other.x)
        y = min(self.y, other.y)
        return Rect(x, y, max(self.x2, other.x2) - x, max(self.y2, other.y2) - y)

    def intersection(self, other: Rect) -> Rect:
        x = max(self.x, other.x)
        y = max(self.y, other.y)
        w = max(0, min(self.x2, other.x2) - x)
        h = max(0, min(self.y2, other.y2) - y)
        return Rect(x, y, w, h)

    def contains_point(self, x: int, y: int) -> bool:
        return self.x <= x < self.x2 and self.y <= y < self.y2

    def scaled(self, factor: int) -> Rect:
        return Rect(self.x * factor, self.y * factor, self.width * factor, self.height * factor)


EMPTY_RECT = Rect()


def window(bounds: Rect, grid: np.ndarray, target: Rect, r0: int, r1: int) -> np.ndarray:
    """Sample rows [r0, r1) of `target` from a mask (bounds, grid).

    Cells of `target` outside `bounds` read as False.
    """
    out = np.zeros((r1 - r0, target.width), dtype=bool)
    ty0 = target.y + r0
    ty1 = target.y + r1
    ys = max(ty0, bounds.y)
    ye = min(ty1, bounds.y2)
    xs = max(target.x, bounds.x)
    xe = min(target.x2, bounds.x2)
    if ys < ye and xs < xe:
        out[ys - ty0:ye - ty0, xs - target.x:xe - target.x] = \
            grid[ys - bounds.y:ye - bounds.y, xs - bounds.x:xe - bounds.x]
    return out


class RasterMask:
    """Bounded 2-D boolean mask: a Rect plus a row-major cell buffer.

    `cells[(py - y) * width + (px - x)]` is True when pixel (px, py) belongs
    to the region. Bounds are not kept minimal; call optimize_bounds() for
    that. The in-place mutators swap (bounds, cells) together under the
    instance lock and never hold it while reading another mask; readers that
    iterate should work from snapshot().
    """

    __slots__ = ("_bounds", "_cells", "_lock")

    def __init__(self, bounds: Rect | None = None, cells: np.ndarray | Sequence[bool] | None = None):
        if bounds is None:
            bounds = EMPTY_RECT
        if bounds.is_empty:
            bounds = Rect(bounds.x, bounds.y, max(bounds.width, 0), max(bounds.height, 0))
        if cells is None:
            cells = np.zeros(bounds.area, dtype=bool)
        else:
            # each mask owns its buffer
            cells = np.array(cells, dtype=bool).ravel()
            if cells.size != bounds.area:
                raise ValueError(f"cells has {cells.size} entries, bounds {bounds} needs {bounds.area}")
        self._bounds = bounds
        self._cells = cells
        self._lock = threading.RLock()

    @classmethod
    def from_array(cls, array: np.ndarray, x: int = 0, y: int = 0) -> RasterMask:
        """Wrap a (rows, cols) boolean array whose [0, 0] cell sits at (x, y)."""
        a = np.asarray(array, dtype=bool)
        if a.ndim != 2:
            raise ValueError("array must be 2-D")
        h, w = a.shape
        return cls(Rect(int(x), int(y), w, h), a)

    @classmethod
    def from_points(cls, points) -> RasterMask:
        """Build a tight mask from (N,2) (x, y) points or a flat [x0, y0, x1, y1, ...] list."""
        pts = np.asarray(points, dtype=np.int64)
        if pts.ndim == 1:
            if pts.size % 2:
                raise ValueError("flat point list must have an even length")
            pts = pts.reshape(-1, 2)
        if pts.size == 0:
            return cls()
        xmin, ymin = pts.min(axis=0)
        xmax, ymax = pts.max(axis=0)
        bounds = Rect(int(xmin), int(ymin), int(xmax - xmin + 1), int(ymax - ymin + 1))
        grid = np.zeros((bounds.height, bounds.width), dtype=bool)
        grid[pts[:, 1] - ymin, pts[:, 0] - xmin] = True
        return cls(bounds, grid)

    @property
    def bounds(self) -> Rect:
        return self._bounds

    @property
    def cells(self) -> np.ndarray:
        return self._cells

    def snapshot(self) -> tuple[Rect, np.ndarray]:
        with self._lock:
            return self._bounds, self._cells

    def grid(self) -> np.ndarray:
        """Return the cells as a (height, width) view."""
        bounds, cells = self.snapshot()
        return cells.reshape(bounds.height, bounds.width)

    def _replace(self, bounds: Rect, cells: np.ndarray) -> None:
        with self._lock:
            self._bounds = bounds
            self._cells = cells

    def copy(self) -> RasterMask:
        bounds, cells = self.snapshot()
        return RasterMask(bounds, cells)

    @property
    def is_empty(self) -> bool:
        bounds, cells = self.snapshot()
        return bounds.is_empty or not cells.any()

    @property
    def num_points(self) -> int:
        return int(np.count_nonzero(self._cells))

    def points(self) -> np.ndarray:
        """(N,2) int array of (x, y) in ascending row then column order."""
        bounds, cells = self.snapshot()
        idx = np.flatnonzero(cells)
        if idx.size == 0:
            return np.zeros((0, 2), dtype=np.int64)
        ys, xs = np.divmod(idx, bounds.width)
        return np.stack([xs + bounds.x, ys + bounds.y], axis=1).astype(np.int64)

    def contains_point(self, x: int, y: int) -> bool:
        bounds, cells = self.snapshot()
        if not bounds.contains_point(x, y):
            return False
        return bool(cells[(y - bounds.y) * bounds.width + (x - bounds.x)])

    def same_points(self, other: RasterMask) -> bool:
        """True when both masks cover the same pixel set, whatever their bounds."""
        a = self.points()
        b = other.points()
        return a.shape == b.shape and bool(np.array_equal(a, b))

    def optimized_bounds(self, cancel: CancelToken | None = None) -> Rect:
        """Smallest rectangle holding every True cell (empty Rect if none)."""
        bounds, cells = self.snapshot()
        if bounds.is_empty:
            return EMPTY_RECT
        g = cells.reshape(bounds.height, bounds.width)
        rows = np.zeros(bounds.height, dtype=bool)
        cols = np.zeros(bounds.width, dtype=bool)
        for r0, r1 in row_blocks(bounds.height, cancel, "RasterMask.optimized_bounds"):
            blk = g[r0:r1]
            rows[r0:r1] = blk.any(axis=1)
            cols |= blk.any(axis=0)
        if not rows.any():
            return EMPTY_RECT
        ry = np.flatnonzero(rows)
        cx = np.flatnonzero(cols)
        return Rect(bounds.x + int(cx[0]), bounds.y + int(ry[0]),
                    int(cx[-1] - cx[0] + 1), int(ry[-1] - ry[0] + 1))

    def move_bounds(self, new_bounds: Rect) -> None:
        """Reallocate to `new_bounds`, keeping cells in the overlap and clearing the rest."""
        with self._lock:
            bounds, cells = self._bounds, self._cells
            if new_bounds == bounds:
                return
            if new_bounds.is_empty:
                self._replace(Rect(new_bounds.x, new_bounds.y, 0, 0), np.zeros(0, dtype=bool))
                return
            grid = np.zeros((new_bounds.height, new_bounds.width), dtype=bool)
            if not bounds.is_empty:
                grid[:] = window(bounds, cells.reshape(bounds.height, bounds.width),
                                 new_bounds, 0, new_bounds.height)
            self._replace(new_bounds, grid.ravel())

    def optimize_bounds(self, cancel: CancelToken | None = None) -> None:
        with self._lock:
            self.move_bounds(self.optimized_bounds(cancel))

    # in-place algebra: the result is computed without holding the lock, then
    # swapped in only if no other writer replaced (bounds, cells) meanwhile

    def _update(self, op, other: RasterMask | None, cancel: CancelToken | None) -> None:
        while True:
            bounds, cells = self.snapshot()
            res = op(self, other, cancel)
            with self._lock:
                if self._bounds is bounds and self._cells is cells:
                    self._replace(*res.snapshot())
                    return

    def add(self, other: RasterMask | None, cancel: CancelToken | None = None) -> None:
        from mask_algebra import union
        self._update(union, other, cancel)

    def intersect(self, other: RasterMask | None, cancel: CancelToken | None = None) -> None:
        from mask_algebra import intersection
        self._update(intersection, other, cancel)

    def exclusive_add(self, other: RasterMask | None, cancel: CancelToken | None = None) -> None:
        from mask_algebra import exclusive_union
        self._update(exclusive_union, other, cancel)

    def subtract(self, other: RasterMask | None, cancel: CancelToken | None = None) -> None:
        from mask_algebra import subtraction
        self._update(subtraction, other, cancel)

    def __repr__(self) -> str:
        return f"RasterMask(bounds={self._bounds}, points={self.num_points})"
