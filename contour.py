from __future__ import annotations

import math

import numpy as np

from cancellation import CancelToken, PointCounter, row_blocks
from raster_mask import RasterMask

SQRT2 = math.sqrt(2.0)

# walk directions in scan order: E, SE, S, SW, W, NW, N, NE
_DX = (1, 1, 0, -1, -1, -1, 0, 1)
_DY = (0, 1, 1, 1, 0, -1, -1, -1)
# scan position to restart from after a move in each direction
_RESTART = (6, 6, 0, 0, 2, 2, 4, 4)


def _border_grid(mask: RasterMask, cancel: CancelToken | None) -> np.ndarray:
    bounds, cells = mask.snapshot()
    g = cells.reshape(bounds.height, bounds.width)
    p = np.pad(g, 1, mode="constant", constant_values=False)
    out = np.zeros_like(g)
    for r0, r1 in row_blocks(bounds.height, cancel, "contour_points"):
        c = p[r0 + 1:r1 + 1, 1:-1]
        inner = (p[r0:r1, 1:-1] & p[r0 + 2:r1 + 2, 1:-1]
                 & p[r0 + 1:r1 + 1, :-2] & p[r0 + 1:r1 + 1, 2:])
        out[r0:r1] = c & ~inner
    return out


def contour_points(mask: RasterMask, cancel: CancelToken | None = None) -> np.ndarray:
    """Border pixels of the mask as an (N,2) (x, y) array in raster order.

    A set pixel is on the border when one of its 4-neighbours is unset;
    pixels outside the bounds count as unset.
    """
    bounds = mask.bounds
    if bounds.is_empty:
        return np.zeros((0, 2), dtype=np.int64)
    ys, xs = np.nonzero(_border_grid(mask, cancel))
    return np.stack([xs + bounds.x, ys + bounds.y], axis=1).astype(np.int64)


def _adjacent(p, q) -> bool:
    return max(abs(p[0] - q[0]), abs(p[1] - q[1])) <= 1


def _connect(result: list, source: list) -> list | None:
    if not result:
        return result + source
    if not source:
        return result
    r_head, r_tail = result[0], result[-1]
    s_head, s_tail = source[0], source[-1]
    if _adjacent(s_head, r_tail):
        return result + source
    if _adjacent(s_head, r_head):
        return source[::-1] + result
    if _adjacent(s_tail, r_head):
        return source + result
    if _adjacent(s_tail, r_tail):
        return result + source[::-1]
    return None


def _insert(result: list, source: list) -> list | None:
    if not result:
        return result + source
    if not source:
        return result
    s_head, s_tail = source[0], source[-1]
    for i, p in enumerate(result):
        if _adjacent(p, s_head):
            return result[:i + 1] + source + result[i + 1:]
        if _adjacent(p, s_tail):
            return result[:i + 1] + source[::-1] + result[i + 1:]
    return None


def _walk_paths(border: np.ndarray, counter: PointCounter) -> list[list[tuple[int, int]]]:
    """Trace 8-connected border paths in grid coordinates.

    Each path starts at the first unvisited border pixel in raster order and
    stops when all 8 neighbours are exhausted or a visited border pixel is hit.
    """
    h, w = border.shape
    visited = np.zeros_like(border)
    flat = border.ravel()
    vflat = visited.ravel()
    candidates = np.flatnonzero(flat)
    paths = []
    ci = 0
    while ci < candidates.size:
        start = int(candidates[ci])
        if vflat[start]:
            ci += 1
            continue
        y, x = divmod(start, w)
        visited[y, x] = True
        path = [(x, y)]
        counter.tick()
        scan = 0
        remain = 8
        while remain > 0:
            remain -= 1
            d = scan & 7
            nx = x + _DX[d]
            ny = y + _DY[d]
            if 0 <= nx < w and 0 <= ny < h and border[ny, nx]:
                if visited[ny, nx]:
                    remain = 0
                else:
                    x, y = nx, ny
                    visited[y, x] = True
                    path.append((x, y))
                    counter.tick()
                    scan = _RESTART[d]
                    remain = 8
            scan = (scan + 1) & 7
        paths.append(path)
        ci += 1
    return paths


def connected_contour_points(mask: RasterMask, cancel: CancelToken | None = None) -> np.ndarray:
    """Border pixels as a single ordered (N,2) (x, y) path.

    Paths are spliced end to end when their endpoints touch, then inserted
    after the first path point adjacent to one of their ends. Paths that can
    be neither connected nor inserted are dropped, so on masks whose border
    splits into distant pieces the result covers only part of the border.
    """
    bounds = mask.bounds
    if bounds.is_empty:
        return np.zeros((0, 2), dtype=np.int64)
    border = _border_grid(mask, cancel)
    if not border.any():
        return np.zeros((0, 2), dtype=np.int64)
    counter = PointCounter(cancel, "connected_contour_points")
    paths = _walk_paths(border, counter)

    result = paths.pop(0)
    for splice in (_connect, _insert):
        i = 0
        while i < len(paths):
            joined = splice(result, paths[i])
            if joined is not None:
                result = joined
                paths.pop(i)
                i = 0
            else:
                i += 1

    pts = np.asarray(result, dtype=np.int64)
    pts[:, 0] += bounds.x
    pts[:, 1] += bounds.y
    return pts


def contour_length(mask: RasterMask, cancel: CancelToken | None = None) -> float:
    """Estimate the perimeter of the mask in pixel units.

    Each border pixel is classified by its direct (4-) and diagonal
    neighbour counts and contributes a fixed weight built from 1, sqrt(2)
    and pi; the total is reduced by min(side_edges / 10, corner_edges).
    An isolated pixel measures pi.
    """
    bounds, cells = mask.snapshot()
    if bounds.is_empty:
        return 0.0
    g = cells.reshape(bounds.height, bounds.width)
    p = np.pad(g, 1, mode="constant", constant_values=False)
    border = _border_grid(mask, cancel)
    ys, xs = np.nonzero(border)
    if ys.size == 0:
        return 0.0
    py, px = ys + 1, xs + 1

    top = p[py - 1, px]
    bottom = p[py + 1, px]
    left = p[py, px - 1]
    right = p[py, px + 1]
    diag = (p[py - 1, px - 1].astype(np.int64) + p[py - 1, px + 1]
            + p[py + 1, px - 1] + p[py + 1, px + 1])
    direct = (top.astype(np.int64) + bottom + left + right)
    opposite = (left & right) | (top & bottom)
    dg = diag * 0.5

    conds = [
        (direct == 0) & (diag == 0),
        (direct == 0) & (diag == 1),
        (direct == 0) & (diag >= 2),
        (direct == 1) & (diag == 0),
        (direct == 1) & (diag >= 1),
        (direct == 2) & opposite,
        (direct == 2) & ~opposite,
        (direct == 3) & (diag == 3),
        (direct == 3) & (diag == 4),
        (direct == 3),
    ]
    perim = np.select(conds, [
        math.pi,
        SQRT2 + math.pi / 2,
        2 * SQRT2,
        1 + math.pi / 2,
        1 + SQRT2,
        (2 - dg) + dg * SQRT2,
        SQRT2,
        0.5 + SQRT2 / 2,
        SQRT2,
        1.0,
    ], default=0.0)
    side = np.select(conds, [0, 0, 0, 1, 1, 2 - dg, 0, 0.5, 0, 1], default=0.0)
    corner = np.select(conds, [0, 1, 2, 0, 1, dg, 1, 0.5, 1, 0], default=0.0)

    overshoot = min(float(side.sum()) / 10.0, float(corner.sum()))
    return float(perim.sum()) - overshoot
