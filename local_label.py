from __future__ import annotations

import numpy as np
from numba import njit

from cancellation import CancelToken, row_blocks
from raster_mask import RasterMask


@njit(inline='always')
def uf_find(parent, x):
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@njit(inline='always')
def uf_union(parent, a, b):
    # b's root is attached under a's root
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra != rb:
        parent[rb] = ra


@njit
def _scan_rows(cells, w, r0, r1, labels, parent, next_label):
    """Single-pass 8-connected scan of rows [r0, r1).

    Looks only at left, top and top-left; the top-right link is made when the
    pixel right of a foreground run is background. Returns the next free label.
    """
    for y in range(r0, r1):
        base = y * w
        left = 0
        topleft = 0
        for x in range(w):
            top = 0
            if y > 0:
                top = labels[base - w + x]
            if cells[base + x]:
                if topleft != 0:
                    if left != 0 and left != topleft:
                        uf_union(parent, topleft, left)
                    left = topleft
                elif top != 0:
                    if left != 0 and left != top:
                        uf_union(parent, top, left)
                    left = top
                elif left == 0:
                    left = next_label
                    next_label += 1
            else:
                if left != 0 and top != 0 and left != top:
                    uf_union(parent, top, left)
                left = 0
            topleft = top
            labels[base + x] = left
    return next_label


@njit
def _resolve(labels, parent, n_labels):
    """Map raw labels to 1..K, numbering roots in creation order."""
    lut = np.zeros(n_labels, dtype=np.int64)
    k = 0
    for l in range(1, n_labels):
        if uf_find(parent, l) == l:
            k += 1
            lut[l] = k
    for i in range(labels.size):
        l = labels[i]
        if l != 0:
            labels[i] = lut[uf_find(parent, l)]
    return k


def label_2d(mask: RasterMask, cancel: CancelToken | None = None) -> tuple[np.ndarray, int]:
    """Label the 8-connected components of a mask.

    Returns (labels, K): an int64 (height, width) grid aligned on
    mask.bounds with labels 1..K (0 is background), numbered in the order
    the scan first met each surviving component.
    """
    bounds, cells = mask.snapshot()
    h, w = bounds.height, bounds.width
    labels = np.zeros(h * w, dtype=np.int64)
    if labels.size == 0:
        return labels.reshape(h, w), 0
    parent = np.arange(labels.size + 1, dtype=np.int64)
    next_label = 1
    for r0, r1 in row_blocks(h, cancel, "connected_components"):
        next_label = _scan_rows(cells, w, r0, r1, labels, parent, next_label)
    K = int(_resolve(labels, parent, next_label))
    return labels.reshape(h, w), K


def component_points(mask: RasterMask, sorted: bool = True,
                     cancel: CancelToken | None = None) -> list[np.ndarray]:
    """Return one (N,2) (x, y) point array per 8-connected component.

    With sorted=True points are in raster order (ascending row, then
    column); otherwise their order inside a component is unspecified.
    """
    bounds = mask.bounds
    labels, K = label_2d(mask, cancel)
    if K == 0:
        return []
    flat = labels.ravel()
    idx = np.flatnonzero(flat)
    lab = flat[idx]
    kind = "stable" if sorted else "quicksort"
    order = np.argsort(lab, kind=kind)
    idx = idx[order]
    counts = np.bincount(lab, minlength=K + 1)[1:]
    ys, xs = np.divmod(idx, bounds.width)
    pts = np.stack([xs + bounds.x, ys + bounds.y], axis=1).astype(np.int64)
    return np.split(pts, np.cumsum(counts)[:-1])


def connected_components(mask: RasterMask, cancel: CancelToken | None = None) -> list[RasterMask]:
    """Split a mask into its maximal 8-connected parts, each with tight bounds."""
    if mask.bounds.is_empty:
        return []
    return [RasterMask.from_points(p) for p in component_points(mask, True, cancel)]
