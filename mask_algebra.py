from __future__ import annotations

from typing import Callable, Iterable

import numpy as np

from cancellation import CancelToken, row_blocks
from raster_mask import RasterMask, Rect, window


def _is_blank(mask: RasterMask | None) -> bool:
    return mask is None or mask.is_empty


def _combine(a: RasterMask, b: RasterMask, target: Rect,
             op: Callable[[np.ndarray, np.ndarray], np.ndarray],
             cancel: CancelToken | None, where: str) -> RasterMask:
    """Apply a per-cell boolean op over `target`, 16 rows at a time."""
    ab, ac = a.snapshot()
    bb, bc = b.snapshot()
    ag = ac.reshape(ab.height, ab.width)
    bg = bc.reshape(bb.height, bb.width)
    out = np.zeros((target.height, target.width), dtype=bool)
    for r0, r1 in row_blocks(target.height, cancel, where):
        out[r0:r1] = op(window(ab, ag, target, r0, r1), window(bb, bg, target, r0, r1))
    return RasterMask(target, out)


def union(mask1: RasterMask | None, mask2: RasterMask | None,
          cancel: CancelToken | None = None) -> RasterMask:
    """Cells set in either mask; bounds are the union of both bounds."""
    if _is_blank(mask1):
        return mask2.copy() if mask2 is not None else RasterMask()
    if _is_blank(mask2):
        return mask1.copy()
    target = mask1.bounds.union(mask2.bounds)
    return _combine(mask1, mask2, target, np.logical_or, cancel, "union")


def intersection(mask1: RasterMask | None, mask2: RasterMask | None,
                 cancel: CancelToken | None = None) -> RasterMask:
    """Cells set in both masks; bounds are the intersection of both bounds."""
    if _is_blank(mask1) or _is_blank(mask2):
        return RasterMask()
    target = mask1.bounds.intersection(mask2.bounds)
    if target.is_empty:
        return RasterMask()
    return _combine(mask1, mask2, target, np.logical_and, cancel, "intersection")


def exclusive_union(mask1: RasterMask | None, mask2: RasterMask | None,
                    cancel: CancelToken | None = None) -> RasterMask:
    """Cells set in exactly one mask, with minimal bounds."""
    if _is_blank(mask1) or _is_blank(mask2):
        kept = mask2 if _is_blank(mask1) else mask1
        res = kept.copy() if kept is not None else RasterMask()
        res.optimize_bounds(cancel)
        return res
    target = mask1.bounds.union(mask2.bounds)
    res = _combine(mask1, mask2, target, np.logical_xor, cancel, "exclusive_union")
    res.optimize_bounds(cancel)
    return res


def subtraction(mask1: RasterMask | None, mask2: RasterMask | None,
                cancel: CancelToken | None = None) -> RasterMask:
    """Cells of mask1 not set in mask2, with minimal bounds."""
    if _is_blank(mask1):
        return RasterMask()
    if _is_blank(mask2):
        return mask1.copy()
    res = _combine(mask1, mask2, mask1.bounds,
                   lambda p, q: p & ~q, cancel, "subtraction")
    res.optimize_bounds(cancel)
    return res


def _reduce(op, masks: Iterable[RasterMask | None], cancel: CancelToken | None) -> RasterMask:
    masks = list(masks)
    if not masks:
        return RasterMask()
    result = masks[0].copy() if masks[0] is not None else RasterMask()
    for m in masks[1:]:
        result = op(result, m, cancel)
    return result


def union_all(masks: Iterable[RasterMask | None], cancel: CancelToken | None = None) -> RasterMask:
    return _reduce(union, masks, cancel)


def intersection_all(masks: Iterable[RasterMask | None], cancel: CancelToken | None = None) -> RasterMask:
    return _reduce(intersection, masks, cancel)


def exclusive_union_all(masks: Iterable[RasterMask | None], cancel: CancelToken | None = None) -> RasterMask:
    return _reduce(exclusive_union, masks, cancel)


def contains(mask1: RasterMask, mask2: RasterMask) -> bool:
    """True if mask2 lies inside mask1's bounds and every cell of mask2 is set in mask1."""
    ab, ac = mask1.snapshot()
    bb, bc = mask2.snapshot()
    inter = ab.intersection(bb)
    if inter != bb:
        return False
    if inter.is_empty:
        return True
    a = window(ab, ac.reshape(ab.height, ab.width), inter, 0, inter.height)
    b = bc.reshape(bb.height, bb.width)
    return not bool(np.any(b & ~a))


def intersects(mask1: RasterMask, mask2: RasterMask) -> bool:
    """True on the first pixel set in both masks."""
    ab, ac = mask1.snapshot()
    bb, bc = mask2.snapshot()
    inter = ab.intersection(bb)
    if inter.is_empty:
        return False
    ag = ac.reshape(ab.height, ab.width)
    bg = bc.reshape(bb.height, bb.width)
    for r0, r1 in row_blocks(inter.height):
        if np.any(window(ab, ag, inter, r0, r1) & window(bb, bg, inter, r0, r1)):
            return True
    return False


def upscale(mask: RasterMask, cancel: CancelToken | None = None) -> RasterMask:
    """Every cell becomes a 2x2 block; bounds double."""
    bounds, cells = mask.snapshot()
    g = cells.reshape(bounds.height, bounds.width)
    out = np.zeros((bounds.height * 2, bounds.width * 2), dtype=bool)
    for r0, r1 in row_blocks(bounds.height, cancel, "upscale"):
        out[2 * r0:2 * r1] = np.repeat(np.repeat(g[r0:r1], 2, axis=0), 2, axis=1)
    return RasterMask(bounds.scaled(2), out)


def downscale_values(mask: RasterMask, cancel: CancelToken | None = None) -> np.ndarray:
    """Count of True cells per 2x2 block, shaped (height // 2, width // 2).

    Blocks are anchored on the bounds origin; a trailing odd row or column
    is ignored.
    """
    return _block_counts(*mask.snapshot(), cancel)


def _block_counts(bounds: Rect, cells: np.ndarray, cancel: CancelToken | None) -> np.ndarray:
    rh, rw = bounds.height // 2, bounds.width // 2
    g = cells.reshape(bounds.height, bounds.width)[:rh * 2, :rw * 2]
    out = np.zeros((rh, rw), dtype=np.uint8)
    for r0, r1 in row_blocks(rh, cancel, "downscale_values"):
        blk = g[2 * r0:2 * r1].reshape(r1 - r0, 2, rw, 2)
        out[r0:r1] = blk.sum(axis=(1, 3), dtype=np.uint8)
    return out


def downscale(mask: RasterMask, threshold: int = 2, cancel: CancelToken | None = None) -> RasterMask:
    """Halve the resolution; a block is set when it holds >= threshold True cells.

    threshold is clamped to 1..4.
    """
    threshold = min(max(int(threshold), 1), 4)
    bounds, cells = mask.snapshot()
    values = _block_counts(bounds, cells, cancel)
    res = Rect(bounds.x // 2, bounds.y // 2, bounds.width // 2, bounds.height // 2)
    return RasterMask(res, values >= threshold)
