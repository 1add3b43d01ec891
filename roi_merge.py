from __future__ import annotations

from enum import Enum
from typing import Callable, Sequence, Union

import mask_algebra as MA
from cancellation import CancelToken, check
from local_label import connected_components
from raster_mask import RasterMask
from roi import ALL, AreaRoi2D, AreaRoi3D, Rect5D, UnsupportedOperation, effective_dimension

Roi = Union[AreaRoi2D, AreaRoi3D]
MaskOp = Callable[[RasterMask, RasterMask, "CancelToken | None"], RasterMask]


class BooleanOperator(Enum):
    AND = "and"
    OR = "or"
    XOR = "xor"


def _check_result_axes(bounds: Rect5D, what: str) -> Rect5D:
    ic, it, iz = bounds.is_infinite_c, bounds.is_infinite_t, bounds.is_infinite_z
    if not ic and (it or iz):
        raise UnsupportedOperation(
            f"Can't process {what} on ROI with a finite C dimension and infinite T or Z dimension")
    if not it and iz:
        raise UnsupportedOperation(
            f"Can't process {what} on ROI with a finite T dimension and infinite Z dimension")
    return bounds


def union_bounds(roi1: Roi | None, roi2: Roi | None) -> Rect5D:
    """Per-axis union; both ROIs must agree on which of Z, T, C are infinite."""
    if roi1 is None:
        return Rect5D() if roi2 is None else roi2.bounds5d()
    if roi2 is None:
        return roi1.bounds5d()
    b1, b2 = roi1.bounds5d(), roi2.bounds5d()
    if (b1.is_infinite_c != b2.is_infinite_c or b1.is_infinite_t != b2.is_infinite_t
            or b1.is_infinite_z != b2.is_infinite_z):
        raise UnsupportedOperation("Can't process union on ROI with different infinite dimension")
    return _check_result_axes(b1.union(b2), "union")


def intersection_bounds(roi1: Roi | None, roi2: Roi | None) -> Rect5D:
    if roi1 is None or roi2 is None:
        return Rect5D()
    return _check_result_axes(roi1.bounds5d().intersection(roi2.bounds5d()), "intersection")


def subtraction_bounds(roi1: Roi | None, roi2: Roi | None) -> Rect5D:
    """Minuend bounds; a finite subtrahend axis cannot cut an infinite minuend axis."""
    if roi1 is None:
        return Rect5D()
    b1 = roi1.bounds5d()
    if roi2 is None:
        return b1
    b2 = roi2.bounds5d()
    for axis, i1, i2 in (("C", b1.is_infinite_c, b2.is_infinite_c),
                         ("T", b1.is_infinite_t, b2.is_infinite_t),
                         ("Z", b1.is_infinite_z, b2.is_infinite_z)):
        if i1 and not i2:
            raise UnsupportedOperation(
                f"Can't process subtraction: ROI 1 has infinite {axis} dimension while ROI 2 has a finite one")
    return b1


def _op_depth(dim: int, bounds: Rect5D) -> int:
    if dim == 2:
        return 1
    return int(bounds.size_z)


def _apply(roi1: Roi, roi2: Roi, bounds: Rect5D, op: MaskOp, name: str,
           cancel: CancelToken | None) -> Roi:
    dim = effective_dimension(bounds)
    if dim > 3:
        raise UnsupportedOperation("Can't process boolean operation on a ROI with unknown dimension.")
    z0, t0, c0 = bounds.int_position()
    slices: dict[int, RasterMask] = {}
    for dz in range(_op_depth(dim, bounds)):
        z = z0 + dz if z0 != ALL else ALL
        res = op(roi1.mask_2d(z, t0, c0), roi2.mask_2d(z, t0, c0), cancel)
        res.optimize_bounds(cancel)
        slices[z] = res
        check(cancel, name)
    if dim == 2:
        return AreaRoi2D(slices[z0], z=z0, t=t0, c=c0, name=name)
    return AreaRoi3D({z: m for z, m in slices.items() if not m.is_empty}, t=t0, c=c0, name=name)


def _empty() -> AreaRoi2D:
    return AreaRoi2D()


def roi_union(roi1: Roi | None, roi2: Roi | None, cancel: CancelToken | None = None) -> Roi:
    if roi1 is None:
        return _empty() if roi2 is None else roi2.copy()
    if roi2 is None:
        return roi1.copy()
    return _apply(roi1, roi2, union_bounds(roi1, roi2), MA.union, "Union", cancel)


def roi_intersection(roi1: Roi | None, roi2: Roi | None, cancel: CancelToken | None = None) -> Roi:
    if roi1 is None or roi2 is None:
        return _empty()
    return _apply(roi1, roi2, intersection_bounds(roi1, roi2), MA.intersection, "Intersection", cancel)


def roi_exclusive_union(roi1: Roi | None, roi2: Roi | None, cancel: CancelToken | None = None) -> Roi:
    if roi1 is None:
        return _empty() if roi2 is None else roi2.copy()
    if roi2 is None:
        return roi1.copy()
    return _apply(roi1, roi2, union_bounds(roi1, roi2), MA.exclusive_union, "Exclusive union", cancel)


def roi_subtraction(roi1: Roi | None, roi2: Roi | None, cancel: CancelToken | None = None) -> Roi:
    if roi1 is None:
        return _empty()
    if roi2 is None:
        return roi1.copy()
    return _apply(roi1, roi2, subtraction_bounds(roi1, roi2), MA.subtraction, "Subtraction", cancel)


_MERGE_OPS = {
    BooleanOperator.AND: roi_intersection,
    BooleanOperator.OR: roi_union,
    BooleanOperator.XOR: roi_exclusive_union,
}


def merge(rois: Sequence[Roi], operator: BooleanOperator,
          cancel: CancelToken | None = None) -> Roi | None:
    """Fold a list of ROIs left to right with AND, OR or XOR; None for an empty list."""
    if not rois:
        return None
    op = _MERGE_OPS[operator]
    result = rois[0].copy()
    for other in rois[1:]:
        check(cancel, f"ROI {operator.name} merging")
        result = op(result, other, cancel)
    return result


def roi_components(roi: Roi, cancel: CancelToken | None = None) -> list[AreaRoi2D]:
    """One planar ROI per 8-connected component of a 2D area ROI."""
    if not isinstance(roi, AreaRoi2D):
        raise UnsupportedOperation(f"connected components are only defined for 2D area ROIs, got {type(roi).__name__}")
    return [AreaRoi2D(m, z=roi.z, t=roi.t, c=roi.c, name=f"{roi.name} #{i}".strip(), color=roi.color)
            for i, m in enumerate(connected_components(roi.mask, cancel))]
