from __future__ import annotations

import math
from dataclasses import dataclass, field, replace

import numpy as np

from raster_mask import RasterMask

INF = math.inf
# integer position standing for "every position along this axis"
ALL = -1


class UnsupportedOperation(ValueError):
    """A geometry operation that cannot be carried out for these inputs."""


@dataclass(frozen=True)
class Dimension5D:
    size_x: float
    size_y: float
    size_z: float = 1
    size_t: float = 1
    size_c: float = 1


def _axis_union(p1, s1, p2, s2):
    if math.isinf(s1) or math.isinf(s2):
        return -INF, INF
    if s1 <= 0:
        return p2, s2
    if s2 <= 0:
        return p1, s1
    lo = min(p1, p2)
    return lo, max(p1 + s1, p2 + s2) - lo


def _axis_intersection(p1, s1, p2, s2):
    if math.isinf(s1) and math.isinf(s2):
        return -INF, INF
    if math.isinf(s1):
        return p2, s2
    if math.isinf(s2):
        return p1, s1
    lo = max(p1, p2)
    return lo, max(0, min(p1 + s1, p2 + s2) - lo)


@dataclass(frozen=True)
class Rect5D:
    """Box over (X, Y, Z, T, C); an axis whose size is inf covers every position."""

    x: float = 0
    y: float = 0
    z: float = 0
    t: float = 0
    c: float = 0
    size_x: float = 0
    size_y: float = 0
    size_z: float = 0
    size_t: float = 0
    size_c: float = 0

    @property
    def is_infinite_z(self) -> bool:
        return math.isinf(self.size_z)

    @property
    def is_infinite_t(self) -> bool:
        return math.isinf(self.size_t)

    @property
    def is_infinite_c(self) -> bool:
        return math.isinf(self.size_c)

    def _axes(self):
        return ((self.x, self.size_x), (self.y, self.size_y), (self.z, self.size_z),
                (self.t, self.size_t), (self.c, self.size_c))

    @classmethod
    def _from_axes(cls, axes) -> Rect5D:
        (x, sx), (y, sy), (z, sz), (t, st), (c, sc) = axes
        return cls(x, y, z, t, c, sx, sy, sz, st, sc)

    def union(self, other: Rect5D) -> Rect5D:
        return Rect5D._from_axes([_axis_union(p1, s1, p2, s2)
                                  for (p1, s1), (p2, s2) in zip(self._axes(), other._axes())])

    def intersection(self, other: Rect5D) -> Rect5D:
        return Rect5D._from_axes([_axis_intersection(p1, s1, p2, s2)
                                  for (p1, s1), (p2, s2) in zip(self._axes(), other._axes())])

    def int_position(self) -> tuple[int, int, int]:
        """(z, t, c) as integers, ALL on infinite axes."""
        return tuple(ALL if math.isinf(s) else int(math.floor(p))
                     for p, s in ((self.z, self.size_z), (self.t, self.size_t), (self.c, self.size_c)))


def effective_dimension(bounds: Rect5D) -> int:
    """Number of leading axes needed to describe `bounds` (2 to 5).

    C, then T, then Z are dropped while each is infinite or at most one deep.
    """
    dim = 5
    if bounds.is_infinite_c or bounds.size_c <= 1:
        dim -= 1
        if bounds.is_infinite_t or bounds.size_t <= 1:
            dim -= 1
            if bounds.is_infinite_z or bounds.size_z <= 1:
                dim -= 1
    return dim


def _axis(pos: int) -> tuple[float, float]:
    return (-INF, INF) if pos == ALL else (pos, 1)


def _matches(own: int, wanted: int) -> bool:
    return own == ALL or wanted == ALL or own == wanted


@dataclass
class AreaRoi2D:
    """Planar region: one mask attached at (z, t, c); ALL on an axis means every position."""

    mask: RasterMask = field(default_factory=RasterMask)
    z: int = ALL
    t: int = ALL
    c: int = ALL
    name: str = ""
    color: tuple[int, int, int] = (255, 255, 0)

    dimension = 2

    @classmethod
    def from_points(cls, points, **kw) -> AreaRoi2D:
        return cls(RasterMask.from_points(points), **kw)

    def bounds5d(self) -> Rect5D:
        b = self.mask.bounds
        (z, sz), (t, st), (c, sc) = _axis(self.z), _axis(self.t), _axis(self.c)
        return Rect5D(b.x, b.y, z, t, c, b.width, b.height, sz, st, sc)

    def mask_2d(self, z: int, t: int, c: int) -> RasterMask:
        if _matches(self.z, z) and _matches(self.t, t) and _matches(self.c, c):
            return self.mask.copy()
        return RasterMask()

    @property
    def num_points(self) -> int:
        return self.mask.num_points

    @property
    def is_empty(self) -> bool:
        return self.mask.is_empty

    def copy(self) -> AreaRoi2D:
        return replace(self, mask=self.mask.copy())


@dataclass
class AreaRoi3D:
    """Volumetric region stored as one RasterMask per z slice."""

    slices: dict[int, RasterMask] = field(default_factory=dict)
    t: int = ALL
    c: int = ALL
    name: str = ""
    color: tuple[int, int, int] = (255, 255, 0)

    dimension = 3

    @classmethod
    def from_points(cls, points, **kw) -> AreaRoi3D:
        """Build from (N,3) (x, y, z) points."""
        pts = np.asarray(points, dtype=np.int64).reshape(-1, 3)
        slices = {}
        for z in np.unique(pts[:, 2]):
            slices[int(z)] = RasterMask.from_points(pts[pts[:, 2] == z, :2])
        return cls(slices, **kw)

    def _filled(self) -> dict[int, RasterMask]:
        return {z: m for z, m in self.slices.items() if not m.is_empty}

    def bounds5d(self) -> Rect5D:
        filled = self._filled()
        (t, st), (c, sc) = _axis(self.t), _axis(self.c)
        if not filled:
            return Rect5D(0, 0, 0, t, c, 0, 0, 0, st, sc)
        b = None
        for m in filled.values():
            b = m.bounds if b is None else b.union(m.bounds)
        zs = sorted(filled)
        return Rect5D(b.x, b.y, zs[0], t, c, b.width, b.height, zs[-1] - zs[0] + 1, st, sc)

    def mask_2d(self, z: int, t: int, c: int) -> RasterMask:
        if not (_matches(self.t, t) and _matches(self.c, c)):
            return RasterMask()
        m = self.slices.get(z)
        return m.copy() if m is not None else RasterMask()

    @property
    def num_points(self) -> int:
        return sum(m.num_points for m in self.slices.values())

    @property
    def is_empty(self) -> bool:
        return not self._filled()

    def copy(self) -> AreaRoi3D:
        return replace(self, slices={z: m.copy() for z, m in self.slices.items()})


def rasterize_roi(roi: AreaRoi2D | AreaRoi3D, size_t: int, size_z: int,
                  size_y: int, size_x: int) -> np.ndarray:
    """Boolean (T, Z, Y, X) volume of the pixels `roi` covers, clipped to the image."""
    out = np.zeros((size_t, size_z, size_y, size_x), dtype=bool)
    if isinstance(roi, AreaRoi2D):
        planes = [(z, roi.mask) for z in range(size_z) if _matches(roi.z, z)]
    elif isinstance(roi, AreaRoi3D):
        planes = [(z, m) for z, m in roi.slices.items() if 0 <= z < size_z]
    else:
        raise UnsupportedOperation(f"cannot rasterize ROI of type {type(roi).__name__}")
    frames = [t for t in range(size_t) if _matches(roi.t, t)]
    for z, m in planes:
        pts = m.points()
        if pts.size == 0:
            continue
        keep = (pts[:, 0] >= 0) & (pts[:, 0] < size_x) & (pts[:, 1] >= 0) & (pts[:, 1] < size_y)
        pts = pts[keep]
        for t in frames:
            out[t, z, pts[:, 1], pts[:, 0]] = True
    return out
