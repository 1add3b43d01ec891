from __future__ import annotations

from collections import deque
from typing import Iterable, Sequence, Union

import numpy as np

from cancellation import CancelToken, OperationCancelled, PointCounter, check
from distance_map import compute_distance_map, image_shape, local_maximum_seeds, smooth_distance_map
from roi import ALL, AreaRoi2D, AreaRoi3D, Dimension5D, rasterize_roi

Roi = Union[AreaRoi2D, AreaRoi3D]


class WatershedError(RuntimeError):
    """Distance map or seed detection failed for a reason other than cancellation."""


class LabeledPixel:
    """Domain pixel of one frame: position, height, label and flooding state.

    label 0 means unlabeled. `neighbors` holds the face neighbours that are
    also domain pixels, ordered z-1, y-1, x-1, x+1, y+1, z+1.
    """

    __slots__ = ("x", "y", "z", "height", "label", "level", "to_be_labeled", "neighbors")

    def __init__(self, x: int, y: int, z: int, height: float):
        self.x = x
        self.y = y
        self.z = z
        self.height = height
        self.label = 0
        self.level = 0
        self.to_be_labeled = False
        self.neighbors: list[LabeledPixel] = []

    @property
    def is_labeled(self) -> bool:
        return self.label > 0

    @property
    def is_no_label(self) -> bool:
        return self.label == 0 and not self.to_be_labeled

    def set_label(self, label: int) -> None:
        self.label = label
        self.to_be_labeled = False

    def mark_to_be_labeled(self) -> None:
        self.to_be_labeled = True

    def __repr__(self) -> str:
        return f"LabeledPixel(({self.x}, {self.y}, {self.z}), h={self.height:g}, label={self.label})"


class FloodingStructure:
    """All domain pixels of one frame, tallest first, plus their distinct heights.

    Pixels with height 0 are outside the domain and left out. Pixels that
    already carry a label in `labels` are seeds and are lifted to one above
    the maximum height so they are flooded first.
    """

    def __init__(self, distance: np.ndarray, labels: np.ndarray, cancel: CancelToken | None = None):
        counter = PointCounter(cancel, "flooding structure")
        index = np.full(distance.shape, -1, dtype=np.int64)
        zs, ys, xs = np.nonzero(distance != 0)
        index[zs, ys, xs] = np.arange(zs.size)

        pixels: list[LabeledPixel] = []
        seeds: list[LabeledPixel] = []
        heights: set[float] = set()
        for z, y, x in zip(zs.tolist(), ys.tolist(), xs.tolist()):
            h = float(distance[z, y, x])
            p = LabeledPixel(x, y, z, h)
            pixels.append(p)
            heights.add(h)
            lbl = int(labels[z, y, x])
            if lbl > 0:
                p.set_label(lbl)
                seeds.append(p)
            for nz, ny, nx in ((z - 1, y, x), (z, y - 1, x), (z, y, x - 1)):
                if nz < 0 or ny < 0 or nx < 0:
                    continue
                j = index[nz, ny, nx]
                if j >= 0:
                    nb = pixels[j]
                    p.neighbors.append(nb)
                    nb.neighbors.append(p)
            counter.tick()

        if seeds:
            top = max(heights) + 1.0
            heights.add(top)
            for p in seeds:
                p.height = top

        # stable: equal heights keep raster order
        self.pixels = sorted(pixels, key=lambda p: p.height, reverse=True)
        self.heights = sorted(heights)


_FLAG = LabeledPixel(0, 0, 0, -1.0)


class RoiWatershed:
    """Split touching objects into labeled regions by flooding their distance map.

    Usage::

        ws = RoiWatershed(Dimension5D(64, 64), domain_rois=[roi], seed_rois=[s1, s2])
        ws.run()
        regions = ws.label_rois(np.random.default_rng(0))

    Heights are flooded tallest first. Without seeds and with
    new_basins_allowed False, seeds are taken from the local maxima of the
    smoothed distance map.
    """

    def __init__(self, image_size: Dimension5D,
                 pixel_size: Sequence[float] = (1.0, 1.0, 1.0),
                 domain_rois: Iterable[Roi] = (),
                 seed_rois: Iterable[Roi] = (),
                 new_basins_allowed: bool = False):
        self.image_size = image_size
        self.pixel_size = tuple(float(v) for v in pixel_size)
        self.domain_rois: list[Roi] = list(domain_rois)
        self.seed_rois: list[Roi] = list(seed_rois)
        self.new_basins_allowed = bool(new_basins_allowed)
        self.distance_map: np.ndarray | None = None
        self.label_volume: np.ndarray | None = None
        self._cancel: CancelToken | None = None
        self._counter = PointCounter(None)

    def add_object(self, roi: Roi) -> RoiWatershed:
        self.domain_rois.append(roi)
        return self

    def add_seed(self, roi: Roi) -> RoiWatershed:
        self.seed_rois.append(roi)
        return self

    @property
    def seeds(self) -> list[Roi]:
        return self.seed_rois

    def run(self, cancel: CancelToken | None = None) -> RoiWatershed:
        self._cancel = cancel
        self.distance_map = self._domain_distance_map()
        self._prepare_seeds()
        shape = image_shape(self.image_size)
        for frame in range(shape[0]):
            structure = FloodingStructure(self.distance_map[frame], self.label_volume[frame], cancel)
            self._flood_frame(structure, frame)
            out = np.zeros(shape[1:], dtype=np.int32)
            for p in structure.pixels:
                out[p.z, p.y, p.x] = p.label
            self.label_volume[frame] = out
        return self

    def _domain_distance_map(self) -> np.ndarray:
        try:
            return compute_distance_map(self.domain_rois, self.image_size, self.pixel_size,
                                        constrain_to_borders=True, cancel=self._cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            raise WatershedError(f"Error computing domain distance map: {e}") from e

    def _prepare_seeds(self) -> None:
        if not self.seed_rois and not self.new_basins_allowed:
            try:
                smoothed = smooth_distance_map(self.distance_map, self._cancel)
                self.seed_rois.extend(local_maximum_seeds(smoothed, self.distance_map > 0,
                                                          cancel=self._cancel))
            except OperationCancelled:
                raise
            except Exception as e:
                raise WatershedError(f"Error computing domain local maxima: {e}") from e

        shape = image_shape(self.image_size)
        self.label_volume = np.zeros(shape, dtype=np.int32)
        for label, roi in enumerate(self.seed_rois, start=1):
            self.label_volume[rasterize_roi(roi, *shape)] = label
            check(self._cancel, "seed labeling")

    def _flood_frame(self, structure: FloodingStructure, frame: int) -> None:
        self._counter = PointCounter(self._cancel, "watershed flooding")
        next_label = len(self.seed_rois)
        pixels = structure.pixels
        find_start = 0
        finish_start = 0
        pending: deque[LabeledPixel] = deque()
        for height in reversed(structure.heights):
            candidates, find_start = self._find_pixels_at_height(pixels, height, find_start)
            pending.extend(candidates)
            self._extend_basins(pending)
            finish_start, next_label = self._finish_current_height(
                frame, pixels, height, finish_start, next_label)

    def _find_pixels_at_height(self, pixels: list[LabeledPixel], height: float,
                               start: int) -> tuple[list[LabeledPixel], int]:
        candidates = []
        for i in range(start, len(pixels)):
            p = pixels[i]
            if p.height < height:
                return candidates, i
            if not p.is_labeled:
                p.mark_to_be_labeled()
            for nb in p.neighbors:
                if nb.is_labeled:
                    p.level = 1
                    candidates.append(p)
                    break
            self._counter.tick()
        return candidates, start

    def _extend_basins(self, pending: deque[LabeledPixel]) -> None:
        pending.append(_FLAG)
        level = 1
        while True:
            current = pending.popleft()
            if current is _FLAG:
                if not pending:
                    break
                pending.append(_FLAG)
                level += 1
                current = pending.popleft()

            should_extend = False
            is_border = False
            first_label = 0
            best = None
            best_distance = 0.0
            for nb in current.neighbors:
                if nb.level <= level and nb.is_labeled:
                    if current.to_be_labeled:
                        should_extend = True
                    if first_label == 0:
                        first_label = nb.label
                    elif first_label != nb.label:
                        is_border = True
                    distance = nb.height - current.height
                    if best is None or distance > best_distance:
                        best = nb
                        best_distance = distance
                elif nb.to_be_labeled and nb.level == 0:
                    nb.level = level + 1
                    pending.append(nb)

            if should_extend or is_border:
                current.set_label(best.label)
                if not self.new_basins_allowed:
                    self._flood_basin(current, best.label)
            self._counter.tick()

    def _finish_current_height(self, frame: int, pixels: list[LabeledPixel], height: float,
                               start: int, next_label: int) -> tuple[int, int]:
        labels = self.label_volume[frame]
        for i in range(start, len(pixels)):
            p = pixels[i]
            if p.height < height:
                return i, next_label
            p.level = 0
            if p.to_be_labeled:
                if self.new_basins_allowed:
                    next_label += 1
                    self._flood_basin(p, next_label)
                else:
                    existing = int(labels[p.z, p.y, p.x])
                    if existing > 0:
                        self._flood_basin(p, existing)
        return start, next_label

    def _flood_basin(self, start: LabeledPixel, label: int) -> None:
        start.set_label(label)
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for nb in current.neighbors:
                if nb.to_be_labeled or (nb.is_no_label and nb.height >= current.height):
                    nb.set_label(label)
                    nb.level = start.level
                    queue.append(nb)
                    self._counter.tick()

    def label_rois(self, rng: np.random.Generator | int | None = None) -> list[Roi]:
        """One area ROI per label and frame, ordered by frame then label.

        Colours are drawn from `rng` (a Generator or a seed); blue balances
        red and green as (765 - r - g) % 256.
        """
        if self.label_volume is None:
            raise RuntimeError("run() has not been called")
        if not isinstance(rng, np.random.Generator):
            rng = np.random.default_rng(rng)
        size_t, size_z = self.label_volume.shape[:2]
        rois: list[Roi] = []
        for frame in range(size_t):
            lab = self.label_volume[frame]
            zs, ys, xs = np.nonzero(lab)
            if zs.size == 0:
                continue
            ids = lab[zs, ys, xs]
            order = np.argsort(ids, kind="stable")
            zs, ys, xs, ids = zs[order], ys[order], xs[order], ids[order]
            uniq, starts = np.unique(ids, return_index=True)
            ends = np.append(starts[1:], ids.size)
            t = frame if size_t > 1 else ALL
            for label, s, e in zip(uniq.tolist(), starts, ends):
                r = int(rng.integers(0, 256))
                g = int(rng.integers(0, 256))
                color = (r, g, (765 - r - g) % 256)
                if size_z == 1:
                    roi = AreaRoi2D.from_points(np.stack([xs[s:e], ys[s:e]], axis=1),
                                                t=t, name=str(label), color=color)
                else:
                    roi = AreaRoi3D.from_points(np.stack([xs[s:e], ys[s:e], zs[s:e]], axis=1),
                                                t=t, name=str(label), color=color)
                rois.append(roi)
        return rois
