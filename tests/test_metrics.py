from __future__ import annotations

import math
import os

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import metrics as M
from raster_mask import RasterMask


def _square(x: int, y: int, n: int) -> RasterMask:
    return RasterMask.from_array(np.ones((n, n), dtype=bool), x, y)


def test_area_and_points():
    m = _square(0, 0, 3)
    assert M.num_points(m) == 9
    assert M.area(m) == 9
    assert M.area(m, 0.5, 2.0) == pytest.approx(9.0)


def test_perimeter_scales_with_pixel_size():
    px = RasterMask.from_points([(3, 3)])
    assert M.perimeter(px) == pytest.approx(math.pi)
    assert M.perimeter(px, 4.0, 1.0) == pytest.approx(2 * math.pi)


def test_crack_perimeter():
    m = _square(0, 0, 3)
    assert M.crack_perimeter(m) == pytest.approx(12.0)
    assert M.crack_perimeter(m, 2.0, 1.0) == pytest.approx(18.0)
    assert M.crack_perimeter(RasterMask()) == 0.0


def test_mass_center():
    m = _square(2, 4, 3)
    assert M.mass_center(m) == pytest.approx((3.0, 5.0))
    img = np.zeros((10, 10))
    img[4, 4] = 1.0
    assert M.mass_center(m, img) == pytest.approx((4.0, 4.0))
    cx, cy = M.mass_center(RasterMask())
    assert math.isnan(cx) and math.isnan(cy)


def test_intensity_stats_ignore_pixels_outside_image():
    img = np.arange(16, dtype=np.float64).reshape(4, 4)
    m = _square(2, 2, 3)
    vals = M.intensity_values(img, m)
    assert vals.tolist() == [10.0, 11.0, 14.0, 15.0]
    st = M.intensity_stats(img, m)
    assert st["count"] == 4
    assert st["mean"] == pytest.approx(12.5)
    assert st["min"] == 10.0 and st["max"] == 15.0
    assert M.intensity_stats(img, RasterMask())["count"] == 0


def test_label_reductions():
    labels = np.array([[1, 1, 2],
                       [0, 0, 2]])
    assert M.num_cells(labels).tolist() == [2, 2]
    X = np.array([[1.0, 3.0, 5.0],
                  [9.0, 9.0, 5.0]])
    mu, sd = M.per_label_stats(labels, X)
    assert mu == pytest.approx([2.0, 5.0])
    assert sd == pytest.approx([1.0, 0.0])

    mu, sd = M.per_label_stats(np.zeros((2, 2), dtype=np.int64), np.ones((2, 2)))
    assert mu.size == 0 and sd.size == 0


def test_label_bboxes():
    labels = np.zeros((2, 3, 4), dtype=np.int32)
    labels[0, 1, 2] = 1
    labels[1, 0:2, 0] = 3
    boxes = M.label_bboxes(labels)
    assert boxes.shape == (3, 6)
    assert boxes[0].tolist() == [2, 3, 1, 2, 0, 1]
    assert boxes[1].tolist() == [0, 0, 0, 0, 0, 0]
    assert boxes[2].tolist() == [0, 1, 0, 2, 1, 2]
