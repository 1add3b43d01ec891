from __future__ import annotations

import os

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import mask_algebra as MA
from cancellation import CancelToken, OperationCancelled
from raster_mask import RasterMask, Rect


def _square(x: int, y: int, n: int = 3) -> RasterMask:
    return RasterMask.from_array(np.ones((n, n), dtype=bool), x, y)


def _random_masks(seed: int = 7, n: int = 12):
    rng = np.random.default_rng(seed)
    out = []
    for _ in range(n):
        h, w = rng.integers(1, 12, size=2)
        x, y = rng.integers(-6, 6, size=2)
        out.append(RasterMask.from_array(rng.random((h, w)) < 0.45, int(x), int(y)))
    return out


def _cancelled() -> CancelToken:
    tok = CancelToken()
    tok.cancel()
    return tok


def test_overlapping_squares_union_and_intersection():
    a, b = _square(0, 0), _square(2, 2)
    u = MA.union(a, b)
    assert u.bounds == Rect(0, 0, 5, 5)
    assert u.num_points == 17

    i = MA.intersection(a, b)
    assert i.num_points == 1
    assert i.points().tolist() == [[2, 2]]


def test_null_and_empty_operands():
    a = _square(1, 1)
    empty = RasterMask()
    for e in (None, empty):
        assert MA.union(a, e).same_points(a)
        assert MA.union(e, a).same_points(a)
        assert MA.exclusive_union(a, e).same_points(a)
        assert MA.intersection(a, e).is_empty
        assert MA.intersection(e, a).is_empty
        assert MA.subtraction(a, e).same_points(a)
        assert MA.subtraction(e, a).is_empty
    assert MA.union(None, None).is_empty

    # pass-through results are copies
    u = MA.union(a, None)
    u.cells[:] = False
    assert a.num_points == 9


def test_exclusive_union_with_blank_operand_has_minimal_bounds():
    a = RasterMask(Rect(0, 0, 6, 6))
    a.cells[7] = True
    for x in (MA.exclusive_union(a, None), MA.exclusive_union(None, a),
              MA.exclusive_union(a, RasterMask()), MA.exclusive_union(RasterMask(), a)):
        assert x.bounds == Rect(1, 1, 1, 1)
        assert x.points().tolist() == [[1, 1]]
    assert a.bounds == Rect(0, 0, 6, 6)


def test_commutativity():
    masks = _random_masks()
    for a in masks:
        for b in masks:
            assert MA.union(a, b).same_points(MA.union(b, a))
            assert MA.intersection(a, b).same_points(MA.intersection(b, a))


def test_exclusive_union_is_union_minus_intersection():
    masks = _random_masks(seed=3)
    for a in masks:
        for b in masks:
            lhs = MA.exclusive_union(a, b)
            rhs = MA.subtraction(MA.union(a, b), MA.intersection(a, b))
            assert lhs.same_points(rhs)


def test_exclusive_union_and_subtraction_have_minimal_bounds():
    a, b = _square(0, 0), _square(0, 0)
    b.cells[:3] = False
    x = MA.exclusive_union(a, b)
    assert x.bounds == Rect(0, 0, 3, 1)
    s = MA.subtraction(a, b)
    assert s.bounds == Rect(0, 0, 3, 1)
    assert MA.subtraction(a, a).is_empty


def test_union_keeps_union_bounds():
    a = RasterMask(Rect(0, 0, 4, 4))
    a.cells[0] = True
    b = RasterMask.from_points([(6, 6)])
    u = MA.union(a, b)
    assert u.bounds == Rect(0, 0, 7, 7)
    assert u.num_points == 2


def test_list_reductions():
    a, b, c = _square(0, 0), _square(2, 2), _square(1, 1)
    assert MA.union_all([]).is_empty
    assert MA.union_all([a, b, c]).num_points == MA.union(MA.union(a, b), c).num_points
    assert MA.intersection_all([a, b, c]).points().tolist() == [[2, 2]]
    x = MA.exclusive_union_all([a, b, c])
    assert x.same_points(MA.exclusive_union(MA.exclusive_union(a, b), c))
    assert MA.union_all([None, a]).same_points(a)


def test_contains():
    a = _square(0, 0, 4)
    assert MA.contains(a, a)
    assert MA.contains(a, _square(1, 1, 2))
    assert not MA.contains(a, _square(3, 3, 2))

    # b reaches outside a's bounds, even though only with unset cells
    b = RasterMask(Rect(0, 0, 5, 1), [True, False, False, False, False])
    assert not MA.contains(a, b)

    holed = a.copy()
    holed.cells[5] = False
    assert not MA.contains(holed, _square(1, 1, 2))


def test_intersects():
    a, b = _square(0, 0), _square(2, 2)
    assert MA.intersects(a, b)
    assert not MA.intersects(a, _square(3, 3))
    assert not MA.intersects(a, RasterMask())
    for m in _random_masks(seed=11):
        if not m.is_empty:
            assert MA.contains(m, m)
            assert MA.intersects(m, m)


def test_upscale_then_downscale_restores_mask():
    for m in _random_masks(seed=5):
        up = MA.upscale(m)
        assert up.bounds == m.bounds.scaled(2)
        assert up.num_points == 4 * m.num_points
        for threshold in (1, 2, 3, 4):
            back = MA.downscale(up, threshold)
            assert back.bounds == m.bounds
            assert np.array_equal(back.cells, m.cells)


def test_downscale_values_and_threshold():
    g = np.array([[1, 1, 0, 1, 1],
                  [1, 0, 0, 0, 1],
                  [0, 0, 1, 1, 0],
                  [0, 0, 1, 1, 0],
                  [1, 1, 1, 1, 1]], dtype=bool)
    m = RasterMask.from_array(g, x=3, y=5)
    vals = MA.downscale_values(m)
    # the trailing odd row and column are ignored
    assert vals.tolist() == [[3, 1], [0, 4]]

    assert MA.downscale(m, 1).grid().tolist() == [[True, True], [False, True]]
    assert MA.downscale(m).grid().tolist() == [[True, False], [False, True]]
    assert MA.downscale(m, 4).grid().tolist() == [[False, False], [False, True]]
    # out-of-range thresholds clamp to 1..4
    assert np.array_equal(MA.downscale(m, 0).cells, MA.downscale(m, 1).cells)
    assert np.array_equal(MA.downscale(m, 9).cells, MA.downscale(m, 4).cells)
    assert MA.downscale(m).bounds == Rect(1, 2, 2, 2)


@pytest.mark.parametrize("op", [MA.union, MA.intersection, MA.exclusive_union, MA.subtraction])
def test_cancelled_operations_raise(op):
    a, b = _square(0, 0, 20), _square(5, 5, 20)
    with pytest.raises(OperationCancelled):
        op(a, b, _cancelled())


def test_cancelled_scaling_raises():
    m = _square(0, 0, 8)
    with pytest.raises(OperationCancelled):
        MA.upscale(m, _cancelled())
    with pytest.raises(OperationCancelled):
        MA.downscale(m, 2, _cancelled())
