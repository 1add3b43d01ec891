from __future__ import annotations

import os

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cancellation import CancelToken, OperationCancelled
from raster_mask import RasterMask
from roi import ALL, AreaRoi2D, AreaRoi3D, Dimension5D, UnsupportedOperation
from watershed import FloodingStructure, RoiWatershed, WatershedError


def _disks(shape, centers, r):
    yy, xx = np.mgrid[0:shape[0], 0:shape[1]]
    out = np.zeros(shape, dtype=bool)
    for cx, cy in centers:
        out |= (xx - cx) ** 2 + (yy - cy) ** 2 <= r * r
    return out


def _seed(x: int, y: int, **kw) -> AreaRoi2D:
    return AreaRoi2D.from_points([(x, y)], **kw)


def _touching_disks():
    domain = _disks((24, 40), [(12, 12), (26, 12)], 8)
    ws = RoiWatershed(Dimension5D(40, 24),
                      domain_rois=[AreaRoi2D(RasterMask.from_array(domain))],
                      seed_rois=[_seed(12, 12), _seed(26, 12)])
    return domain, ws


def test_two_touching_disks_split_in_two():
    domain, ws = _touching_disks()
    ws.run()
    labels = ws.label_volume
    assert labels.shape == (1, 1, 24, 40)
    assert labels[0, 0, 12, 12] == 1
    assert labels[0, 0, 12, 26] == 2
    assert np.array_equal(labels[0, 0] > 0, domain)

    rois = ws.label_rois(np.random.default_rng(0))
    assert [r.name for r in rois] == ["1", "2"]
    a, b = rois[0].mask, rois[1].mask
    pts = {tuple(p) for p in np.concatenate([a.points(), b.points()]).tolist()}
    assert len(pts) == a.num_points + b.num_points
    ys, xs = np.nonzero(domain)
    assert pts == set(zip(xs.tolist(), ys.tolist()))
    # each region keeps most of its own disk
    assert a.contains_point(8, 12) and b.contains_point(30, 12)


def test_separation_is_deterministic():
    _, ws1 = _touching_disks()
    _, ws2 = _touching_disks()
    assert np.array_equal(ws1.run().label_volume, ws2.run().label_volume)
    assert np.array_equal(ws1.distance_map, ws2.distance_map)


def test_label_colors_follow_the_generator():
    _, ws = _touching_disks()
    ws.run()
    c1 = [r.color for r in ws.label_rois(5)]
    c2 = [r.color for r in ws.label_rois(np.random.default_rng(5))]
    assert c1 == c2
    for r, g, b in c1:
        assert 0 <= r < 256 and 0 <= g < 256
        assert b == (765 - r - g) % 256
    assert all(r.t == ALL and r.z == ALL for r in ws.label_rois(0))


def test_new_basins_start_from_the_peak():
    g = np.zeros((15, 15), dtype=bool)
    g[3:12, 3:12] = True
    ws = RoiWatershed(Dimension5D(15, 15), domain_rois=[AreaRoi2D(RasterMask.from_array(g))],
                      new_basins_allowed=True)
    ws.run()
    assert ws.seeds == []
    assert ws.label_volume.max() == 1
    assert np.array_equal(ws.label_volume[0, 0] > 0, g)


def test_seeds_are_detected_when_none_are_given():
    domain = _disks((24, 48), [(12, 12), (36, 12)], 7)
    ws = RoiWatershed(Dimension5D(48, 24), domain_rois=[AreaRoi2D(RasterMask.from_array(domain))])
    ws.run()
    assert len(ws.seeds) == 2
    assert ws.seeds[0].mask.contains_point(12, 12)
    assert ws.seeds[1].mask.contains_point(36, 12)
    assert set(np.unique(ws.label_volume)) == {0, 1, 2}
    assert np.array_equal(ws.label_volume[0, 0] > 0, domain)


def test_frames_are_flooded_separately():
    g = np.zeros((15, 15), dtype=bool)
    g[3:12, 3:12] = True
    m = RasterMask.from_array(g)
    ws = RoiWatershed(Dimension5D(15, 15, 1, 2),
                      domain_rois=[AreaRoi2D(m, t=0), AreaRoi2D(m.copy(), t=1)])
    ws.run()
    assert ws.label_volume.shape == (2, 1, 15, 15)
    rois = ws.label_rois(0)
    assert [r.t for r in rois] == [0, 1]
    assert [r.num_points for r in rois] == [81, 81]
    assert [r.name for r in rois] == ["1", "2"]


def test_volume_with_one_seed():
    pts = np.array([(x, y, z) for z in range(2, 9) for y in range(2, 9) for x in range(2, 9)])
    ws = RoiWatershed(Dimension5D(11, 11, 11),
                      domain_rois=[AreaRoi3D.from_points(pts)],
                      seed_rois=[AreaRoi3D.from_points([(5, 5, 5)])])
    ws.run()
    rois = ws.label_rois(0)
    assert len(rois) == 1
    assert isinstance(rois[0], AreaRoi3D)
    assert rois[0].num_points == 343


def test_flooding_structure_orders_pixels_tallest_first():
    distance = np.array([[[0.0, 1.0, 2.0],
                          [1.0, 2.0, 0.0]]])
    labels = np.zeros(distance.shape, dtype=np.int32)
    labels[0, 0, 1] = 3
    fs = FloodingStructure(distance, labels)
    assert len(fs.pixels) == 4
    # the seed is lifted above every other pixel
    assert fs.pixels[0].label == 3 and fs.pixels[0].height == 3.0
    assert [p.height for p in fs.pixels] == [3.0, 2.0, 2.0, 1.0]
    assert fs.heights == [1.0, 2.0, 3.0]
    # equal heights keep raster order
    assert [(p.x, p.y) for p in fs.pixels[1:3]] == [(2, 0), (1, 1)]
    corner = fs.pixels[1]
    assert [(n.x, n.y) for n in corner.neighbors] == [(1, 0)]


def test_domain_errors_are_wrapped():
    ws = RoiWatershed(Dimension5D(8, 8), domain_rois=[object()])
    with pytest.raises(WatershedError) as err:
        ws.run()
    assert isinstance(err.value.__cause__, UnsupportedOperation)


def test_cancellation_is_not_wrapped():
    _, ws = _touching_disks()
    tok = CancelToken()
    tok.cancel()
    with pytest.raises(OperationCancelled):
        ws.run(tok)


def test_label_rois_before_run():
    _, ws = _touching_disks()
    with pytest.raises(RuntimeError):
        ws.label_rois(0)


def test_add_object_and_seed_chain():
    g = np.zeros((10, 10), dtype=bool)
    g[2:8, 2:8] = True
    ws = (RoiWatershed(Dimension5D(10, 10))
          .add_object(AreaRoi2D(RasterMask.from_array(g)))
          .add_seed(_seed(4, 4)))
    ws.run()
    assert ws.label_volume.max() == 1
    assert int((ws.label_volume > 0).sum()) == 36
