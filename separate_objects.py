from __future__ import annotations

import argparse
import json
import os
import time

import numpy as np
import yaml

import metrics as M
from raster_mask import RasterMask
from roi import ALL, AreaRoi2D, AreaRoi3D, Dimension5D
from watershed import RoiWatershed


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def load_roi_array(path: str) -> np.ndarray:
    """Load a .npy array shaped (Y,X), (Z,Y,X) or (T,Z,Y,X) as (T,Z,Y,X)."""
    a = np.load(path)
    if a.ndim == 2:
        a = a[None, None]
    elif a.ndim == 3:
        a = a[None]
    elif a.ndim != 4:
        raise ValueError(f"{path}: expected 2-4 dimensions, got shape {a.shape}")
    return a


def _frame_roi(plane_stack: np.ndarray, t: int, size_t: int) -> AreaRoi2D | AreaRoi3D:
    tt = t if size_t > 1 else ALL
    if plane_stack.shape[0] == 1:
        return AreaRoi2D(RasterMask.from_array(plane_stack[0]), z=ALL, t=tt)
    slices = {z: RasterMask.from_array(plane_stack[z]) for z in range(plane_stack.shape[0])}
    return AreaRoi3D(slices, t=tt)


def domain_rois(domain: np.ndarray) -> list[AreaRoi2D | AreaRoi3D]:
    domain = domain.astype(bool, copy=False)
    return [_frame_roi(domain[t], t, domain.shape[0]) for t in range(domain.shape[0])]


def seed_rois(seeds: np.ndarray) -> list[AreaRoi2D | AreaRoi3D]:
    """One seed ROI per distinct positive value, in ascending value order."""
    seeds = seeds.astype(np.int64, copy=False)
    size_t = seeds.shape[0]
    out = []
    for v in np.unique(seeds[seeds > 0]):
        for t in range(size_t):
            sel = seeds[t] == v
            if sel.any():
                out.append(_frame_roi(sel, t, size_t))
    return out


def run(cfg: dict, new_basins: bool | None = None, plot: bool | None = None) -> dict:
    """Separate the configured domain and write labels.npz + labels.meta.json.

    Returns the metadata dictionary that was written.
    """
    if "domain_path" not in cfg:
        raise ValueError("domain_path must be provided")
    pixel_size = [float(v) for v in cfg.get("pixel_size", [1.0, 1.0, 1.0])]
    if len(pixel_size) != 3 or min(pixel_size) <= 0:
        raise ValueError("pixel_size must be three positive numbers [px, py, pz]")
    new_basins_allowed = bool(cfg.get("new_basins_allowed", False)) if new_basins is None else new_basins
    do_plot = bool(cfg.get("plot", False)) if plot is None else plot
    color_seed = int(cfg.get("color_seed", 0))
    out_dir = cfg.get("output_dir", "./watershed_out")

    t0 = time.time()
    domain = load_roi_array(str(cfg["domain_path"])).astype(bool)
    seeds = None
    if cfg.get("seeds_path"):
        seeds = load_roi_array(str(cfg["seeds_path"]))
        if seeds.shape != domain.shape:
            raise ValueError(f"seeds shape {seeds.shape} does not match domain shape {domain.shape}")
    size_t, size_z, size_y, size_x = domain.shape
    if not domain.any():
        print("WARNING: domain is empty; the label volume will be all zeros.")
    if seeds is not None and new_basins_allowed:
        print("WARNING: seeds given with new_basins_allowed; unseeded basins get fresh labels.")
    t_load = time.time()

    ws = RoiWatershed(Dimension5D(size_x, size_y, size_z, size_t),
                      pixel_size=pixel_size,
                      domain_rois=domain_rois(domain),
                      seed_rois=seed_rois(seeds) if seeds is not None else (),
                      new_basins_allowed=new_basins_allowed)
    ws.run()
    t_flood = time.time()

    labels = ws.label_volume
    rois = ws.label_rois(np.random.default_rng(color_seed))
    px, py, pz = pixel_size

    region_label, region_frame, counts, mean_d, std_d, bbox = [], [], [], [], [], []
    for t in range(size_t):
        lab = labels[t]
        K = int(lab.max())
        if K == 0:
            continue
        cnt = M.num_cells(lab, K=K)
        mu, sd = M.per_label_stats(lab, ws.distance_map[t], K=K)
        boxes = M.label_bboxes(lab, K=K)
        present = np.flatnonzero(cnt > 0)
        region_label.append(present + 1)
        region_frame.append(np.full(present.size, t, dtype=np.int32))
        counts.append(cnt[present])
        mean_d.append(mu[present])
        std_d.append(sd[present])
        bbox.append(boxes[present])

    def _cat(parts, dtype, width=None):
        if parts:
            return np.concatenate(parts).astype(dtype, copy=False)
        return np.zeros((0,) if width is None else (0, width), dtype=dtype)

    num_points = _cat(counts, np.int64)
    if size_z == 1:
        size = num_points * px * py
        perim = np.array([M.perimeter(r.mask, px, py) for r in rois], dtype=np.float64)
    else:
        size = num_points * px * py * pz
        perim = np.full(num_points.shape, np.nan)
    t_reduce = time.time()

    os.makedirs(out_dir, exist_ok=True)
    out = {
        "labels": labels,
        "region_label": _cat(region_label, np.int32),
        "region_frame": _cat(region_frame, np.int32),
        "num_points": num_points,
        "size": size,
        "perimeter": perim,
        "mean_distance": _cat(mean_d, np.float64),
        "std_distance": _cat(std_d, np.float64),
        "bbox_xyz": _cat(bbox, np.int32, 6),
        "color": np.array([r.color for r in rois], dtype=np.uint8).reshape(-1, 3),
        "pixel_size": np.array(pixel_size, dtype=np.float64),
        "num_seeds": np.int32(len(ws.seeds)),
    }
    npz_path = os.path.join(out_dir, "labels.npz")
    np.savez(npz_path, **out)

    K = int(num_points.size)
    meta = {
        "K": K,
        "shape_tzyx": [int(size_t), int(size_z), int(size_y), int(size_x)],
        "num_seeds": len(ws.seeds),
        "new_basins_allowed": new_basins_allowed,
        "times": {
            "load": float(t_load - t0),
            "watershed": float(t_flood - t_load),
            "reduce": float(t_reduce - t_flood),
        },
        "config": cfg,
        "output_npz": os.path.basename(npz_path),
    }
    with open(os.path.join(out_dir, "labels.meta.json"), "w") as f:
        json.dump(meta, f, indent=2, default=str)

    if do_plot:
        from plot_regions import save_label_preview
        save_label_preview(npz_path, out_dir)

    print(f"times: load={t_load-t0:.2f}s watershed={t_flood-t_load:.2f}s "
          f"reduce={t_reduce-t_flood:.2f}s K={K}")
    return meta


def main():
    ap = argparse.ArgumentParser(description="Separate touching objects with a distance-map watershed.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--new-basins", action="store_true",
                    help="Let unseeded basins start new labels instead of detecting seeds.")
    ap.add_argument("--plot", action="store_true", help="Write a PNG preview of the labels.")
    args = ap.parse_args()

    cfg = parse_config(args.config)
    run(cfg, new_basins=True if args.new_basins else None, plot=True if args.plot else None)


if __name__ == "__main__":
    main()
