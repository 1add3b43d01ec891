from __future__ import annotations

import argparse
import os

import numpy as np
import matplotlib
matplotlib.use("agg")
import matplotlib.pyplot as plt


def _load(path: str) -> dict[str, np.ndarray]:
    with np.load(path) as d:
        return {k: d[k] for k in d.files}


def render_labels(plane: np.ndarray, region_label: np.ndarray, color: np.ndarray) -> np.ndarray:
    """RGB (Y, X, 3) uint8 image of one label plane; background stays black.

    region_label[i] is drawn with color[i]; labels without a row are grey.
    """
    rgb = np.zeros(plane.shape + (3,), dtype=np.uint8)
    if plane.size == 0:
        return rgb
    lut = np.zeros((int(max(plane.max(), region_label.max(initial=0))) + 1, 3), dtype=np.uint8)
    lut[1:] = 128
    lut[region_label] = color
    rgb[:] = lut[plane]
    rgb[plane == 0] = 0
    return rgb


def _hist_sizes(ax, size, xlabel):
    size = np.asarray(size, dtype=np.float64)
    size = size[np.isfinite(size) & (size > 0)]
    if size.size == 0:
        ax.text(0.5, 0.5, "No data", ha='center', va='center')
        return
    lo, hi = size.min(), size.max()
    if hi > lo:
        edges = np.logspace(np.log10(lo), np.log10(hi), min(40, size.size + 1))
        ax.set_xscale('log')
    else:
        edges = 10
    ax.hist(size, bins=edges, histtype='stepfilled', alpha=0.85)
    ax.set_xlabel(xlabel)
    ax.set_ylabel('count')


def save_label_preview(npz_path: str, outdir: str, frame: int = 0, z: int | None = None,
                       prefix: str | None = None) -> list[str]:
    """Write a label-plane PNG and a region size histogram next to the npz."""
    d = _load(npz_path)
    labels = d['labels']
    if z is None:
        z = labels.shape[1] // 2
    sel = d['region_frame'] == frame
    plane = labels[frame, z]
    rgb = render_labels(plane, d['region_label'][sel], d['color'][sel])

    os.makedirs(outdir, exist_ok=True)
    base = prefix or os.path.splitext(os.path.basename(npz_path))[0]
    written = []

    fig, ax = plt.subplots(figsize=(6, 6), dpi=150)
    ax.imshow(rgb, interpolation='nearest', origin='upper')
    ax.set_title(f'Regions (frame {frame}, z {z}, K={int(sel.sum())})')
    ax.set_axis_off()
    path = os.path.join(outdir, f"{base}_t{frame}_z{z}.png")
    fig.savefig(path, bbox_inches='tight')
    plt.close(fig)
    written.append(path)

    fig, ax = plt.subplots(figsize=(6, 4), dpi=150)
    _hist_sizes(ax, d['size'], 'region size')
    ax.set_title('Region size distribution (K={})'.format(d['size'].shape[0]))
    path = os.path.join(outdir, f"{base}_size_hist.png")
    fig.savefig(path, bbox_inches='tight')
    plt.close(fig)
    written.append(path)

    print(f"Wrote PNGs to {outdir}")
    return written


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('--input', required=True, help='labels npz written by separate_objects')
    ap.add_argument('--outdir', default=None, help='output directory for PNGs (default next to input)')
    ap.add_argument('--frame', type=int, default=0)
    ap.add_argument('--z', type=int, default=None, help='z slice to draw (default middle)')
    args = ap.parse_args()

    outdir = args.outdir or os.path.dirname(args.input) or '.'
    save_label_preview(args.input, outdir, frame=args.frame, z=args.z)


if __name__ == '__main__':
    main()
