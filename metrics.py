from __future__ import annotations

import math

import numpy as np
from scipy import ndimage

from cancellation import CancelToken
from contour import contour_length
from raster_mask import RasterMask


def _ensure_K(labels: np.ndarray, K: int | None = None) -> int:
    if K is None:
        K = int(labels.max()) if labels.size else 0
    return K


def num_points(mask: RasterMask) -> int:
    return mask.num_points


def area(mask: RasterMask, px: float = 1.0, py: float = 1.0) -> float:
    return mask.num_points * px * py


def perimeter(mask: RasterMask, px: float = 1.0, py: float = 1.0,
              cancel: CancelToken | None = None) -> float:
    """Contour-length perimeter estimate in physical units.

    The estimator works on the pixel grid, so anisotropic pixels are
    scaled by the geometric mean of px and py.
    """
    return contour_length(mask, cancel) * math.sqrt(px * py)


def crack_perimeter(mask: RasterMask, px: float = 1.0, py: float = 1.0) -> float:
    """Exact length of the pixel edges separating the mask from background.

    Horizontal edges measure px, vertical edges py; cells outside the
    bounds count as background.
    """
    if mask.is_empty:
        return 0.0
    g = np.pad(mask.grid(), 1, mode="constant", constant_values=False)
    h_edges = np.count_nonzero(g[:-1, :] != g[1:, :]) * px
    v_edges = np.count_nonzero(g[:, :-1] != g[:, 1:]) * py
    return float(h_edges + v_edges)


def mass_center(mask: RasterMask, image: np.ndarray | None = None) -> tuple[float, float]:
    """(x, y) centroid of the mask, intensity-weighted when `image` is given.

    `image` is a (Y, X) array in image coordinates; mask pixels outside it
    are ignored in the weighted case. Returns (nan, nan) for an empty mask
    or zero total weight.
    """
    pts = mask.points()
    if pts.size == 0:
        return math.nan, math.nan
    if image is None:
        w = np.ones(len(pts), dtype=np.float64)
    else:
        pts, w = _samples(image, pts)
    W = w.sum()
    if pts.size == 0 or W == 0:
        return math.nan, math.nan
    return float((pts[:, 0] * w).sum() / W), float((pts[:, 1] * w).sum() / W)


def _samples(image: np.ndarray, pts: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    ny, nx = image.shape
    keep = (pts[:, 0] >= 0) & (pts[:, 0] < nx) & (pts[:, 1] >= 0) & (pts[:, 1] < ny)
    pts = pts[keep]
    return pts, image[pts[:, 1], pts[:, 0]].astype(np.float64, copy=False)


def intensity_values(image: np.ndarray, mask: RasterMask) -> np.ndarray:
    """Pixel values of a (Y, X) image under the mask, in raster order."""
    return _samples(image, mask.points())[1]


def intensity_stats(image: np.ndarray, mask: RasterMask) -> dict[str, float]:
    v = intensity_values(image, mask)
    if v.size == 0:
        nan = math.nan
        return {"count": 0, "min": nan, "max": nan, "mean": nan, "std": nan, "sum": 0.0}
    return {
        "count": int(v.size),
        "min": float(v.min()),
        "max": float(v.max()),
        "mean": float(v.mean()),
        "std": float(v.std()),
        "sum": float(v.sum()),
    }


def num_cells(labels: np.ndarray, K: int | None = None) -> np.ndarray:
    K = _ensure_K(labels, K)
    cnt = np.bincount(labels.ravel(), minlength=K + 1).astype(np.int64)
    return cnt[1:K + 1]


def per_label_stats(labels: np.ndarray,
                    X: np.ndarray,
                    weights: np.ndarray | None = None,
                    K: int | None = None) -> tuple[np.ndarray, np.ndarray]:
    """Weighted mean/std of X per label 1..K via grouped bincounts."""
    K = _ensure_K(labels, K)
    if K == 0:
        z = np.zeros((0,), dtype=np.float64)
        return z, z

    lab = labels.ravel()
    x = X.ravel().astype(np.float64, copy=False)
    w = np.ones_like(x) if weights is None else weights.ravel().astype(np.float64, copy=False)

    W = np.bincount(lab, weights=w, minlength=K + 1)[1:K + 1]
    mu = np.bincount(lab, weights=w * x, minlength=K + 1)[1:K + 1] / (W + 1e-300)

    sel = (lab > 0) & (lab <= K)
    lab1 = lab[sel] - 1
    xc = x[sel] - mu[lab1]
    var = np.bincount(lab1, weights=w[sel] * xc * xc, minlength=K) / (W + 1e-300)
    return mu, np.sqrt(var)


def label_bboxes(labels: np.ndarray, K: int | None = None) -> np.ndarray:
    """Per-label boxes of a (Z, Y, X) label volume, [min, max) per axis.

    Returns int32 (K, 6): (x_min, x_max, y_min, y_max, z_min, z_max);
    labels that do not occur get all zeros.
    """
    K = _ensure_K(labels, K)
    out = np.zeros((K, 6), dtype=np.int32)
    if K == 0:
        return out
    for i, sl in enumerate(ndimage.find_objects(labels, max_label=K)):
        if sl is None:
            continue
        zs, ys, xs = sl
        out[i] = (xs.start, xs.stop, ys.start, ys.stop, zs.start, zs.stop)
    return out
