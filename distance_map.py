from __future__ import annotations

import math
import warnings
from typing import Sequence

import numpy as np
from scipy import ndimage

from cancellation import CancelToken, check
from roi import AreaRoi2D, AreaRoi3D, Dimension5D, rasterize_roi

# sigma sequence tried when smoothing for seed detection, (x, y, z)
SMOOTHING_SIGMAS = ((2.0, 2.0, 2.0), (2.0, 2.0, 1.0))
LOCAL_MAX_RADIUS = 3


class SmoothingError(ValueError):
    """Gaussian kernel does not fit inside one of the image axes."""


def image_shape(image_size: Dimension5D) -> tuple[int, int, int, int]:
    return (int(image_size.size_t), int(image_size.size_z),
            int(image_size.size_y), int(image_size.size_x))


def domain_volume(rois: Sequence[AreaRoi2D | AreaRoi3D], image_size: Dimension5D) -> np.ndarray:
    """OR of all ROIs as a boolean (T, Z, Y, X) volume."""
    shape = image_shape(image_size)
    out = np.zeros(shape, dtype=bool)
    for roi in rois:
        out |= rasterize_roi(roi, *shape)
    return out


def _edt(vol: np.ndarray, sampling: tuple[float, ...], constrain_to_borders: bool) -> np.ndarray:
    if not vol.any():
        return np.zeros(vol.shape, dtype=np.float64)
    if constrain_to_borders:
        padded = np.pad(vol, 1, mode="constant", constant_values=False)
        d = ndimage.distance_transform_edt(padded, sampling=sampling)
        return d[(slice(1, -1),) * vol.ndim]
    return ndimage.distance_transform_edt(vol, sampling=sampling)


def compute_distance_map(rois: Sequence[AreaRoi2D | AreaRoi3D],
                         image_size: Dimension5D,
                         pixel_size: Sequence[float] = (1.0, 1.0, 1.0),
                         constrain_to_borders: bool = True,
                         cancel: CancelToken | None = None) -> np.ndarray:
    """Euclidean distance from each domain pixel to the nearest background pixel.

    Parameters
    ----------
    rois : list of area ROIs
        Merged into a single domain before the transform.
    image_size : Dimension5D
        Image extent; ROIs are clipped to it.
    pixel_size : (px, py, pz)
        Physical pixel size used as the transform sampling.
    constrain_to_borders : bool
        When True the image border counts as background, so distances never
        run off the image.

    Returns
    -------
    float64 array shaped (T, Z, Y, X); 0 outside the domain.
    """
    px, py, pz = (float(v) for v in pixel_size)
    domain = domain_volume(rois, image_size)
    out = np.zeros(domain.shape, dtype=np.float64)
    size_z = domain.shape[1]
    for t in range(domain.shape[0]):
        if size_z == 1:
            out[t, 0] = _edt(domain[t, 0], (py, px), constrain_to_borders)
        else:
            out[t] = _edt(domain[t], (pz, py, px), constrain_to_borders)
        check(cancel, "distance map")
    return out


def gaussian_smooth(volume: np.ndarray, sigma: Sequence[float]) -> np.ndarray:
    """Mirror-boundary Gaussian smoothing of a (Z, Y, X) volume.

    sigma is given as (x, y, z). Kernels are truncated at ceil(3 * sigma);
    axes of length 1 are left alone, and any other axis too short to mirror
    the kernel raises SmoothingError.
    """
    sx, sy, sz = (float(s) for s in sigma)
    sig = []
    for n, s, name in zip(volume.shape, (sz, sy, sx), "ZYX"):
        if n <= 1 or s <= 0:
            sig.append(0.0)
            continue
        radius = int(math.ceil(3.0 * s))
        if radius > n - 1:
            raise SmoothingError(f"{name} sigma {s:g} too large for axis of length {n}")
        sig.append(s)
    return ndimage.gaussian_filter(volume.astype(np.float64, copy=False), sigma=sig,
                                   mode="mirror", truncate=3.0)


def smooth_distance_map(distance: np.ndarray, cancel: CancelToken | None = None) -> np.ndarray:
    """Smooth a (T, Z, Y, X) map, relaxing sigma along Z, then giving up.

    Each fallback is reported with a RuntimeWarning; when no sigma fits the
    unsmoothed map is returned.
    """
    for i, sigma in enumerate(SMOOTHING_SIGMAS):
        try:
            out = np.empty(distance.shape, dtype=np.float64)
            for t in range(distance.shape[0]):
                out[t] = gaussian_smooth(distance[t], sigma)
                check(cancel, "distance map smoothing")
            return out
        except SmoothingError as e:
            if i + 1 < len(SMOOTHING_SIGMAS):
                warnings.warn(f"{e}; retrying with sigma {SMOOTHING_SIGMAS[i + 1]}", RuntimeWarning)
            else:
                warnings.warn(f"{e}; using the unsmoothed distance map", RuntimeWarning)
    return distance


def local_maximum_seeds(height: np.ndarray, domain: np.ndarray,
                        radius: int = LOCAL_MAX_RADIUS,
                        cancel: CancelToken | None = None) -> list[AreaRoi2D | AreaRoi3D]:
    """One seed ROI per connected plateau of local maxima inside the domain.

    A pixel is a local maximum when no pixel within `radius` (a cubic window,
    per axis of length > 1) is higher and its height is positive. Seeds come
    out frame by frame, in raster order of their first pixel.
    """
    seeds: list[AreaRoi2D | AreaRoi3D] = []
    size_t, size_z = height.shape[:2]
    for t in range(size_t):
        h = height[t]
        size = tuple(2 * radius + 1 if n > 1 else 1 for n in h.shape)
        peak = (ndimage.maximum_filter(h, size=size, mode="nearest") == h) & (h > 0) & domain[t]
        structure = ndimage.generate_binary_structure(3, 3)
        lab, n = ndimage.label(peak, structure=structure)
        if n == 0:
            check(cancel, "local maxima")
            continue
        zs, ys, xs = np.nonzero(lab)
        ids = lab[zs, ys, xs]
        order = np.argsort(ids, kind="stable")
        zs, ys, xs, ids = zs[order], ys[order], xs[order], ids[order]
        bounds = np.searchsorted(ids, np.arange(1, n + 2))
        for k in range(n):
            sl = slice(bounds[k], bounds[k + 1])
            if size_z == 1:
                roi = AreaRoi2D.from_points(np.stack([xs[sl], ys[sl]], axis=1), z=0, t=t)
            else:
                roi = AreaRoi3D.from_points(np.stack([xs[sl], ys[sl], zs[sl]], axis=1), t=t)
            seeds.append(roi)
        check(cancel, "local maxima")
    return seeds
