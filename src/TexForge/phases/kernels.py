"""Separable resampling kernels for mip generation.

Interpolating filters are evaluated once per axis into a sparse weight
matrix (``scipy.sparse``), so a resize is two sparse-dense products. The
``min``/``max`` filters are order statistics over each destination pixel's
source footprint instead of weighted sums.
"""

import logging
import math
from typing import Callable, Dict, NamedTuple

import numpy as np
from scipy import sparse

from ..config import FilterType

logger = logging.getLogger("texture_pipeline.kernels")


class Kernel(NamedTuple):
    """A 1D reconstruction filter and its half-width in source pixels."""

    name: str
    support: float
    func: Callable[[np.ndarray], np.ndarray]


def _box(x: np.ndarray) -> np.ndarray:
    return ((x >= -0.5) & (x < 0.5)).astype(np.float64)


def _triangle(x: np.ndarray) -> np.ndarray:
    return np.maximum(0.0, 1.0 - np.abs(x))


def _cubic(b: float, c: float) -> Callable[[np.ndarray], np.ndarray]:
    """Mitchell-Netravali family; (0, 0.5) is Catmull-Rom."""
    def f(x: np.ndarray) -> np.ndarray:
        ax = np.abs(x)
        ax2 = ax * ax
        ax3 = ax2 * ax
        near = ((12 - 9 * b - 6 * c) * ax3
                + (-18 + 12 * b + 6 * c) * ax2
                + (6 - 2 * b))
        far = ((-b - 6 * c) * ax3
               + (6 * b + 30 * c) * ax2
               + (-12 * b - 48 * c) * ax
               + (8 * b + 24 * c))
        out = np.where(ax < 1.0, near, np.where(ax < 2.0, far, 0.0))
        return out / 6.0
    return f


def _lanczos(a: int) -> Callable[[np.ndarray], np.ndarray]:
    def f(x: np.ndarray) -> np.ndarray:
        return np.where(np.abs(x) < a, np.sinc(x) * np.sinc(x / a), 0.0)
    return f


KERNELS: Dict[FilterType, Kernel] = {
    FilterType.BOX: Kernel("box", 0.5, _box),
    FilterType.BILINEAR: Kernel("triangle", 1.0, _triangle),
    FilterType.BICUBIC: Kernel("bicubic", 2.0, _cubic(0.0, 0.5)),
    FilterType.LANCZOS3: Kernel("lanczos3", 3.0, _lanczos(3)),
    FilterType.MITCHELL: Kernel("mitchell", 2.0, _cubic(1.0 / 3.0, 1.0 / 3.0)),
    # Preset name kept for compatibility; resamples with Lanczos-3.
    FilterType.KAISER: Kernel("lanczos3", 3.0, _lanczos(3)),
}

ORDER_STATISTIC_FILTERS = (FilterType.MIN, FilterType.MAX)


def get_kernel(filter_type) -> Kernel:
    """Return the interpolation kernel for a filter name or enum."""
    ft = FilterType(filter_type)
    if ft in ORDER_STATISTIC_FILTERS:
        raise ValueError(f"{ft.value} is an order-statistic filter, not a kernel")
    return KERNELS[ft]


def resample_weights(src_size: int, dst_size: int, kernel: Kernel) -> sparse.csr_matrix:
    """Build a (dst_size, src_size) row-normalized weight matrix.

    Taps outside the source are clamped to the edge pixel.
    """
    if src_size < 1 or dst_size < 1:
        raise ValueError(f"Invalid resample sizes {src_size} -> {dst_size}")
    scale = src_size / dst_size
    filter_scale = max(scale, 1.0)
    support = kernel.support * filter_scale

    rows, cols, vals = [], [], []
    for i in range(dst_size):
        center = (i + 0.5) * scale - 0.5
        left = int(math.floor(center - support))
        right = int(math.ceil(center + support))
        taps = np.arange(left, right + 1)
        weights = kernel.func((taps - center) / filter_scale)
        total = float(weights.sum())
        if abs(total) < 1e-12:
            # Degenerate footprint: fall back to nearest sample.
            taps = np.array([int(round(center))])
            weights = np.array([1.0])
            total = 1.0
        weights = weights / total
        nz = weights != 0.0
        rows.append(np.full(int(nz.sum()), i))
        cols.append(np.clip(taps[nz], 0, src_size - 1))
        vals.append(weights[nz])

    # COO -> CSR sums duplicate (clamped) taps.
    matrix = sparse.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(dst_size, src_size),
    )
    return matrix.tocsr()


def _apply_axis0(weights: sparse.csr_matrix, data: np.ndarray) -> np.ndarray:
    h, w, c = data.shape
    out = weights @ data.reshape(h, w * c).astype(np.float64)
    return np.asarray(out).reshape(weights.shape[0], w, c)


def resample(pixels: np.ndarray, width: int, height: int, filter_type) -> np.ndarray:
    """Resize an (H, W, C) float array to (height, width, C)."""
    ft = FilterType(filter_type)
    if ft in ORDER_STATISTIC_FILTERS:
        return footprint_reduce(pixels, width, height, use_max=ft == FilterType.MAX)

    kernel = KERNELS[ft]
    src = pixels if pixels.ndim == 3 else pixels[:, :, np.newaxis]
    src_h, src_w = src.shape[:2]
    wy = resample_weights(src_h, height, kernel)
    wx = resample_weights(src_w, width, kernel)
    tmp = _apply_axis0(wy, src)
    out = _apply_axis0(wx, tmp.transpose(1, 0, 2)).transpose(1, 0, 2)
    out = out.astype(np.float32)
    return out if pixels.ndim == 3 else out[:, :, 0]


def footprint_bounds(src_size: int, dst_size: int) -> np.ndarray:
    """Return inclusive (start, end) source indices per destination pixel."""
    scale = src_size / dst_size
    idx = np.arange(dst_size)
    start = np.floor(idx * scale).astype(np.int64)
    end = np.ceil((idx + 1) * scale).astype(np.int64) - 1
    start = np.clip(start, 0, src_size - 1)
    end = np.clip(np.maximum(end, start), 0, src_size - 1)
    return np.stack([start, end], axis=1)


def footprint_reduce(pixels: np.ndarray, width: int, height: int,
                     use_max: bool) -> np.ndarray:
    """Per-channel min or max over each destination pixel's source footprint."""
    reduce = np.max if use_max else np.min
    src = pixels if pixels.ndim == 3 else pixels[:, :, np.newaxis]
    src_h, src_w = src.shape[:2]

    cols = footprint_bounds(src_w, width)
    by_col = np.stack(
        [reduce(src[:, s:e + 1], axis=1) for s, e in cols], axis=1
    )
    rows = footprint_bounds(src_h, height)
    out = np.stack(
        [reduce(by_col[s:e + 1], axis=0) for s, e in rows], axis=0
    ).astype(np.float32)
    return out if pixels.ndim == 3 else out[:, :, 0]
