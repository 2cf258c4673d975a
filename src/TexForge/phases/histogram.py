"""Percentile-based dynamic-range normalization.

The analyzer picks a robust [lo, hi] window from 256-bin histograms and
derives the forward transform ``normalized = v * scale + offset`` with
``scale = 1 / (hi - lo)`` and ``offset = -lo * scale``. Textures are
normalized with that forward transform; containers store its inverse
(see ``invert_for_storage``) so the GPU recovers the original with a single
fused multiply-add.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..config import HistogramChannelMode, HistogramMode, HistogramSettings
from ..core import MipChain, MipLevel, to_rgba8

logger = logging.getLogger("texture_pipeline.histogram")


@dataclass(frozen=True)
class HistogramResult:
    """Outcome of one histogram analysis. Immutable after creation."""

    success: bool
    mode: str
    channel_mode: str
    scale: Tuple[float, ...] = (1.0,)
    offset: Tuple[float, ...] = (0.0,)
    range_low: float = 0.0
    range_high: float = 1.0
    channel_ranges: Tuple[Tuple[float, float], ...] = ((0.0, 1.0),)
    tail_fraction: float = 0.0
    knee_applied: bool = False
    total_pixels: int = 0
    error: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def identity(cls, channel_mode: str = HistogramChannelMode.AVERAGE_LUMINANCE.value,
                 total_pixels: int = 0) -> "HistogramResult":
        """Result for mode off: scale 1, offset 0, full range."""
        return cls(
            success=True,
            mode=HistogramMode.OFF.value,
            channel_mode=channel_mode,
            total_pixels=total_pixels,
        )

    @property
    def is_identity(self) -> bool:
        return all(s == 1.0 for s in self.scale) and all(o == 0.0 for o in self.offset)

    def to_dict(self) -> dict:
        """Return a JSON-friendly dictionary."""
        data = dataclasses.asdict(self)
        data["channel_ranges"] = [list(r) for r in self.channel_ranges]
        data["scale"] = list(self.scale)
        data["offset"] = list(self.offset)
        data["warnings"] = list(self.warnings)
        return data


def forward_coefficients(lo: float, hi: float) -> Tuple[float, float]:
    """Return (scale, offset) mapping [lo, hi] onto [0, 1]."""
    scale = 1.0 / (hi - lo)
    return scale, -lo * scale


def invert_for_storage(result: HistogramResult) -> HistogramResult:
    """Return a copy holding the inverse transform written to containers.

    stored_scale = 1 / scale, stored_offset = -offset / scale, so that
    ``original = normalized * stored_scale + stored_offset``.
    """
    scales = tuple(1.0 / s for s in result.scale)
    offsets = tuple(-o / s for s, o in zip(result.scale, result.offset))
    return dataclasses.replace(result, scale=scales, offset=offsets)


def recover(normalized, stored_scale: float, stored_offset: float):
    """Undo normalization with stored (inverted) coefficients."""
    return normalized * stored_scale + stored_offset


def smoothstep(t):
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def _channel_groups(channel_mode: HistogramChannelMode) -> List[Tuple[int, ...]]:
    """Pixel channels each (scale, offset) pair applies to."""
    if channel_mode in (HistogramChannelMode.AVERAGE_LUMINANCE, HistogramChannelMode.RGB_SHARED):
        return [(0, 1, 2)]
    if channel_mode == HistogramChannelMode.PER_CHANNEL_RGB:
        return [(0,), (1,), (2,)]
    return [(0,), (1,), (2,), (3,)]


def _group_histograms(rgba8: np.ndarray, channel_mode: HistogramChannelMode) -> List[np.ndarray]:
    if channel_mode == HistogramChannelMode.AVERAGE_LUMINANCE:
        lum = (rgba8[:, :, 0].astype(np.uint16)
               + rgba8[:, :, 1].astype(np.uint16)
               + rgba8[:, :, 2].astype(np.uint16)) // 3
        return [np.bincount(lum.ravel(), minlength=256)]
    if channel_mode == HistogramChannelMode.RGB_SHARED:
        return [np.bincount(rgba8[:, :, :3].ravel(), minlength=256)]
    return [
        np.bincount(rgba8[:, :, c].ravel(), minlength=256)
        for group in _channel_groups(channel_mode)
        for c in group
    ]


def percentile_index(hist: np.ndarray, percentile: float) -> int:
    """First bin whose cumulative count reaches int(total * p / 100)."""
    total = int(hist.sum())
    threshold = int(total * percentile / 100.0)
    idx = int(np.searchsorted(np.cumsum(hist), threshold, side="left"))
    return min(idx, 255)


class HistogramAnalyzer:
    """Compute and apply percentile normalization."""

    def analyze(self, pixels, settings: HistogramSettings) -> HistogramResult:
        """Analyze an RGBA raster (``MipLevel`` or array)."""
        mode = HistogramMode(settings.mode)
        channel_mode = HistogramChannelMode(settings.channel_mode)
        arr = pixels.pixels if isinstance(pixels, MipLevel) else np.asarray(pixels)
        total = int(arr.shape[0] * arr.shape[1]) if arr.ndim >= 2 else 0

        if mode == HistogramMode.OFF:
            return HistogramResult.identity(channel_mode.value, total)
        if total == 0:
            return HistogramResult(
                success=False, mode=mode.value, channel_mode=channel_mode.value,
                error="empty image",
            )

        rgba8 = to_rgba8(arr if arr.ndim == 3 and arr.shape[2] == 4 else MipLevel(arr).pixels)
        knee = mode == HistogramMode.PERCENTILE_WITH_KNEE
        scales, offsets, ranges, tails, warnings = [], [], [], [], []

        for idx, hist in enumerate(_group_histograms(rgba8, channel_mode)):
            hist_total = int(hist.sum())
            lo_idx = percentile_index(hist, settings.percentile_low)
            hi_idx = percentile_index(hist, settings.percentile_high)
            outside = int(hist[:lo_idx].sum()) + int(hist[hi_idx + 1:].sum())
            tails.append(outside / hist_total if hist_total else 0.0)

            lo, hi = lo_idx / 255.0, hi_idx / 255.0
            if knee and settings.knee_width > 0:
                widen = settings.knee_width * (hi - lo)
                lo, hi = max(0.0, lo - widen), min(1.0, hi + widen)
            ranges.append((lo, hi))

            if hi - lo < settings.min_range_threshold:
                scales.append(1.0)
                offsets.append(0.0)
                msg = (
                    f"Channel group {idx}: range {hi - lo:.6f} below "
                    f"{settings.min_range_threshold}, normalization skipped"
                )
                warnings.append(msg)
                logger.warning(msg)
            else:
                scale, offset = forward_coefficients(lo, hi)
                scales.append(scale)
                offsets.append(offset)
            logger.debug(
                "Histogram group %d: lo=%.4f hi=%.4f scale=%.4f offset=%.4f",
                idx, lo, hi, scales[-1], offsets[-1],
            )

        tail_fraction = float(np.mean(tails))
        if tail_fraction > settings.tail_threshold:
            msg = (
                f"High tail fraction ({tail_fraction:.2%}), "
                "potential outliers or noise detected"
            )
            warnings.append(msg)
            logger.warning(msg)

        result = HistogramResult(
            success=True,
            mode=mode.value,
            channel_mode=channel_mode.value,
            scale=tuple(scales),
            offset=tuple(offsets),
            range_low=min(r[0] for r in ranges),
            range_high=max(r[1] for r in ranges),
            channel_ranges=tuple(ranges),
            tail_fraction=tail_fraction,
            knee_applied=knee and settings.knee_width > 0,
            total_pixels=total,
            warnings=tuple(warnings),
        )
        logger.info(
            "Histogram analysis (%s, %s): range [%.4f, %.4f], tail %.2f%%",
            mode.value, channel_mode.value, result.range_low, result.range_high,
            100.0 * tail_fraction,
        )
        return result

    @staticmethod
    def _group_params(result: HistogramResult):
        groups = _channel_groups(HistogramChannelMode(result.channel_mode))
        if len(groups) != len(result.scale):
            raise ValueError(
                f"{result.channel_mode} expects {len(groups)} coefficient pairs, "
                f"got {len(result.scale)}"
            )
        return zip(groups, result.scale, result.offset, result.channel_ranges)

    def apply_winsorization(self, mip: MipLevel, result: HistogramResult) -> MipLevel:
        """Linear normalization with hard clamping to [0, 1]."""
        out = mip.copy_pixels()
        for channels, scale, offset, _ in self._group_params(result):
            if scale == 1.0 and offset == 0.0:
                continue
            for c in channels:
                out[:, :, c] = np.clip(out[:, :, c] * scale + offset, 0.0, 1.0)
        return mip.with_pixels(out)

    def apply_soft_knee(self, mip: MipLevel, result: HistogramResult,
                        knee_width: float) -> MipLevel:
        """Normalize with a smoothstep roll-off outside [lo, hi]."""
        out = mip.copy_pixels()
        for channels, scale, offset, (lo, hi) in self._group_params(result):
            if scale == 1.0 and offset == 0.0:
                continue
            k = knee_width * (hi - lo)
            for c in channels:
                v = out[:, :, c].astype(np.float64)
                if k > 0:
                    below = v < lo
                    above = v > hi
                    v = np.where(below, lo - k * smoothstep((lo - v) / k), v)
                    v = np.where(above, hi + k * smoothstep((v - hi) / k), v)
                out[:, :, c] = np.clip(v * scale + offset, 0.0, 1.0)
        return mip.with_pixels(out)

    def normalize_chain(self, chain: MipChain, result: HistogramResult,
                        settings: HistogramSettings) -> MipChain:
        """Apply the forward transform to every level."""
        if not result.success or HistogramMode(result.mode) == HistogramMode.OFF:
            return chain.copy()
        if HistogramMode(result.mode) == HistogramMode.PERCENTILE_WITH_KNEE:
            levels = [self.apply_soft_knee(m, result, settings.knee_width) for m in chain]
        else:
            levels = [self.apply_winsorization(m, result) for m in chain]
        logger.info("Histogram normalization applied to %d levels", len(levels))
        return MipChain(tuple(levels))


def coefficients_for_channels(result: HistogramResult,
                              channels: Sequence[int] = (0, 1, 2, 3)) -> List[Tuple[float, float]]:
    """Expand grouped coefficients to per-pixel-channel (scale, offset) pairs.

    Channels without coefficients (alpha in RGB modes) get the identity.
    """
    per_channel = {c: (1.0, 0.0) for c in channels}
    groups = _channel_groups(HistogramChannelMode(result.channel_mode))
    for group, scale, offset in zip(groups, result.scale, result.offset):
        for c in group:
            if c in per_channel:
                per_channel[c] = (scale, offset)
    return [per_channel[c] for c in channels]
