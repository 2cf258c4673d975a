"""Ambient-occlusion mip correction.

Averaging AO washes crevices toward mid-gray in coarse mips. Both modes pull
each level back toward its darker values, reading the R channel and writing
the result to RGB with alpha preserved.
"""

import logging

import numpy as np

from ..config import AOMode, AOSettings
from ..core import MipChain, MipLevel, to_rgba8

logger = logging.getLogger("texture_pipeline.ao")

# Fraction by which sub-percentile pixels move toward the percentile value.
PERCENTILE_PULL = 0.3


def _lerp(a, b, t):
    return a + (b - a) * t


def percentile_value(values: np.ndarray, percentile: float) -> float:
    """Value at ``percentile`` from a 256-bin histogram of byte-quantized data."""
    hist = np.bincount(to_rgba8(values).ravel(), minlength=256)
    total = int(hist.sum())
    target = int(total * percentile / 100.0)
    cumulative = np.cumsum(hist)
    idx = int(np.searchsorted(cumulative, target, side="left"))
    return min(idx, 255) / 255.0


class AOProcessor:
    """Apply biased darkening or percentile pull to AO mip levels."""

    def __init__(self, settings: AOSettings):
        self.settings = settings

    def process_level(self, mip: MipLevel) -> MipLevel:
        """Correct one level according to the configured mode."""
        mode = AOMode(self.settings.mode)
        if mode == AOMode.BIASED_DARKENING:
            return self.biased_darkening(mip, self.settings.bias)
        if mode == AOMode.PERCENTILE:
            return self.percentile(mip, self.settings.percentile)
        return mip.clone()

    @staticmethod
    def biased_darkening(mip: MipLevel, bias: float) -> MipLevel:
        """Move every pixel toward a target between the level's mean and min."""
        if bias <= 0.0:
            return mip.clone()
        out = mip.copy_pixels()
        ao = out[:, :, 0]
        target = _lerp(float(ao.mean()), float(ao.min()), bias)
        darkened = np.clip(_lerp(ao, target, bias * 0.5), 0.0, 1.0)
        out[:, :, :3] = darkened[:, :, np.newaxis]
        logger.debug(
            "AO level %d biased darkening: target %.4f (bias %.2f)",
            mip.level, target, bias,
        )
        return mip.with_pixels(out)

    @staticmethod
    def percentile(mip: MipLevel, percentile: float) -> MipLevel:
        """Pull pixels darker than the percentile value 30% toward it."""
        out = mip.copy_pixels()
        ao = out[:, :, 0]
        pv = percentile_value(ao, percentile)
        below = ao < pv
        pulled = np.where(below, _lerp(ao, pv, PERCENTILE_PULL), ao)
        out[:, :, :3] = pulled[:, :, np.newaxis]
        logger.debug(
            "AO level %d percentile %.1f -> %.4f (%d pixels pulled)",
            mip.level, percentile, pv, int(below.sum()),
        )
        return mip.with_pixels(out)

    def apply(self, chain: MipChain) -> MipChain:
        """Correct levels from ``start_level`` on; earlier levels are copies."""
        if AOMode(self.settings.mode) == AOMode.NONE:
            return chain.copy()
        start = int(self.settings.start_level)
        levels = tuple(
            mip.clone() if mip.level < start else self.process_level(mip)
            for mip in chain
        )
        logger.info(
            "AO correction (%s) applied to %d/%d levels",
            self.settings.mode, max(0, len(chain) - start), len(chain),
        )
        return MipChain(levels)
