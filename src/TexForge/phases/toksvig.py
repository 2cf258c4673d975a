"""Toksvig specular anti-aliasing for roughness and gloss mip chains.

Normal detail averaged away in coarser mips shortens the mean normal. The
shortening is turned into a variance estimate and folded into GGX alpha so
highlights widen instead of sparkling. References: Toksvig 2005, "Mipmapping
Normal Maps"; Hill & McAuley, "Specular Showdown".
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from scipy.ndimage import gaussian_filter, uniform_filter

from ..config import (
    FilterProfile, ToksvigMode, ToksvigSettings, TextureType, default_profile,
)
from ..core import DimensionMismatchError, MipChain, MipLevel, require_same_size
from .mipmap import MipGenerator

logger = logging.getLogger("texture_pipeline.toksvig")

EPSILON = 1e-4
# Bias subtracted from the raw (1 - L) / L estimate to absorb 8-bit
# quantization of perfectly flat normals.
VARIANCE_BIAS = 0.00004
_CHANGED_THRESHOLD = 0.001


def decode_normals(pixels: np.ndarray) -> np.ndarray:
    """Map RGB in [0, 1] to vectors in [-1, 1] (no normalization)."""
    return pixels[:, :, :3].astype(np.float32) * 2.0 - 1.0


def _variance_from_length(length: np.ndarray) -> np.ndarray:
    safe = np.maximum(length, EPSILON)
    variance = np.maximum(0.0, (1.0 - safe) / safe - VARIANCE_BIAS)
    return np.where(length < EPSILON, 0.0, variance).astype(np.float32)


def classic_variance(normal_pixels: np.ndarray) -> np.ndarray:
    """3x3 edge-clamped mean of raw decoded normals -> variance."""
    decoded = decode_normals(normal_pixels)
    mean = uniform_filter(decoded, size=(3, 3, 1), mode="nearest")
    length = np.sqrt(np.sum(mean ** 2, axis=-1))
    return _variance_from_length(length)


def simplified_variance(normal_pixels: np.ndarray, threshold: float) -> np.ndarray:
    """2x2 mean of unit normals -> variance, with a dead zone below ``threshold``."""
    decoded = decode_normals(normal_pixels)
    length = np.sqrt(np.sum(decoded ** 2, axis=-1, keepdims=True))
    unit = np.where(length > EPSILON, decoded / np.maximum(length, EPSILON), decoded)
    padded = np.pad(unit, ((0, 1), (0, 1), (0, 0)), mode="edge")
    mean = (padded[:-1, :-1] + padded[:-1, 1:] + padded[1:, :-1] + padded[1:, 1:]) * 0.25
    variance = _variance_from_length(np.sqrt(np.sum(mean ** 2, axis=-1)))
    return np.where(variance < threshold, 0.0, variance).astype(np.float32)


def toksvig_roughness(roughness: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """Fold normal variance into GGX alpha and return corrected roughness.

    Zero variance is an exact identity.
    """
    r = np.asarray(roughness, dtype=np.float64)
    var = np.asarray(variance, dtype=np.float64)
    alpha = r * r
    a2 = alpha * alpha
    b = 2.0 * var * (a2 - 1.0)
    denom = b - 1.0
    unchanged = np.abs(denom) < EPSILON
    safe_denom = np.where(unchanged, 1.0, denom)
    a2_corrected = np.clip((b - a2) / safe_denom, EPSILON * EPSILON, 1.0)
    corrected = np.power(a2_corrected, 0.25)
    # Zero variance must round-trip exactly, not through pow(r^4, 1/4).
    corrected = np.where(unchanged | (var == 0.0), r, corrected)
    return corrected.astype(np.float32)


@dataclass
class ToksvigResult:
    """Corrected chain plus optional per-level variance captures."""

    chain: MipChain
    applied: bool = False
    levels_corrected: List[int] = field(default_factory=list)
    variance_maps: List[Optional[np.ndarray]] = field(default_factory=list)


class ToksvigProcessor:
    """Apply Toksvig correction to roughness/gloss chains."""

    def __init__(self, settings: ToksvigSettings, generator: Optional[MipGenerator] = None):
        """Bind settings; ``generator`` is used for normal and energy-preserving chains."""
        self.settings = settings
        self.generator = generator or MipGenerator()

    def variance_scale(self) -> float:
        k = float(self.settings.composite_power)
        if ToksvigMode(self.settings.calculation_mode) == ToksvigMode.CLASSIC:
            return k ** 1.5
        return k

    def compute_variance(self, normal_pixels: np.ndarray) -> np.ndarray:
        """Return the scaled per-pixel variance for one normal-map level."""
        mode = ToksvigMode(self.settings.calculation_mode)
        if mode == ToksvigMode.CLASSIC:
            variance = classic_variance(normal_pixels)
        else:
            variance = simplified_variance(normal_pixels, self.settings.variance_threshold)
        h, w = variance.shape
        if self.settings.smooth_variance and h >= 4 and w >= 4:
            variance = gaussian_filter(variance, sigma=0.5, mode="nearest")
        return (variance * self.variance_scale()).astype(np.float32)

    def prepare_normal_chain(self, normal_pixels,
                             profile: Optional[FilterProfile] = None) -> MipChain:
        """Generate the normal-map chain.

        ``profile`` is the roughness/gloss profile; its size limits are reused
        so both chains have the same level count.
        """
        normal_profile = default_profile(TextureType.NORMAL)
        if profile is not None:
            normal_profile.min_mip_size = profile.min_mip_size
            normal_profile.include_last_level = profile.include_last_level
        return self.generator.generate(normal_pixels, normal_profile)

    def correct_level(self, mip: MipLevel, normal: MipLevel, is_gloss: bool,
                      capture: bool = False):
        """Correct one level. Returns (MipLevel, variance or None).

        Raises DimensionMismatchError if the normal level differs in size.
        """
        require_same_size(mip, normal, "normal map")
        variance = self.compute_variance(normal.pixels)
        out = mip.copy_pixels()
        value = out[:, :, 0]
        roughness = 1.0 - value if is_gloss else value
        corrected = toksvig_roughness(roughness, variance)
        if is_gloss:
            corrected = 1.0 - corrected
        corrected = np.clip(corrected, 0.0, 1.0)

        changed = np.abs(corrected - value) > _CHANGED_THRESHOLD
        logger.debug(
            "Toksvig level %d: mean variance %.6f, %.1f%% pixels changed",
            mip.level, float(variance.mean()), 100.0 * float(changed.mean()),
        )
        out[:, :, :3] = corrected[:, :, np.newaxis]
        return mip.with_pixels(out), (variance if capture else None)

    def apply(self, chain: MipChain, normal_chain: MipChain, is_gloss: bool = False,
              capture_variance: bool = False,
              profile: Optional[FilterProfile] = None) -> ToksvigResult:
        """Correct every eligible level of ``chain``.

        Levels below ``min_corrected_level``, past the end of the normal
        chain, or with a mismatched normal size are copied through.
        ``profile`` is the one ``chain`` was built with; energy-preserving
        mode rebuilds coarser levels with its size limits.
        """
        if not self.settings.enabled:
            logger.info("Toksvig correction disabled; returning copies.")
            return ToksvigResult(chain=chain.copy())
        errors = self.settings.validation_errors()
        if errors:
            logger.warning("Invalid Toksvig settings (%s); returning copies.", "; ".join(errors))
            return ToksvigResult(chain=chain.copy())

        if self.settings.energy_preserving:
            return self._apply_energy_preserving(
                chain, normal_chain, is_gloss, capture_variance, profile
            )

        min_level = int(self.settings.min_corrected_level)
        levels = []
        corrected_levels = []
        variance_maps = []
        for mip in chain:
            if mip.level < min_level or mip.level >= len(normal_chain):
                levels.append(mip.clone())
                variance_maps.append(None)
                continue
            try:
                out, variance = self.correct_level(
                    mip, normal_chain[mip.level], is_gloss, capture=capture_variance
                )
            except DimensionMismatchError as exc:
                logger.warning("Skipping Toksvig for level %d: %s", mip.level, exc)
                levels.append(mip.clone())
                variance_maps.append(None)
                continue
            levels.append(out)
            corrected_levels.append(mip.level)
            variance_maps.append(variance)

        logger.info(
            "Toksvig applied to %d/%d levels (k=%.2f, mode=%s, %s)",
            len(corrected_levels), len(chain), self.settings.composite_power,
            self.settings.calculation_mode, "gloss" if is_gloss else "roughness",
        )
        return ToksvigResult(
            chain=MipChain(tuple(levels)),
            applied=bool(corrected_levels),
            levels_corrected=corrected_levels,
            variance_maps=variance_maps if capture_variance else [],
        )

    def _apply_energy_preserving(self, chain: MipChain, normal_chain: MipChain,
                                 is_gloss: bool, capture_variance: bool,
                                 source_profile: Optional[FilterProfile]) -> ToksvigResult:
        """Correct level 0 only, then rebuild coarser levels in alpha space."""
        base = chain[0]
        variance = None
        applied = False
        if len(normal_chain) > 0:
            try:
                base, variance = self.correct_level(
                    base, normal_chain[0], is_gloss, capture=capture_variance
                )
                applied = True
            except DimensionMismatchError as exc:
                logger.warning("Skipping Toksvig for level 0: %s", exc)
                base = base.clone()
        else:
            base = base.clone()

        pixels = base.copy_pixels()
        roughness = 1.0 - pixels[:, :, :3] if is_gloss else pixels[:, :, :3]
        alpha_pixels = pixels.copy()
        alpha_pixels[:, :, :3] = roughness * roughness

        profile = default_profile(TextureType.ROUGHNESS)
        if source_profile is not None:
            profile.filter = source_profile.filter
            profile.min_mip_size = source_profile.min_mip_size
            profile.blur_radius = source_profile.blur_radius
        dims = chain.dimensions()
        alpha_chain = self.generator.generate(alpha_pixels, profile)

        levels = [base]
        for lvl in alpha_chain.levels[1:len(chain)]:
            out = lvl.copy_pixels()
            r = np.sqrt(np.clip(out[:, :, :3], 0.0, 1.0))
            out[:, :, :3] = 1.0 - r if is_gloss else r
            levels.append(lvl.with_pixels(out))

        # Keep the level count and sizes of the input chain.
        if [lvl.size for lvl in levels] != dims:
            raise DimensionMismatchError(
                f"Energy-preserving rebuild produced {[lvl.size for lvl in levels]}, "
                f"expected {dims}"
            )
        logger.info("Toksvig energy-preserving rebuild of %d levels", len(levels))
        maps = [variance] + [None] * (len(levels) - 1) if capture_variance else []
        return ToksvigResult(
            chain=MipChain(tuple(levels)),
            applied=applied,
            levels_corrected=[0] if applied else [],
            variance_maps=maps,
        )


def variance_to_image(variance: np.ndarray) -> np.ndarray:
    """Visualize a variance map as grayscale RGBA, scaled to its maximum."""
    peak = float(variance.max()) if variance.size else 0.0
    norm = variance / peak if peak > 0 else np.zeros_like(variance)
    h, w = variance.shape
    out = np.ones((h, w, 4), dtype=np.float32)
    out[:, :, :3] = np.clip(norm, 0.0, 1.0)[:, :, np.newaxis]
    return out
