"""Generate mipmap chains with per-type filter profiles.

Each level is derived from the previous resampled level: optional gamma
decode, optional Gaussian pre-blur, kernel resampling, gamma re-encode,
and normal renormalization for normal maps. The profile's post-processors
then run on every generated level (level 0 stays a plain copy).
"""

import enum
import logging
import math
import os
from typing import ClassVar, List, Sequence

import numpy as np
from scipy.ndimage import gaussian_filter

from ..config import FilterProfile, FilterType, TextureType
from ..core import MipChain, MipLevel, mip_level_path, save_image
from .kernels import ORDER_STATISTIC_FILTERS, resample

logger = logging.getLogger("texture_pipeline.mipmap")

_NORMAL_EPS = 1e-4


class InvalidDimensionsError(ValueError):
    """Raised when a source raster has a zero or degenerate size."""


class PostProcessorKind(enum.Enum):
    """Tags for the closed set of per-level mip post-processors."""

    TOKSVIG = "toksvig"
    AMBIENT_OCCLUSION = "ambient_occlusion"


class MipPostProcessor:
    """Base for per-level mip corrections.

    Subclasses set ``kind`` and implement ``applies_to`` and ``apply``.
    ``apply`` must return a new ``MipLevel``.
    """

    kind: ClassVar[PostProcessorKind]

    def applies_to(self, texture_type: TextureType) -> bool:
        raise NotImplementedError

    def apply(self, mip: MipLevel, source: MipLevel) -> MipLevel:
        raise NotImplementedError


def calculate_mip_levels(width: int, height: int, min_size: int = 1) -> int:
    """Return floor(log2(max(w, h) / min_size)) + 1."""
    if width <= 0 or height <= 0:
        raise InvalidDimensionsError(f"Invalid dimensions {width}x{height}")
    largest = max(width, height)
    if largest <= min_size:
        return 1
    return int(math.floor(math.log2(largest / max(min_size, 1)))) + 1


def mip_dimensions(width: int, height: int, min_size: int = 1,
                   include_last_level: bool = True) -> List[tuple]:
    """Return (width, height) for every level the generator will produce."""
    if width <= 0 or height <= 0:
        raise InvalidDimensionsError(f"Invalid dimensions {width}x{height}")
    min_size = max(int(min_size), 1)
    dims = [(width, height)]
    w, h = width, height
    while w > min_size or h > min_size:
        w = max(min_size, w // 2)
        h = max(min_size, h // 2)
        if not include_last_level and w == min_size and h == min_size:
            break
        dims.append((w, h))
    return dims


def renormalize_normals(pixels: np.ndarray) -> np.ndarray:
    """Re-unit decoded normal vectors in RGB; alpha untouched."""
    out = np.array(pixels, dtype=np.float32, copy=True)
    decoded = out[:, :, :3] * 2.0 - 1.0
    length = np.sqrt(np.sum(decoded ** 2, axis=-1, keepdims=True))
    safe = length > _NORMAL_EPS
    decoded = np.where(safe, decoded / np.maximum(length, _NORMAL_EPS), decoded)
    out[:, :, :3] = np.clip(decoded * 0.5 + 0.5, 0.0, 1.0)
    return out


class MipGenerator:
    """Build mip chains from a source raster and a filter profile."""

    def __init__(self, post_processors: Sequence[MipPostProcessor] = ()):
        """Fix the ordered post-processor list for this generator."""
        checked = []
        for proc in post_processors:
            if not isinstance(proc, MipPostProcessor) or not isinstance(
                getattr(proc, "kind", None), PostProcessorKind
            ):
                raise TypeError(
                    f"Unsupported mip post-processor: {type(proc).__name__}"
                )
            checked.append(proc)
        self.post_processors = tuple(checked)

    def generate(self, source, profile: FilterProfile) -> MipChain:
        """Produce the full mip chain for ``source``.

        ``source`` may be a ``MipLevel`` or any array accepted by it.
        """
        if not isinstance(source, MipLevel):
            arr = np.asarray(source)
            if arr.ndim < 2 or arr.shape[0] == 0 or arr.shape[1] == 0:
                raise InvalidDimensionsError(
                    f"Cannot generate mips for source of shape {arr.shape}"
                )
            source = MipLevel(arr, level=0)

        tex_type = TextureType(profile.texture_type)
        filter_type = FilterType(profile.filter)
        dims = mip_dimensions(
            source.width, source.height,
            profile.min_mip_size, profile.include_last_level,
        )
        applicable = [p for p in self.post_processors if p.applies_to(tex_type)]

        levels = [MipLevel(source.pixels, level=0)]
        previous = levels[0]
        for level, (w, h) in enumerate(dims[1:], start=1):
            resampled = MipLevel(
                self._downsample(previous.pixels, w, h, profile, filter_type, tex_type),
                level=level,
            )
            mip = resampled
            for proc in applicable:
                mip = proc.apply(mip, levels[0])
                if not isinstance(mip, MipLevel) or mip.level != level:
                    raise TypeError(
                        f"{proc.kind.value} post-processor returned an invalid level"
                    )
            levels.append(mip)
            previous = resampled

        chain = MipChain(tuple(levels))
        logger.debug(
            "Generated %d mip levels (%s, filter=%s) from %dx%d",
            len(chain), tex_type.value, filter_type.value,
            source.width, source.height,
        )
        return chain

    @staticmethod
    def _downsample(pixels: np.ndarray, width: int, height: int,
                    profile: FilterProfile, filter_type: FilterType,
                    tex_type: TextureType) -> np.ndarray:
        work = np.array(pixels, dtype=np.float32, copy=True)
        order_stat = filter_type in ORDER_STATISTIC_FILTERS
        use_gamma = profile.apply_gamma_correction and not order_stat and profile.gamma > 0

        if use_gamma:
            work[:, :, :3] = np.power(np.clip(work[:, :, :3], 0.0, 1.0), 1.0 / profile.gamma)

        if profile.blur_radius > 0 and not order_stat:
            work = gaussian_filter(
                work, sigma=(profile.blur_radius, profile.blur_radius, 0), mode="nearest"
            )

        out = resample(work, width, height, filter_type)

        if use_gamma:
            out[:, :, :3] = np.power(np.clip(out[:, :, :3], 0.0, 1.0), profile.gamma)

        if tex_type == TextureType.NORMAL and profile.normalize_normals:
            out = renormalize_normals(out)

        return np.clip(out, 0.0, 1.0).astype(np.float32)


def save_chain(chain: MipChain, directory: str, name: str, bits: int = 8,
               tag: str = "_mip") -> List[str]:
    """Write ``{name}{tag}{i}.png`` for every level and return the paths."""
    os.makedirs(directory, exist_ok=True)
    paths = []
    for lvl in chain:
        path = mip_level_path(directory, name, lvl.level, tag=tag)
        save_image(lvl.pixels, path, bits=bits)
        paths.append(path)
    logger.debug("Saved %d mip levels to %s", len(paths), directory)
    return paths
