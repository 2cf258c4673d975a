"""Owned raster buffers for mip levels and mip chains.

Every ``MipLevel`` owns a private, read-only float32 RGBA buffer. The
constructor copies whatever it is given, so a level can never share storage
with its input or with another level, and in-place writes fail loudly.
Stages produce new levels from ``copy_pixels()``.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence, Tuple

import numpy as np


class DimensionMismatchError(ValueError):
    """Raised when two rasters that must align have different sizes."""


def to_rgba(arr: np.ndarray) -> np.ndarray:
    """Return a float32 (H, W, 4) copy of a grayscale, RGB, or RGBA array.

    uint8/uint16 inputs are rescaled to [0, 1]; missing alpha becomes 1.
    """
    src = np.asarray(arr)
    if src.dtype == np.uint8:
        data = src.astype(np.float32) / 255.0
    elif src.dtype == np.uint16:
        data = src.astype(np.float32) / 65535.0
    else:
        data = src.astype(np.float32, copy=True)

    if data.ndim == 2:
        data = data[:, :, np.newaxis]
    if data.ndim != 3:
        raise ValueError(f"Expected HxW or HxWxC raster, got shape {src.shape}")

    channels = data.shape[2]
    h, w = data.shape[:2]
    if channels == 1:
        rgb = np.repeat(data, 3, axis=2)
        alpha = np.ones((h, w, 1), dtype=np.float32)
        return np.concatenate([rgb, alpha], axis=2)
    if channels == 2:
        # Luminance + alpha
        rgb = np.repeat(data[:, :, :1], 3, axis=2)
        return np.concatenate([rgb, data[:, :, 1:2]], axis=2)
    if channels == 3:
        alpha = np.ones((h, w, 1), dtype=np.float32)
        return np.concatenate([data, alpha], axis=2)
    if channels == 4:
        return np.ascontiguousarray(data)
    raise ValueError(f"Unsupported channel count {channels} (shape {src.shape})")


def to_rgba8(pixels: np.ndarray) -> np.ndarray:
    """Quantize float [0, 1] pixels to uint8 with round-half-up semantics."""
    return np.clip(np.floor(np.asarray(pixels) * 255.0 + 0.5), 0, 255).astype(np.uint8)


@dataclass(frozen=True, eq=False)
class MipLevel:
    """One mip level holding an exclusively owned RGBA buffer."""

    pixels: np.ndarray
    level: int = 0

    def __post_init__(self):
        owned = to_rgba(self.pixels)
        if owned.shape[0] == 0 or owned.shape[1] == 0:
            raise ValueError(f"Mip level {self.level} has zero size {owned.shape[:2]}")
        owned.setflags(write=False)
        object.__setattr__(self, "pixels", owned)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)."""
        return self.width, self.height

    def copy_pixels(self) -> np.ndarray:
        """Return a writable copy of the buffer."""
        return np.array(self.pixels, dtype=np.float32, copy=True)

    def with_pixels(self, pixels: np.ndarray) -> "MipLevel":
        """Return a new level at the same index holding ``pixels``."""
        return MipLevel(pixels, level=self.level)

    def clone(self) -> "MipLevel":
        return MipLevel(self.pixels, level=self.level)


@dataclass(frozen=True, eq=False)
class MipChain:
    """Immutable ordered sequence of mip levels, level 0 first."""

    levels: Tuple[MipLevel, ...] = field(default_factory=tuple)

    def __post_init__(self):
        levels = tuple(self.levels)
        for idx, lvl in enumerate(levels):
            if not isinstance(lvl, MipLevel):
                raise TypeError(f"MipChain entry {idx} is {type(lvl).__name__}, not MipLevel")
            if lvl.level != idx:
                raise ValueError(f"MipChain entry {idx} carries level index {lvl.level}")
        object.__setattr__(self, "levels", levels)

    @classmethod
    def from_arrays(cls, arrays: Sequence[np.ndarray]) -> "MipChain":
        return cls(tuple(MipLevel(arr, level=i) for i, arr in enumerate(arrays)))

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self) -> Iterator[MipLevel]:
        return iter(self.levels)

    def __getitem__(self, index: int) -> MipLevel:
        return self.levels[index]

    @property
    def base(self) -> MipLevel:
        return self.levels[0]

    def dimensions(self) -> List[Tuple[int, int]]:
        """Return (width, height) per level."""
        return [lvl.size for lvl in self.levels]

    def copy(self) -> "MipChain":
        """Return a deep copy with freshly owned buffers."""
        return MipChain(tuple(lvl.clone() for lvl in self.levels))


def require_same_size(a: MipLevel, b: MipLevel, what: str = "raster") -> None:
    """Raise DimensionMismatchError unless both levels have equal size."""
    if a.size != b.size:
        raise DimensionMismatchError(
            f"{what} size {b.width}x{b.height} does not match "
            f"{a.width}x{a.height} at level {a.level}"
        )
