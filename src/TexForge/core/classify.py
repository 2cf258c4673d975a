"""Texture classification by filename suffix patterns and content analysis."""

import logging
from pathlib import Path

import numpy as np

from ..config import TEXTURE_PATTERNS, TextureType

logger = logging.getLogger("texture_pipeline.classify")


def classify_texture(filepath: str) -> TextureType:
    """Classify texture type based on filename suffix patterns.

    Uses longest-match suffix strategy so that ``_normal`` wins over ``_n``
    and short tokens only match at the very end of the stem.
    """
    name = Path(filepath).stem.lower()
    best_type = TextureType.GENERIC
    best_len = 0
    for tex_type, patterns in TEXTURE_PATTERNS.items():
        for pattern in patterns:
            if name.endswith(pattern) and len(pattern) > best_len:
                best_len = len(pattern)
                best_type = tex_type
    return best_type


def classify_texture_by_content(pixels: np.ndarray) -> TextureType:
    """Content-based fallback used when the filename says nothing.

    Only tangent-space normal maps are detected: blue channel high with
    red and green centered around 0.5. Everything else stays GENERIC.
    """
    if pixels.ndim != 3 or pixels.shape[2] < 3:
        return TextureType.GENERIC
    step = max(1, max(pixels.shape[:2]) // 512)
    sample = pixels[::step, ::step, :3]
    r_mean, g_mean, b_mean = (float(sample[:, :, c].mean()) for c in range(3))
    b_std = float(sample[:, :, 2].std())
    if (b_mean > 0.7
            and abs(r_mean - 0.5) < 0.15
            and abs(g_mean - 0.5) < 0.15
            and b_std < 0.15):
        logger.debug(
            "Content-based classification: normal-like stats "
            "(r=%.3f g=%.3f b=%.3f) -> NORMAL",
            r_mean, g_mean, b_mean,
        )
        return TextureType.NORMAL
    return TextureType.GENERIC
