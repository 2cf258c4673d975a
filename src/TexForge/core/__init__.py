"""Core utilities -- re-exports all public symbols for convenience."""

from .records import TextureJob
from .raster import (
    MipLevel,
    MipChain,
    DimensionMismatchError,
    require_same_size,
    to_rgba,
    to_rgba8,
)
from .io import load_image, save_image, read_image_size, write_bytes_atomic
from .classify import classify_texture, classify_texture_by_content
from .scanning import scan_textures, build_job
from .paths import get_output_path, get_intermediate_dir, mip_level_path
from .logging import setup_logging

__all__ = [
    "TextureJob",
    "MipLevel", "MipChain", "DimensionMismatchError", "require_same_size",
    "to_rgba", "to_rgba8",
    "load_image", "save_image", "read_image_size", "write_bytes_atomic",
    "classify_texture", "classify_texture_by_content",
    "scan_textures", "build_job",
    "get_output_path", "get_intermediate_dir", "mip_level_path",
    "setup_logging",
]
