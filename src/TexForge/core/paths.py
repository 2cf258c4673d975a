"""Output and intermediate path helpers."""

import os
from pathlib import Path, PurePosixPath


def _normalize_rel_path(rel_path: str) -> Path:
    """Normalize a relative texture path to a canonical, traversal-free form."""
    raw = str(rel_path).replace("\\", "/")
    p = PurePosixPath(raw)
    if p.is_absolute():
        raise ValueError(f"Texture path must be relative, got absolute path: {rel_path}")

    parts = []
    for part in p.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise ValueError(f"Texture path escapes root via '..': {rel_path}")
            parts.pop()
            continue
        parts.append(part)

    if not parts:
        raise ValueError(f"Texture path is empty after normalization: {rel_path}")
    return Path(*parts)


def get_output_path(rel_path: str, output_dir: str, ext: str = ".ktx2") -> str:
    """Return the container path for a texture, mirroring its relative folder."""
    p = _normalize_rel_path(rel_path)
    parent = "" if str(p.parent) == "." else str(p.parent)
    return os.path.join(output_dir, parent, p.stem + ext)


def get_intermediate_dir(rel_path: str, intermediate_dir: str) -> str:
    """Return the per-texture directory for mip PNGs and debug captures."""
    p = _normalize_rel_path(rel_path)
    parent = "" if str(p.parent) == "." else str(p.parent)
    return os.path.join(intermediate_dir, parent, p.stem)


def mip_level_path(directory: str, name: str, level: int, tag: str = "_mip") -> str:
    """Return ``{directory}/{name}{tag}{level}.png``."""
    return os.path.join(directory, f"{name}{tag}{level}.png")
