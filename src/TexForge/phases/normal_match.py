"""Locate the normal map that belongs to a roughness or gloss texture."""

import logging
import os
import re
from typing import List, Optional

from ..core import read_image_size

logger = logging.getLogger("texture_pipeline.normal_match")

_SUFFIX_SWAPS = (
    ("_roughness", "_normal"),
    ("_glossiness", "_normal"),
    ("_gloss", "_normal"),
    ("_rough", "_normal"),
    ("_Roughness", "_Normal"),
    ("_Glossiness", "_Normal"),
    ("_Gloss", "_Normal"),
    ("_Rough", "_Normal"),
)
_SHORT_SWAPS = (("_r", "_n"), ("_g", "_n"))
_APPENDED = ("_normal", "_Normal")


def _swap_token(stem: str, old: str, new: str) -> Optional[str]:
    """Replace the last whole-token occurrence of ``old``, or return None."""
    matches = list(re.finditer(re.escape(old) + r"(?=_|$)", stem))
    if not matches:
        return None
    m = matches[-1]
    return stem[:m.start()] + new + stem[m.end():]


def candidate_names(stem: str) -> List[str]:
    """Return candidate normal-map stems for ``stem`` in priority order."""
    names = []
    for old, new in _SUFFIX_SWAPS:
        swapped = _swap_token(stem, old, new)
        if swapped is not None:
            names.append(swapped)
    for suffix in _APPENDED:
        names.append(stem + suffix)
    for old, new in _SHORT_SWAPS:
        swapped = _swap_token(stem, old, new)
        if swapped is not None:
            names.append(swapped)

    seen = set()
    unique = []
    for name in names:
        if name != stem and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def find_normal_map(path: str, validate_dimensions: bool = True) -> Optional[str]:
    """Return the first existing normal map next to ``path``, or None.

    Candidates keep the source extension and directory. With
    ``validate_dimensions`` a candidate is accepted only if its size matches
    the source; candidates that fail to load are skipped.
    """
    directory = os.path.dirname(path)
    stem, ext = os.path.splitext(os.path.basename(path))

    source_size = None
    if validate_dimensions:
        try:
            source_size = read_image_size(path)
        except (OSError, ValueError) as exc:
            logger.warning("Cannot read %s for normal-map matching: %s", path, exc)
            return None

    for name in candidate_names(stem):
        candidate = os.path.join(directory, name + ext)
        if not os.path.isfile(candidate):
            continue
        if source_size is not None:
            try:
                size = read_image_size(candidate)
            except (OSError, ValueError) as exc:
                logger.debug("Ignoring unreadable normal-map candidate %s: %s", candidate, exc)
                continue
            if size != source_size:
                logger.debug(
                    "Ignoring %s: size %dx%d differs from %dx%d",
                    candidate, size[0], size[1], source_size[0], source_size[1],
                )
                continue
        logger.info("Matched normal map %s for %s", candidate, path)
        return candidate

    logger.debug("No normal map found for %s", path)
    return None


def is_gloss_by_name(path: str) -> Optional[bool]:
    """True for gloss-like names, False for roughness-like names, else None."""
    stem = os.path.splitext(os.path.basename(path))[0].lower()
    if "gloss" in stem or "_g_" in stem or stem.endswith("_g"):
        return True
    if "roughness" in stem or "_r_" in stem or stem.endswith("_r"):
        return False
    return None
