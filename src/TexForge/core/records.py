"""Texture job dataclass."""

import os
from dataclasses import asdict, dataclass
from typing import Optional


@dataclass
class TextureJob:
    """Single texture scheduled for conversion."""

    source_path: str
    rel_path: str
    texture_type: str
    width: int = 0
    height: int = 0
    is_gloss: bool = False
    # Set when the type came from the user rather than the file name.
    type_override: bool = False
    normal_map_path: Optional[str] = None
    output_path: Optional[str] = None

    def __post_init__(self) -> None:
        """Store the relative path with forward slashes for stable matching."""
        self.rel_path = str(self.rel_path).replace("\\", "/").lstrip("/")
        if not self.rel_path:
            self.rel_path = os.path.basename(self.source_path)

    @property
    def name(self) -> str:
        return os.path.splitext(os.path.basename(self.rel_path))[0]

    def to_dict(self) -> dict:
        """Return dataclass fields as a plain dictionary."""
        return asdict(self)
