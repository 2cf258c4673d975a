"""Define typed configuration models for the texture pipeline.

Use `PipelineConfig` to load, validate, and persist runtime settings.
Enumerated options are stored as plain strings so YAML files stay
readable; `validate()` checks them against the enum values below.
"""

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger("texture_pipeline.config")


class TextureType(Enum):
    """Enumerate texture semantic types that select a filter profile."""

    ALBEDO = "albedo"
    NORMAL = "normal"
    ROUGHNESS = "roughness"
    METALLIC = "metallic"
    AMBIENT_OCCLUSION = "ambient_occlusion"
    EMISSIVE = "emissive"
    HEIGHT = "height"
    GLOSS = "gloss"
    GENERIC = "generic"


class FilterType(Enum):
    """Enumerate mip resampling filters.

    ``KAISER`` is kept as a preset name; it resamples with Lanczos-3.
    """

    BOX = "box"
    BILINEAR = "bilinear"
    BICUBIC = "bicubic"
    LANCZOS3 = "lanczos3"
    MITCHELL = "mitchell"
    KAISER = "kaiser"
    MIN = "min"
    MAX = "max"


class ToksvigMode(Enum):
    """Enumerate normal-variance estimators for Toksvig correction."""

    CLASSIC = "classic"
    SIMPLIFIED = "simplified"


class AOMode(Enum):
    """Enumerate ambient-occlusion mip correction modes."""

    NONE = "none"
    BIASED_DARKENING = "biased_darkening"
    PERCENTILE = "percentile"


class HistogramMode(Enum):
    """Enumerate histogram normalization modes.

    The integer written to the TLV params block is the enum position.
    """

    OFF = "off"
    PERCENTILE = "percentile"
    PERCENTILE_WITH_KNEE = "percentile_with_knee"


class HistogramQuality(Enum):
    """Enumerate histogram presets."""

    HIGH_QUALITY = "high_quality"
    FAST = "fast"


class HistogramChannelMode(Enum):
    """Enumerate how channels are grouped for histogram analysis."""

    AVERAGE_LUMINANCE = "average_luminance"
    RGB_SHARED = "rgb_shared"
    PER_CHANNEL_RGB = "per_channel_rgb"
    PER_CHANNEL_RGBA = "per_channel_rgba"


class CompressionEncoding(Enum):
    """Enumerate Basis Universal encodings supported by toktx."""

    UASTC = "uastc"
    ETC1S = "etc1s"


TEXTURE_PATTERNS: Dict[TextureType, List[str]] = {
    TextureType.ALBEDO: [
        "_albedo", "_alb", "_diffuse", "_diff", "_basecolor", "_base",
        "_color", "_col", "_d", "_c",
    ],
    TextureType.NORMAL: ["_normal", "_norm", "_nrm", "_n"],
    TextureType.ROUGHNESS: ["_roughness", "_rough", "_r"],
    TextureType.GLOSS: ["_glossiness", "_gloss", "_g"],
    TextureType.METALLIC: ["_metallic", "_metalness", "_metal", "_met", "_m"],
    TextureType.AMBIENT_OCCLUSION: [
        "_ambientocclusion", "_occlusion", "_ambient", "_ao",
    ],
    TextureType.EMISSIVE: ["_emissive", "_emission", "_emit", "_glow"],
    TextureType.HEIGHT: ["_height", "_displacement", "_disp", "_bump", "_h"],
}

# Types whose data is stored with an sRGB transfer function.
SRGB_TEXTURE_TYPES = ("albedo", "emissive")


@dataclass
class FilterProfile:
    """Mip generation settings for one texture type."""

    texture_type: str = "generic"
    filter: str = "kaiser"
    min_mip_size: int = 1
    include_last_level: bool = True
    apply_gamma_correction: bool = False
    gamma: float = 2.2
    blur_radius: float = 0.0
    normalize_normals: bool = False
    is_gloss: bool = False


def default_profile(texture_type: TextureType) -> FilterProfile:
    """Return the built-in filter profile for a texture type."""
    tex = TextureType(texture_type)
    profile = FilterProfile(texture_type=tex.value)
    if tex in (TextureType.ALBEDO, TextureType.EMISSIVE):
        profile.apply_gamma_correction = True
    elif tex == TextureType.NORMAL:
        profile.normalize_normals = True
    elif tex == TextureType.METALLIC:
        profile.filter = FilterType.BOX.value
    elif tex == TextureType.GLOSS:
        profile.is_gloss = True
    return profile


@dataclass
class MipmapConfig:
    """Store settings shared by every filter profile."""

    min_mip_size: int = 1
    include_last_level: bool = True
    blur_radius: float = 0.0
    gamma: float = 2.2
    # texture type -> filter name, e.g. {"roughness": "min"}
    filter_overrides: Dict[str, str] = field(default_factory=dict)
    # Keep the per-level PNGs handed to toktx after a successful run.
    save_mipmaps: bool = False

    def profile_for(self, texture_type: TextureType) -> FilterProfile:
        """Build the effective profile for a texture type."""
        tex = TextureType(texture_type)
        profile = default_profile(tex)
        profile.min_mip_size = self.min_mip_size
        profile.include_last_level = self.include_last_level
        profile.blur_radius = self.blur_radius
        profile.gamma = self.gamma
        override = self.filter_overrides.get(tex.value)
        if override:
            profile.filter = override
        return profile


@dataclass
class ToksvigSettings:
    """Store Toksvig specular anti-aliasing settings for roughness/gloss mips."""

    enabled: bool = False
    composite_power: float = 1.0
    min_corrected_level: int = 0
    calculation_mode: str = "classic"
    smooth_variance: bool = True
    energy_preserving: bool = False
    variance_threshold: float = 0.002
    normal_map_path: str = ""

    def validation_errors(self) -> List[str]:
        """Return human-readable problems with these settings."""
        errors = []
        if not (0.5 <= self.composite_power <= 8.0):
            errors.append("toksvig.composite_power must be in [0.5, 8.0]")
        if self.min_corrected_level < 0:
            errors.append("toksvig.min_corrected_level must be >= 0")
        if not (0.0 <= self.variance_threshold <= 1.0):
            errors.append("toksvig.variance_threshold must be in [0, 1]")
        if self.calculation_mode not in {m.value for m in ToksvigMode}:
            errors.append(
                f"toksvig.calculation_mode must be one of "
                f"{sorted(m.value for m in ToksvigMode)}, "
                f"got '{self.calculation_mode}'"
            )
        return errors


@dataclass
class AOSettings:
    """Store ambient-occlusion mip correction settings."""

    mode: str = "biased_darkening"
    bias: float = 0.5
    percentile: float = 10.0
    start_level: int = 1


@dataclass
class HistogramSettings:
    """Store percentile-normalization settings."""

    mode: str = "off"
    quality: str = "high_quality"
    channel_mode: str = "per_channel_rgb"
    percentile_low: float = 5.0
    percentile_high: float = 95.0
    knee_width: float = 0.02
    tail_threshold: float = 0.005
    min_range_threshold: float = 0.01

    @classmethod
    def high_quality(cls) -> "HistogramSettings":
        """Percentile 5/95 with a linear (kneeless) transform."""
        return cls(
            mode=HistogramMode.PERCENTILE.value,
            quality=HistogramQuality.HIGH_QUALITY.value,
            channel_mode=HistogramChannelMode.PER_CHANNEL_RGB.value,
            percentile_low=5.0,
            percentile_high=95.0,
            knee_width=0.0,
        )

    @classmethod
    def fast(cls) -> "HistogramSettings":
        """Percentile 10/90 with a linear (kneeless) transform."""
        return cls(
            mode=HistogramMode.PERCENTILE.value,
            quality=HistogramQuality.FAST.value,
            channel_mode=HistogramChannelMode.PER_CHANNEL_RGB.value,
            percentile_low=10.0,
            percentile_high=90.0,
            knee_width=0.0,
        )


@dataclass
class CompressionConfig:
    """Store settings for the external toktx compressor."""

    enabled: bool = True
    tool_path: str = ""
    tool_timeout_seconds: int = 120
    encoding: str = "uastc"
    uastc_quality: int = 2
    etc1s_compression_level: int = 3
    write_normal_layout: bool = True


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master pipeline configuration."""

    config_version: int = 1
    input_dir: str = "./textures"
    output_dir: str = "./textures_ktx2"
    intermediate_dir: str = "./textures_ktx2/intermediate"

    supported_formats: List[str] = field(default_factory=lambda: [
        ".png", ".jpg", ".jpeg", ".tga", ".bmp", ".tiff", ".tif",
    ])
    max_workers: int = 4
    log_level: str = "INFO"
    dry_run: bool = False
    keep_intermediates: bool = False
    max_image_pixels: int = 67108864  # 8192x8192
    metadata_key: str = "pc.meta"

    mipmap: MipmapConfig = field(default_factory=MipmapConfig)
    toksvig: ToksvigSettings = field(default_factory=ToksvigSettings)
    ao: AOSettings = field(default_factory=AOSettings)
    histogram: HistogramSettings = field(default_factory=HistogramSettings)
    compression: CompressionConfig = field(default_factory=CompressionConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load pipeline configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        hist_data = data.get("histogram")
        if isinstance(hist_data, dict) and hist_data.get("quality") in {
            q.value for q in HistogramQuality
        }:
            # The named preset fills every histogram key the file leaves out.
            config.histogram = histogram_settings_for_quality(hist_data["quality"])
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write pipeline configuration to a YAML file."""
        data = dataclasses.asdict(self)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )
        if self.max_workers < 1:
            errors.append("max_workers must be >= 1")
        if self.max_workers > 128:
            errors.append("max_workers must be <= 128")
        if self.max_image_pixels < 0:
            errors.append("max_image_pixels must be >= 0 (0 = unlimited)")
        if not self.supported_formats:
            errors.append(
                "supported_formats must not be empty, no files would be processed"
            )
        if not self.metadata_key or not self.metadata_key.isascii():
            errors.append("metadata_key must be a non-empty ASCII string")
        elif "\x00" in self.metadata_key:
            errors.append("metadata_key must not contain NUL bytes")

        # Mipmaps
        if self.mipmap.min_mip_size < 1:
            errors.append("mipmap.min_mip_size must be >= 1")
        if self.mipmap.blur_radius < 0:
            errors.append("mipmap.blur_radius must be >= 0")
        if self.mipmap.gamma <= 0:
            errors.append("mipmap.gamma must be > 0")
        valid_types = {t.value for t in TextureType}
        valid_filters = {f.value for f in FilterType}
        for tex_name, filter_name in self.mipmap.filter_overrides.items():
            if tex_name not in valid_types:
                errors.append(
                    f"mipmap.filter_overrides: unknown texture type '{tex_name}'"
                )
            if filter_name not in valid_filters:
                errors.append(
                    f"mipmap.filter_overrides['{tex_name}'] must be one of "
                    f"{sorted(valid_filters)}, got '{filter_name}'"
                )

        # Toksvig
        errors.extend(self.toksvig.validation_errors())
        if self.toksvig.normal_map_path and not os.path.isfile(self.toksvig.normal_map_path):
            logger.warning(
                "toksvig.normal_map_path '%s' does not exist; automatic "
                "normal map lookup will be used instead.",
                self.toksvig.normal_map_path,
            )

        # AO
        if self.ao.mode not in {m.value for m in AOMode}:
            errors.append(
                f"ao.mode must be one of {sorted(m.value for m in AOMode)}, "
                f"got '{self.ao.mode}'"
            )
        if not (0.0 <= self.ao.bias <= 1.0):
            errors.append("ao.bias must be in [0, 1]")
        if not (0.0 <= self.ao.percentile <= 100.0):
            errors.append("ao.percentile must be in [0, 100]")
        if self.ao.start_level < 0:
            errors.append("ao.start_level must be >= 0")

        # Histogram
        hist = self.histogram
        if hist.mode not in {m.value for m in HistogramMode}:
            errors.append(
                f"histogram.mode must be one of "
                f"{sorted(m.value for m in HistogramMode)}, got '{hist.mode}'"
            )
        if hist.quality not in {q.value for q in HistogramQuality}:
            errors.append(
                f"histogram.quality must be one of "
                f"{sorted(q.value for q in HistogramQuality)}, got '{hist.quality}'"
            )
        if hist.channel_mode not in {c.value for c in HistogramChannelMode}:
            errors.append(
                f"histogram.channel_mode must be one of "
                f"{sorted(c.value for c in HistogramChannelMode)}, "
                f"got '{hist.channel_mode}'"
            )
        if not (0.0 <= hist.percentile_low < hist.percentile_high <= 100.0):
            errors.append(
                "histogram percentiles must satisfy "
                "0 <= percentile_low < percentile_high <= 100"
            )
        if not (0.0 <= hist.knee_width <= 0.5):
            errors.append("histogram.knee_width must be in [0, 0.5]")
        if not (0.0 <= hist.tail_threshold <= 1.0):
            errors.append("histogram.tail_threshold must be in [0, 1]")
        if not (0.0 <= hist.min_range_threshold < 1.0):
            errors.append("histogram.min_range_threshold must be in [0, 1)")

        # Compression
        comp = self.compression
        if comp.encoding not in {e.value for e in CompressionEncoding}:
            errors.append(
                f"compression.encoding must be one of "
                f"{sorted(e.value for e in CompressionEncoding)}, "
                f"got '{comp.encoding}'"
            )
        if comp.tool_timeout_seconds < 1:
            errors.append("compression.tool_timeout_seconds must be >= 1")
        if not (0 <= comp.uastc_quality <= 4):
            errors.append("compression.uastc_quality must be in [0, 4]")
        if not (0 <= comp.etc1s_compression_level <= 5):
            errors.append("compression.etc1s_compression_level must be in [0, 5]")
        if comp.tool_path and not os.path.exists(comp.tool_path):
            logger.warning(
                "compression.tool_path '%s' does not exist; falling back to PATH lookup.",
                comp.tool_path,
            )

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    for key, value in data.items():
        full_key = f"{_path}{key}"
        if not hasattr(obj, key):
            logger.warning(f"Unknown config key ignored: '{full_key}'")
            continue
        field_val = getattr(obj, key)
        if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
            _merge_dict_to_dataclass(field_val, value, f"{full_key}.")
            continue
        # Reject None for fields with non-None defaults
        if value is None and field_val is not None:
            logger.warning(
                f"Config key '{full_key}' is null but field default is "
                f"{type(field_val).__name__}. Using default value."
            )
            continue
        expected_type = type(field_val)
        # Check type compatibility (allow int->float and float->int promotion)
        if (field_val is not None
                and not isinstance(value, expected_type)
                and not (expected_type is float
                         and isinstance(value, int)
                         and not isinstance(value, bool))
                and not (expected_type is int
                         and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                f"Config type mismatch for '{full_key}': "
                f"expected {expected_type.__name__}, "
                f"got {type(value).__name__} ({value!r}). "
                f"Using default value."
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        elif expected_type is float and isinstance(value, int):
            value = float(value)
        # Merge dicts instead of replacing (preserves defaults)
        if isinstance(field_val, dict) and isinstance(value, dict):
            field_val.update(value)
        else:
            setattr(obj, key, value)


def histogram_settings_for_quality(quality: str, mode: Optional[str] = None) -> HistogramSettings:
    """Return the preset for a quality name, optionally overriding the mode."""
    preset = (
        HistogramSettings.fast()
        if HistogramQuality(quality) == HistogramQuality.FAST
        else HistogramSettings.high_quality()
    )
    if mode is not None:
        preset.mode = HistogramMode(mode).value
    return preset
