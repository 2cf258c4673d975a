"""Binary type-length-value blocks carried in the KTX2 ``pc.meta`` entry.

Block layout: ``type u8, flags u8, length u16 LE, payload, zero pad to 4``.
Histogram blocks hold the GPU-ready (inverted) coefficients so a shader
recovers the original value as ``v * scale + offset``.
"""

import enum
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..config import HistogramChannelMode, HistogramMode, HistogramSettings

logger = logging.getLogger("texture_pipeline.tlv")

TLV_VERSION = 1
_HEADER = struct.Struct("<BBH")
_HALF_MAX = 65504.0


class TLVType(enum.IntEnum):
    """Block type tags."""

    HIST_SCALAR = 0x01
    HIST_RGB = 0x02
    HIST_PER_CHANNEL_3 = 0x03
    HIST_PER_CHANNEL_4 = 0x04
    HIST_PARAMS = 0x10
    NORMAL_LAYOUT = 0x20
    CHANNEL_SWIZZLE = 0x21


class NormalLayout(enum.IntEnum):
    """How normal components are stored in the compressed texture."""

    NONE = 0
    RG = 1
    GA = 2
    RGB = 3
    AG = 4
    RGBxAy = 5


class HistogramQuantization(enum.IntEnum):
    """Encoding of (scale, offset) values in histogram payloads."""

    HALF16 = 0
    PACKED_UINT32 = 1
    FLOAT32 = 2


HISTOGRAM_TYPES = (
    TLVType.HIST_SCALAR, TLVType.HIST_RGB,
    TLVType.HIST_PER_CHANNEL_3, TLVType.HIST_PER_CHANNEL_4,
)
# Most specific first.
_HISTOGRAM_PREFERENCE = (
    TLVType.HIST_PER_CHANNEL_4, TLVType.HIST_PER_CHANNEL_3,
    TLVType.HIST_RGB, TLVType.HIST_SCALAR,
)
_CHANNEL_COUNTS = {
    TLVType.HIST_SCALAR: 1,
    TLVType.HIST_RGB: 1,
    TLVType.HIST_PER_CHANNEL_3: 3,
    TLVType.HIST_PER_CHANNEL_4: 4,
}
_TYPE_FOR_CHANNEL_MODE = {
    HistogramChannelMode.AVERAGE_LUMINANCE: TLVType.HIST_SCALAR,
    HistogramChannelMode.RGB_SHARED: TLVType.HIST_RGB,
    HistogramChannelMode.PER_CHANNEL_RGB: TLVType.HIST_PER_CHANNEL_3,
    HistogramChannelMode.PER_CHANNEL_RGBA: TLVType.HIST_PER_CHANNEL_4,
}


def _pad4(n: int) -> int:
    return (4 - n % 4) % 4


def histogram_mode_code(mode) -> int:
    """Stable integer for a histogram mode (off=0, percentile=1, knee=2)."""
    return list(HistogramMode).index(HistogramMode(mode))


def _half(value: float) -> bytes:
    return struct.pack("<e", max(-_HALF_MAX, min(_HALF_MAX, float(value))))


def _unorm16(value: float) -> int:
    return int(round(max(0.0, min(1.0, float(value))) * 65535.0))


@dataclass(frozen=True)
class MetadataBlock:
    """One decoded or pending TLV block."""

    type_tag: int
    flags: int
    payload: bytes = b""

    @property
    def version(self) -> int:
        return (self.flags >> 4) & 0x0F

    @property
    def quantization(self) -> int:
        return (self.flags >> 2) & 0x03

    def encode(self) -> bytes:
        if len(self.payload) > 0xFFFF:
            raise ValueError(f"TLV payload too large: {len(self.payload)} bytes")
        out = _HEADER.pack(self.type_tag & 0xFF, self.flags & 0xFF, len(self.payload))
        return out + self.payload + b"\x00" * _pad4(len(self.payload))


class TLVWriter:
    """Accumulate TLV blocks into one byte string."""

    def __init__(self):
        self._blocks: List[MetadataBlock] = []

    def __len__(self) -> int:
        return len(self._blocks)

    @property
    def blocks(self) -> Tuple[MetadataBlock, ...]:
        return tuple(self._blocks)

    def write_block(self, type_tag: int, flags: int, payload: bytes = b"") -> MetadataBlock:
        block = MetadataBlock(int(type_tag), int(flags), bytes(payload))
        block.encode()
        self._blocks.append(block)
        return block

    def write_histogram(self, result, quantization=HistogramQuantization.HALF16) -> bool:
        """Write the coefficients of a (storage-inverted) histogram result.

        Results with mode off or ``success == False`` are skipped; returns
        whether a block was written.
        """
        if not result.success or HistogramMode(result.mode) == HistogramMode.OFF:
            logger.debug("Histogram block skipped (mode=%s, success=%s)",
                         result.mode, result.success)
            return False
        tlv_type = _TYPE_FOR_CHANNEL_MODE[HistogramChannelMode(result.channel_mode)]
        count = _CHANNEL_COUNTS[tlv_type]
        scales, offsets = list(result.scale), list(result.offset)
        if len(scales) != count or len(offsets) != count:
            raise ValueError(
                f"{tlv_type.name} needs {count} coefficient pairs, got {len(scales)}"
            )

        quant = HistogramQuantization(quantization)
        if quant == HistogramQuantization.HALF16:
            payload = b"".join(_half(v) for v in scales + offsets)
        elif quant == HistogramQuantization.FLOAT32:
            payload = struct.pack(f"<{2 * count}f", *(scales + offsets))
        else:
            payload = b"".join(
                struct.pack("<I", _unorm16(s) | (_unorm16(o) << 16))
                for s, o in zip(scales, offsets)
            )
        flags = (TLV_VERSION << 4) | (int(quant) << 2)
        self.write_block(tlv_type, flags, payload)
        return True

    def write_histogram_params(self, settings: HistogramSettings) -> None:
        """Record the analysis parameters (flags = mode)."""
        payload = (_half(settings.percentile_low) + _half(settings.percentile_high)
                   + _half(settings.knee_width))
        self.write_block(TLVType.HIST_PARAMS, histogram_mode_code(settings.mode), payload)

    def write_normal_layout(self, layout: NormalLayout) -> None:
        self.write_block(TLVType.NORMAL_LAYOUT, int(NormalLayout(layout)))

    def write_channel_swizzle(self, swizzle: Sequence[int]) -> None:
        """Four channel-index bytes (0-3 = RGBA, 4 = zero, 5 = one, 6-9 = inverted)."""
        if len(swizzle) != 4 or any(not 0 <= int(s) <= 9 for s in swizzle):
            raise ValueError(f"Swizzle must be four indices in [0, 9], got {list(swizzle)}")
        self.write_block(TLVType.CHANNEL_SWIZZLE, 0, bytes(int(s) for s in swizzle))

    def to_bytes(self) -> bytes:
        return b"".join(block.encode() for block in self._blocks)


def read_blocks(data: bytes) -> List[MetadataBlock]:
    """Walk ``data`` block by block.

    A truncated trailing block ends the walk with a warning; the blocks
    read so far are returned.
    """
    blocks = []
    pos = 0
    size = len(data)
    while pos < size:
        if size - pos < _HEADER.size:
            logger.warning("Truncated TLV header at offset %d (%d bytes left)", pos, size - pos)
            break
        type_tag, flags, length = _HEADER.unpack_from(data, pos)
        start = pos + _HEADER.size
        if start + length > size:
            logger.warning(
                "Truncated TLV block 0x%02X at offset %d: needs %d bytes, %d left",
                type_tag, pos, length, size - start,
            )
            break
        blocks.append(MetadataBlock(type_tag, flags, bytes(data[start:start + length])))
        pos = start + length + _pad4(length)
    return blocks


@dataclass(frozen=True)
class DecodedHistogram:
    """GPU-ready coefficients recovered from a histogram block."""

    type_tag: int
    scale: Tuple[float, ...]
    offset: Tuple[float, ...]
    quantization: int = HistogramQuantization.HALF16
    legacy: bool = False


@dataclass(frozen=True)
class HistogramParams:
    mode: int
    percentile_low: float
    percentile_high: float
    knee_width: float


@dataclass(frozen=True)
class DecodedMetadata:
    """Everything understood in one ``pc.meta`` value."""

    histogram: Optional[DecodedHistogram] = None
    params: Optional[HistogramParams] = None
    normal_layout: Optional[NormalLayout] = None
    swizzle: Optional[Tuple[int, ...]] = None
    unknown_types: Tuple[int, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        out = {"unknown_types": list(self.unknown_types)}
        if self.histogram is not None:
            out["histogram"] = {
                "type": TLVType(self.histogram.type_tag).name,
                "scale": list(self.histogram.scale),
                "offset": list(self.histogram.offset),
                "quantization": HistogramQuantization(self.histogram.quantization).name,
                "legacy": self.histogram.legacy,
            }
        if self.params is not None:
            out["params"] = {
                "mode": list(HistogramMode)[self.params.mode].value
                if 0 <= self.params.mode < len(HistogramMode) else self.params.mode,
                "percentile_low": self.params.percentile_low,
                "percentile_high": self.params.percentile_high,
                "knee_width": self.params.knee_width,
            }
        if self.normal_layout is not None:
            out["normal_layout"] = self.normal_layout.name
        if self.swizzle is not None:
            out["swizzle"] = list(self.swizzle)
        return out


def _gpu_ready_pair(scale: float, offset: float) -> Tuple[float, float, bool]:
    # Older writers stored forward coefficients; a forward scale always
    # exceeds 1 while an inverted one never does.
    if scale > 1.0:
        return 1.0 / scale, -offset / scale, True
    return scale, offset, False


def decode_histogram(block: MetadataBlock) -> DecodedHistogram:
    """Decode a histogram block into GPU-ready coefficients.

    Raises ValueError for non-histogram blocks or short payloads.
    """
    try:
        tlv_type = TLVType(block.type_tag)
    except ValueError:
        raise ValueError(f"Not a histogram block: 0x{block.type_tag:02X}") from None
    if tlv_type not in HISTOGRAM_TYPES:
        raise ValueError(f"Not a histogram block: {tlv_type.name}")
    count = _CHANNEL_COUNTS[tlv_type]
    try:
        quant = HistogramQuantization(block.quantization)
    except ValueError:
        raise ValueError(f"Unknown histogram quantization {block.quantization}") from None

    payload = block.payload
    if quant == HistogramQuantization.HALF16:
        need = 4 * count
        values = struct.unpack_from(f"<{2 * count}e", payload) if len(payload) >= need else None
    elif quant == HistogramQuantization.FLOAT32:
        need = 8 * count
        values = struct.unpack_from(f"<{2 * count}f", payload) if len(payload) >= need else None
    else:
        need = 4 * count
        values = None
        if len(payload) >= need:
            packed = struct.unpack_from(f"<{count}I", payload)
            values = tuple((p & 0xFFFF) / 65535.0 for p in packed) + \
                tuple((p >> 16) / 65535.0 for p in packed)
    if values is None:
        raise ValueError(
            f"{tlv_type.name} payload is {len(payload)} bytes, expected {need}"
        )

    scales, offsets, legacy = [], [], False
    for s, o in zip(values[:count], values[count:]):
        s, o, was_legacy = _gpu_ready_pair(float(s), float(o))
        scales.append(s)
        offsets.append(o)
        legacy = legacy or was_legacy
    if legacy:
        logger.debug("%s block holds forward coefficients; inverted on read", tlv_type.name)
    return DecodedHistogram(int(tlv_type), tuple(scales), tuple(offsets), int(quant), legacy)


def decode_metadata(data: bytes) -> DecodedMetadata:
    """Decode every known block, preferring the most specific histogram."""
    blocks = read_blocks(data)
    by_type = {}
    unknown = []
    for block in blocks:
        if block.type_tag in TLVType._value2member_map_:
            by_type.setdefault(block.type_tag, block)
        else:
            unknown.append(block.type_tag)

    histogram = None
    for tlv_type in _HISTOGRAM_PREFERENCE:
        if tlv_type in by_type:
            histogram = decode_histogram(by_type[tlv_type])
            break

    params = None
    block = by_type.get(TLVType.HIST_PARAMS)
    if block is not None and len(block.payload) >= 6:
        low, high, knee = struct.unpack_from("<3e", block.payload)
        params = HistogramParams(block.flags & 0x0F, float(low), float(high), float(knee))

    layout = None
    block = by_type.get(TLVType.NORMAL_LAYOUT)
    if block is not None:
        value = block.flags & 0x07
        layout = NormalLayout(value) if value in NormalLayout._value2member_map_ else None

    swizzle = None
    block = by_type.get(TLVType.CHANNEL_SWIZZLE)
    if block is not None and len(block.payload) >= 4:
        swizzle = tuple(block.payload[:4])

    if unknown:
        logger.debug("Skipped unknown TLV types: %s", ", ".join(f"0x{t:02X}" for t in unknown))
    return DecodedMetadata(histogram, params, layout, swizzle, tuple(unknown))


def encode_metadata(stored_result=None, settings: Optional[HistogramSettings] = None,
                    normal_layout: Optional[NormalLayout] = None,
                    quantization=HistogramQuantization.HALF16) -> bytes:
    """Build the full ``pc.meta`` value for one texture.

    ``stored_result`` must already be inverted for storage.
    """
    writer = TLVWriter()
    if stored_result is not None and writer.write_histogram(stored_result, quantization):
        if settings is not None:
            writer.write_histogram_params(settings)
    if normal_layout is not None:
        writer.write_normal_layout(normal_layout)
    return writer.to_bytes()
