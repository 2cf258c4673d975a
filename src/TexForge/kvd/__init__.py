"""KTX2 key/value metadata: TLV codec and container patching."""

from .tlv import (
    TLVType,
    NormalLayout,
    HistogramQuantization,
    MetadataBlock,
    TLVWriter,
    DecodedHistogram,
    DecodedMetadata,
    read_blocks,
    decode_histogram,
    decode_metadata,
    encode_metadata,
)
from .ktx2 import (
    METADATA_KEY,
    ContainerFormatError,
    ContainerLayout,
    PatchIOError,
    PatchResult,
    build_kv_entry,
    parse_layout,
    patch_file,
    read_key_values,
    read_metadata,
    splice_metadata,
)

__all__ = [
    "TLVType", "NormalLayout", "HistogramQuantization", "MetadataBlock",
    "TLVWriter", "DecodedHistogram", "DecodedMetadata",
    "read_blocks", "decode_histogram", "decode_metadata", "encode_metadata",
    "METADATA_KEY", "ContainerFormatError", "ContainerLayout", "PatchIOError",
    "PatchResult", "build_kv_entry", "parse_layout", "patch_file",
    "read_key_values", "read_metadata", "splice_metadata",
]
