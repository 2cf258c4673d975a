"""Insert key/value metadata into an existing KTX2 container.

The container is patched in memory: the new entry is spliced in after the
existing key/value data and every section offset at or past the insertion
point is moved by the inserted size. Level payloads are never re-encoded.
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..core import write_bytes_atomic

logger = logging.getLogger("texture_pipeline.ktx2")

KTX2_IDENTIFIER = bytes(
    [0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A]
)
METADATA_KEY = "pc.meta"

HEADER_SIZE = 80
LEVEL_INDEX_ENTRY_SIZE = 24
# Inserted bytes are rounded up so sections behind the insertion keep
# their alignment (8 for supercompression data, 16 for UASTC levels).
SHIFT_ALIGNMENT = 16

_HEADER_U32 = struct.Struct("<13I")
_HEADER_U64 = struct.Struct("<2Q")
_LEVEL = struct.Struct("<3Q")


class ContainerFormatError(ValueError):
    """Raised when bytes are not a well-formed KTX2 container."""


class PatchIOError(OSError):
    """Raised when a patched container cannot be written."""


@dataclass(frozen=True)
class LevelIndexEntry:
    byte_offset: int
    byte_length: int
    uncompressed_byte_length: int


@dataclass(frozen=True)
class ContainerLayout:
    """Parsed KTX2 header and level index."""

    vk_format: int
    type_size: int
    pixel_width: int
    pixel_height: int
    pixel_depth: int
    layer_count: int
    face_count: int
    level_count: int
    supercompression_scheme: int
    dfd_byte_offset: int
    dfd_byte_length: int
    kvd_byte_offset: int
    kvd_byte_length: int
    sgd_byte_offset: int
    sgd_byte_length: int
    levels: Tuple[LevelIndexEntry, ...] = field(default_factory=tuple)

    @property
    def level_index_end(self) -> int:
        return HEADER_SIZE + LEVEL_INDEX_ENTRY_SIZE * len(self.levels)

    def pack_header(self) -> bytes:
        """Serialize the 80-byte header plus level index."""
        out = bytearray(KTX2_IDENTIFIER)
        out += _HEADER_U32.pack(
            self.vk_format, self.type_size, self.pixel_width, self.pixel_height,
            self.pixel_depth, self.layer_count, self.face_count, self.level_count,
            self.supercompression_scheme, self.dfd_byte_offset, self.dfd_byte_length,
            self.kvd_byte_offset, self.kvd_byte_length,
        )
        out += _HEADER_U64.pack(self.sgd_byte_offset, self.sgd_byte_length)
        for lvl in self.levels:
            out += _LEVEL.pack(lvl.byte_offset, lvl.byte_length, lvl.uncompressed_byte_length)
        return bytes(out)


@dataclass(frozen=True)
class PatchResult:
    """Where and how much was inserted.

    ``entry_length`` is the 4-aligned key/value entry counted in
    ``kvdByteLength``. ``inserted_length`` is the shift applied to every
    section behind the insertion point: the entry padded to
    ``SHIFT_ALIGNMENT`` (16) bytes, so it can exceed the 4-byte minimum by
    up to 12 zero bytes.
    """

    key: str
    insert_offset: int
    entry_length: int
    inserted_length: int
    levels_shifted: int
    output_path: Optional[str] = None


def _check_range(name: str, offset: int, length: int, size: int) -> None:
    if length and offset + length > size:
        raise ContainerFormatError(
            f"{name} range [{offset}, {offset + length}) exceeds file size {size}"
        )


def _check_after_index(name: str, offset: int, length: int, index_end: int) -> None:
    if length and offset < index_end:
        raise ContainerFormatError(
            f"{name} at offset {offset} overlaps the header/level index (ends at {index_end})"
        )


def parse_layout(data: bytes) -> ContainerLayout:
    """Parse and validate the header and level index of ``data``."""
    size = len(data)
    if size < HEADER_SIZE:
        raise ContainerFormatError(f"File too small for a KTX2 header ({size} bytes)")
    if bytes(data[:12]) != KTX2_IDENTIFIER:
        raise ContainerFormatError("Missing KTX2 identifier")

    fields = _HEADER_U32.unpack_from(data, 12)
    sgd_offset, sgd_length = _HEADER_U64.unpack_from(data, 64)
    (vk_format, type_size, width, height, depth, layers, faces, level_count,
     scheme, dfd_offset, dfd_length, kvd_offset, kvd_length) = fields

    if faces not in (1, 6):
        raise ContainerFormatError(f"Invalid face count {faces}")
    entries = max(1, level_count)
    index_end = HEADER_SIZE + LEVEL_INDEX_ENTRY_SIZE * entries
    if index_end > size:
        raise ContainerFormatError(
            f"Level index ({entries} entries) runs past end of file"
        )

    levels = []
    for i in range(entries):
        offset, length, uncompressed = _LEVEL.unpack_from(
            data, HEADER_SIZE + LEVEL_INDEX_ENTRY_SIZE * i
        )
        _check_range(f"Level {i}", offset, length, size)
        _check_after_index(f"Level {i}", offset, length, index_end)
        levels.append(LevelIndexEntry(offset, length, uncompressed))

    for name, offset, length in (("DFD", dfd_offset, dfd_length),
                                 ("KVD", kvd_offset, kvd_length),
                                 ("SGD", sgd_offset, sgd_length)):
        _check_range(name, offset, length, size)
        _check_after_index(name, offset, length, index_end)
    # An empty KVD with an offset still marks the insertion point.
    if kvd_offset and kvd_offset < index_end:
        raise ContainerFormatError(
            f"KVD offset {kvd_offset} lies inside the header/level index (ends at {index_end})"
        )

    return ContainerLayout(
        vk_format, type_size, width, height, depth, layers, faces, level_count,
        scheme, dfd_offset, dfd_length, kvd_offset, kvd_length,
        sgd_offset, sgd_length, tuple(levels),
    )


def build_kv_entry(key: str, value: bytes) -> bytes:
    """Encode one key/value entry: u32 size, key, NUL, value, pad to 4."""
    key_bytes = key.encode("utf-8")
    if not key_bytes or b"\x00" in key_bytes:
        raise ValueError(f"Invalid KTX2 key: {key!r}")
    body = key_bytes + b"\x00" + bytes(value)
    pad = (4 - len(body) % 4) % 4
    return struct.pack("<I", len(body)) + body + b"\x00" * pad


def read_key_values(data: bytes, layout: Optional[ContainerLayout] = None) -> Dict[str, bytes]:
    """Return all key/value entries of a container, in file order."""
    layout = layout or parse_layout(data)
    entries: Dict[str, bytes] = {}
    pos = layout.kvd_byte_offset
    end = pos + layout.kvd_byte_length
    while pos + 4 <= end:
        (length,) = struct.unpack_from("<I", data, pos)
        start = pos + 4
        if start + length > end:
            raise ContainerFormatError(f"Key/value entry at {pos} runs past KVD end")
        body = bytes(data[start:start + length])
        nul = body.find(b"\x00")
        if nul < 0:
            raise ContainerFormatError(f"Key/value entry at {pos} has no key terminator")
        entries[body[:nul].decode("utf-8", errors="replace")] = body[nul + 1:]
        pos = start + length + (4 - length % 4) % 4
    return entries


def _insertion_offset(layout: ContainerLayout) -> int:
    if layout.kvd_byte_length:
        return layout.kvd_byte_offset + layout.kvd_byte_length
    if layout.kvd_byte_offset:
        return layout.kvd_byte_offset
    # No KVD at all: it belongs right behind the DFD.
    if layout.dfd_byte_length:
        return layout.dfd_byte_offset + layout.dfd_byte_length
    return layout.level_index_end


def splice_metadata(data: bytes, key: str, value: bytes) -> Tuple[bytes, PatchResult]:
    """Return a new container with ``key`` added and a PatchResult.

    Level, DFD and SGD offsets behind the insertion point move by the entry
    length rounded up to 16 bytes, not just to 4, so UASTC levels stay
    16-aligned. The extra zero bytes sit after the KVD and are not counted
    in ``kvdByteLength``.

    Raises ContainerFormatError for malformed input or a duplicate key.
    """
    layout = parse_layout(data)
    if key in read_key_values(data, layout):
        raise ContainerFormatError(f"Key '{key}' already present")

    entry = build_kv_entry(key, value)
    insert_at = _insertion_offset(layout)
    pad = (SHIFT_ALIGNMENT - len(entry) % SHIFT_ALIGNMENT) % SHIFT_ALIGNMENT
    inserted = entry + b"\x00" * pad
    shift = len(inserted)

    def moved(offset: int, length: int) -> int:
        return offset + shift if length and offset >= insert_at else offset

    levels = tuple(
        LevelIndexEntry(moved(lvl.byte_offset, lvl.byte_length), lvl.byte_length,
                        lvl.uncompressed_byte_length)
        for lvl in layout.levels
    )
    levels_shifted = sum(
        1 for old, new in zip(layout.levels, levels) if old.byte_offset != new.byte_offset
    )
    patched = ContainerLayout(
        layout.vk_format, layout.type_size, layout.pixel_width, layout.pixel_height,
        layout.pixel_depth, layout.layer_count, layout.face_count, layout.level_count,
        layout.supercompression_scheme,
        moved(layout.dfd_byte_offset, layout.dfd_byte_length), layout.dfd_byte_length,
        layout.kvd_byte_offset if layout.kvd_byte_length else insert_at,
        layout.kvd_byte_length + len(entry),
        moved(layout.sgd_byte_offset, layout.sgd_byte_length), layout.sgd_byte_length,
        levels,
    )

    header = patched.pack_header()
    out = header + bytes(data[len(header):insert_at]) + inserted + bytes(data[insert_at:])
    logger.debug(
        "Spliced '%s' (%d bytes) at offset %d, shifted %d levels by %d",
        key, len(value), insert_at, levels_shifted, shift,
    )
    return out, PatchResult(key, insert_at, len(entry), shift, levels_shifted)


def patch_file(path: str, key: str, value: bytes,
               output_path: Optional[str] = None) -> PatchResult:
    """Add ``key`` to the container at ``path`` (or write to ``output_path``).

    The target is replaced atomically; on failure it is left untouched.
    """
    target = output_path or path
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise PatchIOError(f"Cannot read {path}: {exc}") from exc

    patched, result = splice_metadata(data, key, value)
    try:
        write_bytes_atomic(target, patched)
    except OSError as exc:
        raise PatchIOError(f"Cannot write patched container {target}: {exc}") from exc

    logger.info(
        "Injected '%s' (%d bytes) into %s, file size %d -> %d",
        key, len(value), target, len(data), len(patched),
    )
    return PatchResult(
        result.key, result.insert_offset, result.entry_length,
        result.inserted_length, result.levels_shifted, target,
    )


def read_metadata(path: str, key: str = METADATA_KEY) -> Optional[bytes]:
    """Return the value stored under ``key`` in the container at ``path``."""
    with open(path, "rb") as f:
        data = f.read()
    return read_key_values(data).get(key)


def level_payloads(data: bytes) -> List[bytes]:
    """Return the raw bytes of every level, in index order."""
    layout = parse_layout(data)
    return [bytes(data[lvl.byte_offset:lvl.byte_offset + lvl.byte_length])
            for lvl in layout.levels]
