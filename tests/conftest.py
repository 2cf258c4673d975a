"""Shared test fixtures."""

import shutil
import struct
import tempfile

import numpy as np
import pytest

from TexForge.config import PipelineConfig
from TexForge.core import save_image


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


def save_test_png(path, width=64, height=64, channels=3, seed=0):
    """Create a random test PNG image."""
    rng = np.random.default_rng(seed)
    arr = rng.random((height, width, channels)).astype(np.float32)
    save_image(arr, path)
    return arr


KTX2_ID = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A])


def build_ktx2(levels=3, width=16, height=16, dfd=b"\x2c\x00\x00\x00" + b"\x11" * 40,
               kv_entries=(), sgd=b"", level_align=16):
    """Assemble a minimal KTX2 container with struct.

    Layout: header, level index, DFD, KVD, SGD, then level payloads from the
    smallest level to the largest, each aligned to ``level_align``. Level i
    is filled with byte ``0xA0 + i``.
    """
    count = max(1, levels)
    index_end = 80 + 24 * count
    dfd_offset = index_end
    kvd = b""
    for key, value in kv_entries:
        body = key.encode() + b"\x00" + value
        kvd += struct.pack("<I", len(body)) + body + b"\x00" * ((4 - len(body) % 4) % 4)
    kvd_offset = dfd_offset + len(dfd) if kvd else 0
    pos = dfd_offset + len(dfd) + len(kvd)
    sgd_offset = 0
    if sgd:
        pos += (8 - pos % 8) % 8
        sgd_offset = pos
        pos += len(sgd)

    body_parts = {}
    offsets = [0] * count
    lengths = [0] * count
    for i in reversed(range(count)):
        pos += (level_align - pos % level_align) % level_align
        size = max(4, (width >> i) * (height >> i))
        offsets[i] = pos
        lengths[i] = size
        body_parts[pos] = bytes([0xA0 + i]) * size
        pos += size

    header = bytearray(KTX2_ID)
    header += struct.pack(
        "<13I", 0, 1, width, height, 0, 0, 1, levels, 0,
        dfd_offset, len(dfd), kvd_offset, len(kvd),
    )
    header += struct.pack("<2Q", sgd_offset, len(sgd))
    for i in range(count):
        header += struct.pack("<3Q", offsets[i], lengths[i], lengths[i])

    out = bytearray(pos)
    out[:len(header)] = header
    out[dfd_offset:dfd_offset + len(dfd)] = dfd
    if kvd:
        out[kvd_offset:kvd_offset + len(kvd)] = kvd
    if sgd:
        out[sgd_offset:sgd_offset + len(sgd)] = sgd
    for start, payload in body_parts.items():
        out[start:start + len(payload)] = payload
    return bytes(out)
