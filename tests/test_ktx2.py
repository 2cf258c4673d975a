"""Tests for KTX2 key/value splicing."""

import os
import struct
import unittest

import pytest

from conftest import build_ktx2
from TexForge.kvd import (
    ContainerFormatError, PatchIOError, build_kv_entry, parse_layout, patch_file,
    read_key_values, read_metadata, splice_metadata,
)
from TexForge.kvd.ktx2 import SHIFT_ALIGNMENT, level_payloads

VALUE = b"\x01\x10\x04\x00\x00\x3c\x00\x00"


class TestParseLayout(unittest.TestCase):
    def test_basic_fields(self):
        layout = parse_layout(build_ktx2(levels=3, width=16, height=8))
        self.assertEqual((layout.pixel_width, layout.pixel_height), (16, 8))
        self.assertEqual(len(layout.levels), 3)
        self.assertEqual(layout.dfd_byte_offset, 80 + 3 * 24)
        self.assertEqual(layout.kvd_byte_length, 0)
        self.assertEqual(layout.level_index_end, 152)

    def test_header_repacks_identically(self):
        data = build_ktx2(sgd=b"\x05" * 12)
        layout = parse_layout(data)
        header = layout.pack_header()
        self.assertEqual(header, data[:len(header)])

    def test_rejects_bad_identifier(self):
        data = bytearray(build_ktx2())
        data[1] = 0x00
        with self.assertRaises(ContainerFormatError):
            parse_layout(bytes(data))

    def test_rejects_short_file(self):
        with self.assertRaises(ContainerFormatError):
            parse_layout(build_ktx2()[:40])

    def test_rejects_bad_face_count(self):
        data = bytearray(build_ktx2())
        struct.pack_into("<I", data, 12 + 6 * 4, 3)
        with self.assertRaises(ContainerFormatError):
            parse_layout(bytes(data))

    def test_rejects_level_past_eof(self):
        data = build_ktx2()
        with self.assertRaises(ContainerFormatError):
            parse_layout(data[:-1])

    def test_rejects_empty_kvd_inside_header(self):
        data = bytearray(build_ktx2())
        struct.pack_into("<2I", data, 12 + 11 * 4, 20, 0)
        with self.assertRaises(ContainerFormatError):
            parse_layout(bytes(data))
        with self.assertRaises(ContainerFormatError):
            splice_metadata(bytes(data), "pc.meta", VALUE)

    def test_rejects_dfd_overlapping_level_index(self):
        data = bytearray(build_ktx2(levels=3))
        struct.pack_into("<I", data, 12 + 9 * 4, 100)
        with self.assertRaises(ContainerFormatError):
            parse_layout(bytes(data))

    def test_rejects_level_inside_header(self):
        data = bytearray(build_ktx2())
        struct.pack_into("<Q", data, 80, 0)
        with self.assertRaises(ContainerFormatError):
            parse_layout(bytes(data))

    def test_format_error_is_value_error(self):
        self.assertTrue(issubclass(ContainerFormatError, ValueError))


class TestKeyValues(unittest.TestCase):
    def test_entry_encoding(self):
        entry = build_kv_entry("pc.meta", b"\x01\x02")
        self.assertEqual(struct.unpack_from("<I", entry)[0], 10)
        self.assertEqual(entry[4:12], b"pc.meta\x00")
        self.assertEqual(len(entry) % 4, 0)

    def test_invalid_keys(self):
        with self.assertRaises(ValueError):
            build_kv_entry("", b"x")
        with self.assertRaises(ValueError):
            build_kv_entry("a\x00b", b"x")

    def test_read_existing_entries(self):
        data = build_ktx2(kv_entries=[("KTXorientation", b"rd\x00"), ("KTXwriter", b"test\x00")])
        entries = read_key_values(data)
        self.assertEqual(list(entries), ["KTXorientation", "KTXwriter"])
        self.assertEqual(entries["KTXwriter"], b"test\x00")


class TestSplice(unittest.TestCase):
    def _check_shift(self, original, patched, result):
        before = parse_layout(original)
        after = parse_layout(patched)
        self.assertEqual(len(patched), len(original) + result.inserted_length)
        self.assertEqual(result.inserted_length % SHIFT_ALIGNMENT, 0)
        for old, new in zip(before.levels, after.levels):
            self.assertEqual(new.byte_offset, old.byte_offset + result.inserted_length)
            self.assertEqual(new.byte_length, old.byte_length)
            self.assertEqual(new.byte_offset % 16, 0)
        self.assertEqual(level_payloads(original), level_payloads(patched))
        self.assertEqual(after.dfd_byte_offset, before.dfd_byte_offset)
        self.assertEqual(patched[after.dfd_byte_offset:after.dfd_byte_offset + after.dfd_byte_length],
                         original[before.dfd_byte_offset:before.dfd_byte_offset + before.dfd_byte_length])
        return before, after

    def test_without_existing_kvd(self):
        original = build_ktx2()
        patched, result = splice_metadata(original, "pc.meta", VALUE)
        before, after = self._check_shift(original, patched, result)
        self.assertEqual(result.insert_offset, before.dfd_byte_offset + before.dfd_byte_length)
        self.assertEqual(after.kvd_byte_offset, result.insert_offset)
        self.assertEqual(after.kvd_byte_length, result.entry_length)
        self.assertEqual(result.levels_shifted, 3)
        self.assertEqual(read_key_values(patched), {"pc.meta": VALUE})

    def test_after_existing_kvd(self):
        original = build_ktx2(kv_entries=[("KTXorientation", b"rd\x00")])
        patched, result = splice_metadata(original, "pc.meta", VALUE)
        before, after = self._check_shift(original, patched, result)
        self.assertEqual(result.insert_offset, before.kvd_byte_offset + before.kvd_byte_length)
        self.assertEqual(after.kvd_byte_offset, before.kvd_byte_offset)
        self.assertEqual(after.kvd_byte_length, before.kvd_byte_length + result.entry_length)
        entries = read_key_values(patched)
        self.assertEqual(list(entries), ["KTXorientation", "pc.meta"])
        self.assertEqual(entries["pc.meta"], VALUE)

    def test_supercompression_data_shifted(self):
        sgd = bytes(range(24))
        original = build_ktx2(kv_entries=[("KTXwriter", b"x\x00")], sgd=sgd)
        patched, result = splice_metadata(original, "pc.meta", VALUE)
        before, after = self._check_shift(original, patched, result)
        self.assertEqual(after.sgd_byte_offset, before.sgd_byte_offset + result.inserted_length)
        self.assertEqual(after.sgd_byte_offset % 8, 0)
        self.assertEqual(patched[after.sgd_byte_offset:after.sgd_byte_offset + len(sgd)], sgd)

    def test_duplicate_key_rejected(self):
        original = build_ktx2(kv_entries=[("pc.meta", b"old")])
        with self.assertRaises(ContainerFormatError):
            splice_metadata(original, "pc.meta", VALUE)

    def test_empty_value(self):
        patched, result = splice_metadata(build_ktx2(), "pc.meta", b"")
        self.assertEqual(read_key_values(patched)["pc.meta"], b"")
        self.assertEqual(result.entry_length, 12)


class TestPatchFile:
    def test_in_place(self, tmp_dir):
        path = os.path.join(tmp_dir, "tex.ktx2")
        original = build_ktx2(levels=4, width=32, height=32)
        with open(path, "wb") as f:
            f.write(original)
        result = patch_file(path, "pc.meta", VALUE)
        assert result.output_path == path
        assert read_metadata(path) == VALUE
        with open(path, "rb") as f:
            assert level_payloads(f.read()) == level_payloads(original)
        assert not [n for n in os.listdir(tmp_dir) if ".tmp." in n]

    def test_separate_output(self, tmp_dir):
        src = os.path.join(tmp_dir, "src.ktx2")
        dst = os.path.join(tmp_dir, "out", "dst.ktx2")
        original = build_ktx2()
        with open(src, "wb") as f:
            f.write(original)
        patch_file(src, "pc.meta", VALUE, output_path=dst)
        with open(src, "rb") as f:
            assert f.read() == original
        assert read_metadata(dst) == VALUE
        assert read_metadata(src) is None

    def test_missing_source(self, tmp_dir):
        with pytest.raises(PatchIOError):
            patch_file(os.path.join(tmp_dir, "missing.ktx2"), "pc.meta", VALUE)

    def test_unwritable_target_leaves_source(self, tmp_dir):
        src = os.path.join(tmp_dir, "src.ktx2")
        blocker = os.path.join(tmp_dir, "blocker")
        original = build_ktx2()
        with open(src, "wb") as f:
            f.write(original)
        with open(blocker, "w") as f:
            f.write("not a directory")
        with pytest.raises(PatchIOError):
            patch_file(src, "pc.meta", VALUE, output_path=os.path.join(blocker, "dst.ktx2"))
        with open(src, "rb") as f:
            assert f.read() == original

    def test_malformed_source(self, tmp_dir):
        path = os.path.join(tmp_dir, "bad.ktx2")
        with open(path, "wb") as f:
            f.write(b"\x00" * 200)
        with pytest.raises(ContainerFormatError):
            patch_file(path, "pc.meta", VALUE)
