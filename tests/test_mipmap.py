"""Tests for mip chain generation."""

import os
import tempfile
import unittest

import numpy as np
import pytest

from TexForge.config import AOSettings, FilterProfile, MipmapConfig, TextureType, default_profile
from TexForge.core import MipLevel
from TexForge.phases.ao import AOProcessor
from TexForge.phases.mipmap import (
    InvalidDimensionsError, MipGenerator, calculate_mip_levels, mip_dimensions,
    renormalize_normals, save_chain,
)
from TexForge.phases.postprocess import AOCorrection


class TestMipDimensions(unittest.TestCase):
    def test_level_count(self):
        self.assertEqual(calculate_mip_levels(256, 256), 9)
        self.assertEqual(calculate_mip_levels(1, 1), 1)
        self.assertEqual(calculate_mip_levels(256, 64, min_size=4), 7)

    def test_invalid_dimensions(self):
        with self.assertRaises(InvalidDimensionsError):
            calculate_mip_levels(0, 4)
        with self.assertRaises(InvalidDimensionsError):
            mip_dimensions(4, -1)

    def test_non_square_chain(self):
        self.assertEqual(
            mip_dimensions(16, 4),
            [(16, 4), (8, 2), (4, 1), (2, 1), (1, 1)],
        )

    def test_exclude_last_level(self):
        self.assertEqual(mip_dimensions(4, 4, include_last_level=False), [(4, 4), (2, 2)])

    def test_min_size_stops_early(self):
        self.assertEqual(mip_dimensions(32, 32, min_size=8), [(32, 32), (16, 16), (8, 8)])

    def test_count_matches_chain_length(self):
        for w, h in ((256, 256), (64, 16), (5, 3)):
            self.assertEqual(len(mip_dimensions(w, h)), calculate_mip_levels(w, h))


class TestMipGenerator(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(3)
        self.src = rng.random((32, 32, 4)).astype(np.float32)

    def test_level_zero_is_unmodified_copy(self):
        chain = MipGenerator().generate(self.src, default_profile(TextureType.ROUGHNESS))
        np.testing.assert_array_equal(chain[0].pixels, self.src)
        self.assertFalse(np.shares_memory(chain[0].pixels, self.src))

    def test_dimensions_halve(self):
        chain = MipGenerator().generate(self.src, default_profile(TextureType.GENERIC))
        self.assertEqual(len(chain), 6)
        for k, lvl in enumerate(chain):
            self.assertEqual(lvl.size, (max(1, 32 >> k), max(1, 32 >> k)))
            self.assertEqual(lvl.level, k)

    def test_levels_do_not_alias(self):
        chain = MipGenerator().generate(self.src, default_profile(TextureType.GENERIC))
        buffers = [lvl.pixels for lvl in chain]
        for i in range(len(buffers)):
            for j in range(i + 1, len(buffers)):
                self.assertFalse(np.shares_memory(buffers[i], buffers[j]))

    def test_zero_sized_source(self):
        with self.assertRaises(InvalidDimensionsError):
            MipGenerator().generate(np.zeros((0, 8, 4)), default_profile(TextureType.GENERIC))

    def test_gamma_aware_downsample(self):
        src = np.zeros((1, 2, 4), dtype=np.float32)
        src[0, 1, :3] = 1.0
        src[:, :, 3] = 1.0
        profile = default_profile(TextureType.ALBEDO)
        profile.filter = "box"
        chain = MipGenerator().generate(src, profile)
        expected = 0.5 ** 2.2
        np.testing.assert_allclose(chain[1].pixels[0, 0, :3], expected, atol=1e-5)
        self.assertAlmostEqual(float(chain[1].pixels[0, 0, 3]), 1.0, places=5)

    def test_normal_levels_are_renormalized(self):
        rng = np.random.default_rng(5)
        vec = rng.normal(size=(16, 16, 3))
        vec[:, :, 2] = np.abs(vec[:, :, 2]) + 0.5
        vec /= np.linalg.norm(vec, axis=-1, keepdims=True)
        src = np.ones((16, 16, 4), dtype=np.float32)
        src[:, :, :3] = vec * 0.5 + 0.5
        chain = MipGenerator().generate(src, default_profile(TextureType.NORMAL))
        for lvl in list(chain)[1:]:
            decoded = lvl.pixels[:, :, :3] * 2.0 - 1.0
            lengths = np.linalg.norm(decoded, axis=-1)
            np.testing.assert_allclose(lengths, 1.0, atol=1e-4)

    def test_min_filter_keeps_darkest(self):
        profile = FilterProfile(texture_type="roughness", filter="min")
        chain = MipGenerator().generate(self.src, profile)
        self.assertAlmostEqual(float(chain[-1].pixels[0, 0, 0]), float(self.src[:, :, 0].min()), places=6)

    def test_rejects_unknown_post_processor(self):
        with self.assertRaises(TypeError):
            MipGenerator(post_processors=[object()])

    def test_post_processors_run_on_generated_levels_only(self):
        ao = AOProcessor(AOSettings(mode="biased_darkening", bias=0.8, start_level=0))
        profile = default_profile(TextureType.AMBIENT_OCCLUSION)
        plain = MipGenerator().generate(self.src, profile)
        corrected = MipGenerator(post_processors=[AOCorrection(ao)]).generate(self.src, profile)
        np.testing.assert_array_equal(corrected[0].pixels, plain[0].pixels)
        for k in range(1, len(plain)):
            expected = ao.process_level(plain[k]).pixels
            np.testing.assert_allclose(corrected[k].pixels, expected, atol=1e-6)

    def test_post_processor_skipped_for_other_types(self):
        ao = AOProcessor(AOSettings(mode="biased_darkening", bias=0.8))
        profile = default_profile(TextureType.ROUGHNESS)
        plain = MipGenerator().generate(self.src, profile)
        corrected = MipGenerator(post_processors=[AOCorrection(ao)]).generate(self.src, profile)
        for a, b in zip(plain, corrected):
            np.testing.assert_array_equal(a.pixels, b.pixels)

    def test_accepts_mip_level_source(self):
        chain = MipGenerator().generate(MipLevel(self.src), MipmapConfig().profile_for("height"))
        self.assertEqual(chain[0].size, (32, 32))


class TestRenormalize(unittest.TestCase):
    def test_degenerate_vectors_untouched(self):
        px = np.full((1, 1, 4), 0.5, dtype=np.float32)
        out = renormalize_normals(px)
        np.testing.assert_allclose(out, px)


@pytest.mark.slow
class TestSaveChain(unittest.TestCase):
    def test_writes_one_png_per_level(self):
        chain = MipGenerator().generate(np.random.rand(8, 8, 4), default_profile(TextureType.GENERIC))
        with tempfile.TemporaryDirectory() as tmpdir:
            paths = save_chain(chain, tmpdir, "rock")
            self.assertEqual(len(paths), 4)
            self.assertEqual(os.path.basename(paths[2]), "rock_mip2.png")
            for p in paths:
                self.assertTrue(os.path.isfile(p))
