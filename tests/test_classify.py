"""Tests for texture classification."""

import unittest

import numpy as np

from TexForge.config import TextureType
from TexForge.core import classify_texture, classify_texture_by_content


class TestTextureClassification(unittest.TestCase):
    def test_albedo_patterns(self):
        for name in ("brick_albedo.png", "wall_basecolor.png", "metal_diffuse.tga",
                     "brick_diff.png", "wood_color.png", "armor_c.png"):
            self.assertEqual(classify_texture(name), TextureType.ALBEDO, name)

    def test_normal_patterns(self):
        for name in ("brick_normal.png", "wall_norm.png", "floor_nrm.tga", "rock_n.png"):
            self.assertEqual(classify_texture(name), TextureType.NORMAL, name)

    def test_roughness_and_gloss(self):
        self.assertEqual(classify_texture("metal_rough.png"), TextureType.ROUGHNESS)
        self.assertEqual(classify_texture("wood_roughness.tga"), TextureType.ROUGHNESS)
        self.assertEqual(classify_texture("rock_r.png"), TextureType.ROUGHNESS)
        self.assertEqual(classify_texture("wood_gloss.png"), TextureType.GLOSS)
        self.assertEqual(classify_texture("wood_glossiness.png"), TextureType.GLOSS)

    def test_other_patterns(self):
        self.assertEqual(classify_texture("plate_metallic.png"), TextureType.METALLIC)
        self.assertEqual(classify_texture("plate_ao.png"), TextureType.AMBIENT_OCCLUSION)
        self.assertEqual(classify_texture("plate_occlusion.png"), TextureType.AMBIENT_OCCLUSION)
        self.assertEqual(classify_texture("lamp_emissive.png"), TextureType.EMISSIVE)
        self.assertEqual(classify_texture("stone_height.png"), TextureType.HEIGHT)
        self.assertEqual(classify_texture("stone_disp.png"), TextureType.HEIGHT)

    def test_case_insensitive(self):
        self.assertEqual(classify_texture("Brick_Normal.PNG"), TextureType.NORMAL)

    def test_unknown_defaults(self):
        self.assertEqual(classify_texture("random_texture.png"), TextureType.GENERIC)
        self.assertEqual(classify_texture("island.png"), TextureType.GENERIC)

    def test_no_false_positives_on_short_suffixes(self):
        self.assertEqual(classify_texture("steelham.png"), TextureType.GENERIC)
        self.assertEqual(classify_texture("normalized.png"), TextureType.GENERIC)


class TestContentClassification(unittest.TestCase):
    def test_flat_normal_detected(self):
        px = np.ones((16, 16, 4), dtype=np.float32)
        px[:, :, :2] = 0.5
        self.assertEqual(classify_texture_by_content(px), TextureType.NORMAL)

    def test_noise_stays_generic(self):
        px = np.random.default_rng(0).random((16, 16, 4)).astype(np.float32)
        self.assertEqual(classify_texture_by_content(px), TextureType.GENERIC)

    def test_grayscale_stays_generic(self):
        self.assertEqual(classify_texture_by_content(np.ones((8, 8))), TextureType.GENERIC)
