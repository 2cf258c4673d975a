"""Tests for roughness/gloss to normal-map matching."""

import os
import unittest

from conftest import save_test_png
from TexForge.phases.normal_match import candidate_names, find_normal_map, is_gloss_by_name


class TestCandidateNames(unittest.TestCase):
    def test_roughness_suffix(self):
        self.assertEqual(
            candidate_names("rock_roughness"),
            ["rock_normal", "rock_roughness_normal", "rock_roughness_Normal"],
        )

    def test_short_suffix_does_not_split_words(self):
        names = candidate_names("rock_roughness")
        self.assertNotIn("rock_normalness", names)

    def test_rough_and_gloss(self):
        self.assertEqual(candidate_names("rock_rough")[0], "rock_normal")
        self.assertEqual(candidate_names("metal_glossiness")[0], "metal_normal")
        self.assertEqual(candidate_names("metal_gloss")[0], "metal_normal")

    def test_capitalized(self):
        self.assertIn("Rock_Normal", candidate_names("Rock_Roughness"))

    def test_single_letter_suffix(self):
        self.assertIn("rock_n", candidate_names("rock_r"))
        self.assertIn("rock_n", candidate_names("rock_g"))

    def test_token_in_middle(self):
        self.assertEqual(candidate_names("wall_roughness_2k")[0], "wall_normal_2k")

    def test_never_returns_stem(self):
        for stem in ("rock_normal", "plain", "a_r"):
            self.assertNotIn(stem, candidate_names(stem))

    def test_unique(self):
        names = candidate_names("rock_r")
        self.assertEqual(len(names), len(set(names)))


class TestFindNormalMap:
    def test_finds_sibling(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        normal = os.path.join(tmp_dir, "rock_normal.png")
        save_test_png(rough, 32, 32)
        save_test_png(normal, 32, 32)
        assert find_normal_map(rough) == normal

    def test_prefers_swapped_name(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        save_test_png(rough, 16, 16)
        save_test_png(os.path.join(tmp_dir, "rock_roughness_normal.png"), 16, 16)
        save_test_png(os.path.join(tmp_dir, "rock_normal.png"), 16, 16)
        assert find_normal_map(rough) == os.path.join(tmp_dir, "rock_normal.png")

    def test_size_mismatch_skipped(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        save_test_png(rough, 32, 32)
        save_test_png(os.path.join(tmp_dir, "rock_normal.png"), 16, 16)
        matched = os.path.join(tmp_dir, "rock_roughness_normal.png")
        save_test_png(matched, 32, 32)
        assert find_normal_map(rough) == matched

    def test_size_check_disabled(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        normal = os.path.join(tmp_dir, "rock_normal.png")
        save_test_png(rough, 32, 32)
        save_test_png(normal, 16, 16)
        assert find_normal_map(rough, validate_dimensions=False) == normal

    def test_unreadable_candidate_skipped(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        save_test_png(rough, 16, 16)
        with open(os.path.join(tmp_dir, "rock_normal.png"), "wb") as f:
            f.write(b"not an image")
        assert find_normal_map(rough) is None

    def test_no_candidate(self, tmp_dir):
        rough = os.path.join(tmp_dir, "rock_roughness.png")
        save_test_png(rough, 16, 16)
        assert find_normal_map(rough) is None


class TestGlossByName(unittest.TestCase):
    def test_names(self):
        self.assertTrue(is_gloss_by_name("/a/metal_gloss.png"))
        self.assertTrue(is_gloss_by_name("metal_Glossiness.tga"))
        self.assertTrue(is_gloss_by_name("metal_g.png"))
        self.assertFalse(is_gloss_by_name("rock_roughness.png"))
        self.assertFalse(is_gloss_by_name("rock_r.png"))
        self.assertIsNone(is_gloss_by_name("rock_albedo.png"))
