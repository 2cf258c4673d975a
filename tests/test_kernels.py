"""Tests for resampling kernels and order-statistic filters."""

import unittest

import numpy as np

from TexForge.config import FilterType
from TexForge.phases.kernels import (
    KERNELS, footprint_bounds, footprint_reduce, get_kernel, resample, resample_weights,
)


class TestKernelTable(unittest.TestCase):
    def test_kaiser_resolves_to_lanczos3(self):
        self.assertEqual(get_kernel("kaiser").name, "lanczos3")
        self.assertEqual(get_kernel(FilterType.KAISER).support, 3.0)

    def test_bilinear_is_triangle(self):
        self.assertEqual(get_kernel("bilinear").name, "triangle")

    def test_order_statistic_filters_have_no_kernel(self):
        with self.assertRaises(ValueError):
            get_kernel("min")

    def test_interpolating_kernels_are_one_at_origin(self):
        for ft, kernel in KERNELS.items():
            if ft == FilterType.MITCHELL:
                continue
            value = float(kernel.func(np.array([0.0]))[0])
            self.assertAlmostEqual(value, 1.0, places=6, msg=ft.value)


class TestResampleWeights(unittest.TestCase):
    def test_rows_sum_to_one(self):
        for ft in KERNELS:
            weights = resample_weights(17, 8, KERNELS[ft])
            sums = np.asarray(weights.sum(axis=1)).ravel()
            np.testing.assert_allclose(sums, 1.0, atol=1e-9, err_msg=ft.value)

    def test_box_halving_averages_pairs(self):
        row = np.array([[0.0, 1.0, 0.2, 0.4]], dtype=np.float32)[:, :, np.newaxis]
        out = resample(np.repeat(row, 2, axis=0), 2, 1, "box")
        np.testing.assert_allclose(out[0, :, 0], [0.5, 0.3], atol=1e-6)

    def test_constant_image_is_preserved(self):
        img = np.full((16, 16, 4), 0.37, dtype=np.float32)
        for ft in ("box", "bilinear", "bicubic", "lanczos3", "mitchell", "kaiser"):
            out = resample(img, 8, 8, ft)
            self.assertEqual(out.shape, (8, 8, 4))
            np.testing.assert_allclose(out, 0.37, atol=1e-5, err_msg=ft)

    def test_invalid_sizes(self):
        with self.assertRaises(ValueError):
            resample_weights(0, 4, KERNELS[FilterType.BOX])


class TestFootprint(unittest.TestCase):
    def test_halving_footprints_are_pairs(self):
        bounds = footprint_bounds(8, 4)
        np.testing.assert_array_equal(bounds, [[0, 1], [2, 3], [4, 5], [6, 7]])

    def test_odd_footprints_cover_every_source_pixel(self):
        bounds = footprint_bounds(5, 2)
        self.assertEqual(int(bounds[0, 0]), 0)
        self.assertEqual(int(bounds[-1, 1]), 4)

    def test_min_and_max(self):
        img = np.zeros((2, 2, 4), dtype=np.float32)
        img[0, 0] = [0.1, 0.9, 0.5, 1.0]
        img[0, 1] = [0.3, 0.2, 0.5, 0.0]
        img[1, 0] = [0.7, 0.4, 0.5, 0.5]
        img[1, 1] = [0.2, 0.6, 0.5, 0.25]
        lo = footprint_reduce(img, 1, 1, use_max=False)
        hi = resample(img, 1, 1, "max")
        np.testing.assert_allclose(lo[0, 0], [0.1, 0.2, 0.5, 0.0])
        np.testing.assert_allclose(hi[0, 0], [0.7, 0.9, 0.5, 1.0])
