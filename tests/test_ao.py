"""Tests for ambient-occlusion mip correction."""

import unittest

import numpy as np

from TexForge.config import AOSettings
from TexForge.core import MipChain, MipLevel
from TexForge.phases.ao import AOProcessor, percentile_value


def _level(values, level=0, alpha=0.5):
    arr = np.asarray(values, dtype=np.float32)
    px = np.empty(arr.shape + (4,), dtype=np.float32)
    px[:, :, :3] = arr[:, :, np.newaxis]
    px[:, :, 3] = alpha
    return MipLevel(px, level=level)


class TestBiasedDarkening(unittest.TestCase):
    def test_zero_bias_is_noop(self):
        mip = _level([[0.2, 0.8], [0.5, 1.0]])
        out = AOProcessor.biased_darkening(mip, 0.0)
        np.testing.assert_array_equal(out.pixels, mip.pixels)
        self.assertIsNot(out, mip)

    def test_moves_toward_darker_target(self):
        mip = _level([[0.2, 0.8], [0.6, 1.0]])
        out = AOProcessor.biased_darkening(mip, 0.5)
        # mean 0.65, min 0.2 -> target 0.425, t = 0.25
        expected = np.array([[0.2, 0.8], [0.6, 1.0]]) * 0.75 + 0.425 * 0.25
        np.testing.assert_allclose(out.pixels[:, :, 0], expected, atol=1e-6)
        np.testing.assert_allclose(out.pixels[:, :, 1], out.pixels[:, :, 0])
        np.testing.assert_allclose(out.pixels[:, :, 3], 0.5)

    def test_reads_red_only(self):
        px = np.zeros((2, 2, 4), dtype=np.float32)
        px[:, :, 0] = 0.6
        px[:, :, 1] = 0.1
        out = AOProcessor.biased_darkening(MipLevel(px), 0.5)
        np.testing.assert_allclose(out.pixels[:, :, :3], 0.6, atol=1e-6)


class TestPercentile(unittest.TestCase):
    def test_percentile_value(self):
        values = np.arange(256, dtype=np.float32) / 255.0
        # target count 128 is first reached at bin 127
        self.assertAlmostEqual(percentile_value(values, 50.0), 127 / 255.0, places=6)
        self.assertEqual(percentile_value(values, 0.0), 0.0)

    def test_pulls_dark_pixels(self):
        row = np.arange(10, dtype=np.float32) / 10.0
        mip = _level(row[np.newaxis, :])
        out = AOProcessor.percentile(mip, 50.0)
        pv = percentile_value(mip.pixels[:, :, 0], 50.0)
        src = mip.pixels[0, :, 0]
        res = out.pixels[0, :, 0]
        below = src < pv
        np.testing.assert_allclose(res[below], src[below] + (pv - src[below]) * 0.3, atol=1e-6)
        np.testing.assert_array_equal(res[~below], src[~below])


class TestAOChain(unittest.TestCase):
    def _chain(self):
        rng = np.random.default_rng(2)
        return MipChain((
            _level(rng.random((4, 4)), 0),
            _level(rng.random((2, 2)), 1),
            _level(rng.random((1, 1)), 2),
        ))

    def test_start_level(self):
        chain = self._chain()
        out = AOProcessor(AOSettings(mode="biased_darkening", bias=0.8, start_level=1)).apply(chain)
        np.testing.assert_array_equal(out[0].pixels, chain[0].pixels)
        self.assertFalse(np.array_equal(out[1].pixels, chain[1].pixels))

    def test_mode_none_copies(self):
        chain = self._chain()
        out = AOProcessor(AOSettings(mode="none")).apply(chain)
        for a, b in zip(chain, out):
            np.testing.assert_array_equal(a.pixels, b.pixels)
            self.assertFalse(np.shares_memory(a.pixels, b.pixels))
