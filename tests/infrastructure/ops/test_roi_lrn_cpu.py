import unittest

import numpy as np

from marvinnet.infrastructure.ops.lrn_cpu import lrn_backward_cpu, lrn_forward_cpu
from marvinnet.infrastructure.ops.roi_cpu import (
    roi_crop_backward_cpu,
    roi_crop_forward_cpu,
    roi_pool_backward_cpu,
    roi_pool_forward_cpu,
)


class TestROICrop(unittest.TestCase):
    def test_crop_per_item_offsets(self):
        x = np.arange(2 * 1 * 4 * 4, dtype=np.float32).reshape(2, 1, 4, 4)
        start = np.array([[0, 0, 0], [0, 2, 1]], dtype=np.float32)
        y = roi_crop_forward_cpu(x, start, (2, 1, 2, 2))
        np.testing.assert_array_equal(y[0, 0], [[0, 1], [4, 5]])
        np.testing.assert_array_equal(y[1, 0], [[25, 26], [29, 30]])

        g = roi_crop_backward_cpu(np.ones_like(y), start, x.shape)
        self.assertEqual(float(g[0].sum()), 4.0)
        self.assertEqual(float(g[1, 0, 2:, 1:3].sum()), 4.0)
        self.assertEqual(float(g[1, 0, :2].sum()), 0.0)

    def test_crop_outside_input(self):
        x = np.zeros((1, 1, 3, 3), dtype=np.float32)
        with self.assertRaises(ValueError):
            roi_crop_forward_cpu(x, np.array([[0, 2, 2]]), (1, 1, 2, 2))


class TestROIPool(unittest.TestCase):
    def test_pool_whole_map(self):
        x = np.arange(16, dtype=np.float32).reshape(1, 1, 4, 4)
        rois = np.array([[0, 0, 3, 0, 3]], dtype=np.float32)
        y, argmax = roi_pool_forward_cpu(x, rois, (2, 2), 1.0)
        np.testing.assert_array_equal(y[0, 0], [[5, 7], [13, 15]])
        np.testing.assert_array_equal(argmax[0, 0], [[5, 7], [13, 15]])

        g = roi_pool_backward_cpu(np.ones_like(y), argmax, x.shape)
        self.assertEqual(float(g.sum()), 4.0)
        self.assertEqual(float(g[0, 0, 3, 3]), 1.0)

    def test_spatial_scale_and_batch_index(self):
        x = np.zeros((2, 2, 4, 4), dtype=np.float32)
        x[1, :, 1, 1] = [3.0, 4.0]
        rois = np.array([[1, 0, 7, 0, 7]], dtype=np.float32)
        y, _ = roi_pool_forward_cpu(x, rois, (1, 1), 0.5)
        np.testing.assert_array_equal(y.reshape(-1), [3.0, 4.0])

    def test_overlapping_regions_accumulate(self):
        x = np.zeros((1, 1, 2, 2), dtype=np.float32)
        x[0, 0, 0, 0] = 1.0
        rois = np.array([[0, 0, 1, 0, 1], [0, 0, 1, 0, 1]], dtype=np.float32)
        y, argmax = roi_pool_forward_cpu(x, rois, (1, 1), 1.0)
        g = roi_pool_backward_cpu(np.ones_like(y), argmax, x.shape)
        self.assertEqual(float(g[0, 0, 0, 0]), 2.0)


class TestLRN(unittest.TestCase):
    def setUp(self):
        self.params = dict(local_size=3, alpha=0.5, beta=0.75)
        rng = np.random.default_rng(4)
        self.x = rng.standard_normal((2, 5, 3, 2))

    def test_forward_formula(self):
        y, scale = lrn_forward_cpu(self.x, k=1.0, **self.params)
        c = 0
        window = self.x[:, 0:2]
        expected_scale = 1.0 + 0.5 / 3 * np.sum(window * window, axis=1)
        np.testing.assert_allclose(scale[:, c], expected_scale)
        np.testing.assert_allclose(y[:, c], self.x[:, c] * expected_scale ** -0.75)

        c = 2
        window = self.x[:, 1:4]
        expected_scale = 1.0 + 0.5 / 3 * np.sum(window * window, axis=1)
        np.testing.assert_allclose(scale[:, c], expected_scale)

    def test_backward_matches_finite_differences(self):
        rng = np.random.default_rng(5)
        g = rng.standard_normal(self.x.shape)
        y, scale = lrn_forward_cpu(self.x, k=2.0, **self.params)
        gx = lrn_backward_cpu(self.x, y, scale, g, **self.params)

        eps = 1e-6
        for index in [(0, 0, 0, 0), (1, 2, 1, 1), (0, 4, 2, 0)]:
            xp = self.x.copy()
            xm = self.x.copy()
            xp[index] += eps
            xm[index] -= eps
            fp = np.sum(lrn_forward_cpu(xp, k=2.0, **self.params)[0] * g)
            fm = np.sum(lrn_forward_cpu(xm, k=2.0, **self.params)[0] * g)
            self.assertAlmostEqual(gx[index], (fp - fm) / (2 * eps), places=5)


if __name__ == "__main__":
    unittest.main()
