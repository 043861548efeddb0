import unittest

import numpy as np

from marvinnet.infrastructure.ops.conv_cpu import (
    conv_backward_cpu,
    conv_forward_cpu,
    conv_output_dims,
)


def _naive_conv2d(x, w, b, stride, padding, dilation, group):
    N, C_in, H, W = x.shape
    C_out, C_per, KH, KW = w.shape
    OH, OW = conv_output_dims((H, W), (KH, KW), padding, stride, dilation)
    xp = np.pad(x, ((0, 0), (0, 0), (padding[0],) * 2, (padding[1],) * 2))
    y = np.zeros((N, C_out, OH, OW), dtype=np.float64)
    o_per = C_out // group
    for n in range(N):
        for o in range(C_out):
            g = o // o_per
            for i in range(OH):
                for j in range(OW):
                    acc = 0.0
                    for c in range(C_per):
                        for ki in range(KH):
                            for kj in range(KW):
                                acc += (
                                    xp[n, g * C_per + c, i * stride[0] + ki * dilation[0], j * stride[1] + kj * dilation[1]]
                                    * w[o, c, ki, kj]
                                )
                    y[n, o, i, j] = acc + (0.0 if b is None else b[o])
    return y


class TestConvCPU(unittest.TestCase):
    def setUp(self):
        self.rng = np.random.default_rng(0)

    def test_output_dims(self):
        self.assertEqual(conv_output_dims((8, 8), (3, 3), (0, 0), (1, 1), (1, 1)), (6, 6))
        self.assertEqual(conv_output_dims((8, 8), (3, 3), (1, 1), (2, 2), (1, 1)), (4, 4))
        self.assertEqual(conv_output_dims((9, 9), (3, 3), (0, 0), (1, 1), (2, 2)), (5, 5))

    def test_forward_matches_naive(self):
        cases = [
            dict(stride=(1, 1), padding=(0, 0), dilation=(1, 1), group=1),
            dict(stride=(2, 1), padding=(1, 2), dilation=(1, 1), group=1),
            dict(stride=(1, 1), padding=(1, 1), dilation=(2, 2), group=2),
        ]
        for case in cases:
            with self.subTest(**case):
                x = self.rng.standard_normal((2, 4, 7, 6)).astype(np.float32)
                w = self.rng.standard_normal((6, 4 // case["group"], 3, 2)).astype(np.float32)
                b = self.rng.standard_normal(6).astype(np.float32)
                y = conv_forward_cpu(x, w, b, **case)
                ref = _naive_conv2d(x, w, b, case["stride"], case["padding"], case["dilation"], case["group"])
                np.testing.assert_allclose(y, ref, rtol=1e-4, atol=1e-4)

    def test_channel_mismatch(self):
        x = np.zeros((1, 3, 4, 4), dtype=np.float32)
        w = np.zeros((2, 2, 1, 1), dtype=np.float32)
        with self.assertRaises(ValueError):
            conv_forward_cpu(x, w, None, stride=(1, 1), padding=(0, 0), dilation=(1, 1))

    def test_backward_is_adjoint_of_forward(self):
        # <conv(x, w), g> is bilinear, so its gradients pair exactly with x and w.
        kw = dict(stride=(2, 1), padding=(1, 1), dilation=(1, 2), group=2)
        x = self.rng.standard_normal((2, 4, 6, 7))
        w = self.rng.standard_normal((4, 2, 2, 3))
        y = conv_forward_cpu(x, w, None, **kw)
        g = self.rng.standard_normal(y.shape)

        gx, gw, gb = conv_backward_cpu(x, w, g, **kw)
        total = float(np.sum(y * g))
        self.assertAlmostEqual(float(np.sum(gx * x)), total, places=6)
        self.assertAlmostEqual(float(np.sum(gw * w)), total, places=6)
        np.testing.assert_allclose(gb, g.sum(axis=(0, 2, 3)))

    def test_backward_values_on_ones(self):
        x = np.ones((1, 1, 3, 3), dtype=np.float32)
        w = np.ones((1, 1, 2, 2), dtype=np.float32)
        g = np.ones((1, 1, 2, 2), dtype=np.float32)
        gx, gw, gb = conv_backward_cpu(x, w, g, stride=(1, 1), padding=(0, 0), dilation=(1, 1))
        np.testing.assert_array_equal(gw, np.full((1, 1, 2, 2), 4.0))
        np.testing.assert_array_equal(gb, [4.0])
        np.testing.assert_array_equal(gx[0, 0], [[1, 2, 1], [2, 4, 2], [1, 2, 1]])

    def test_backward_flags(self):
        x = self.rng.standard_normal((1, 1, 3))
        w = self.rng.standard_normal((2, 1, 2))
        g = np.ones((1, 2, 2))
        gx, gw, gb = conv_backward_cpu(
            x, w, g, stride=(1,), padding=(0,), dilation=(1,), need_param_grad=False
        )
        self.assertEqual(gx.shape, x.shape)
        self.assertIsNone(gw)
        self.assertIsNone(gb)


if __name__ == "__main__":
    unittest.main()
