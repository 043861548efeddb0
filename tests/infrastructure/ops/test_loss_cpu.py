import unittest

import numpy as np

from marvinnet.infrastructure.ops.loss_cpu import (
    contrastive_cpu,
    multinomial_accuracy_cpu,
    multinomial_grad_cpu,
    multinomial_loss_cpu,
    smooth_l1_cpu,
)


class TestMultinomial(unittest.TestCase):
    def setUp(self):
        self.pred = np.array(
            [[0.7, 0.2, 0.1], [0.1, 0.3, 0.6], [0.4, 0.4, 0.2]], dtype=np.float32
        ).reshape(3, 3, 1, 1)
        self.label = np.array([0, 1, 1], dtype=np.float32).reshape(3, 1, 1, 1)

    def test_accuracy_counts_ties_as_hits(self):
        hits = multinomial_accuracy_cpu(self.pred, self.label)
        np.testing.assert_array_equal(hits.reshape(-1), [1, 0, 1])

    def test_class_weights(self):
        hits = multinomial_accuracy_cpu(self.pred, self.label, class_weights=[2.0, 0.5, 1.0])
        np.testing.assert_allclose(hits.reshape(-1), [2.0, 0.0, 0.5])

    def test_log_loss(self):
        values = multinomial_loss_cpu(self.pred, self.label)
        np.testing.assert_allclose(values.reshape(-1), np.log([0.7, 0.3, 0.4]), rtol=1e-6)

    def test_stable_gradient(self):
        grad = multinomial_grad_cpu(self.pred, self.label, 0.5, stable=True)
        onehot = np.eye(3, dtype=np.float32)[[0, 1, 1]].reshape(3, 3, 1, 1)
        np.testing.assert_allclose(grad, 0.5 * (self.pred - onehot), rtol=1e-6)

    def test_probability_gradient(self):
        grad = multinomial_grad_cpu(self.pred, self.label, 0.5, stable=False).reshape(3, 3)
        expected = np.zeros((3, 3), dtype=np.float32)
        expected[[0, 1, 2], [0, 1, 1]] = -0.5 / np.array([0.7, 0.3, 0.4])
        np.testing.assert_allclose(grad, expected, rtol=1e-6)

    def test_cyclic_weight(self):
        weight = np.array([1.0, 0.0, 0.0], dtype=np.float32)
        values = multinomial_loss_cpu(self.pred, self.label, weight=weight)
        np.testing.assert_allclose(values.reshape(-1), [np.log(0.7), 0.0, 0.0], rtol=1e-6)

    def test_label_out_of_range(self):
        with self.assertRaises(ValueError):
            multinomial_loss_cpu(self.pred, np.full((3, 1, 1, 1), 3.0))


class TestRegressionLosses(unittest.TestCase):
    def test_smooth_l1(self):
        pred = np.array([0.5, 3.0, -2.0], dtype=np.float32)
        target = np.zeros(3, dtype=np.float32)
        loss, slope = smooth_l1_cpu(pred, target)
        np.testing.assert_allclose(loss, [0.125, 2.5, 1.5])
        np.testing.assert_allclose(slope, [0.5, 1.0, -1.0])

        loss, _ = smooth_l1_cpu(pred, target, np.array([2.0], dtype=np.float32))
        np.testing.assert_allclose(loss, [0.5, 5.5, 3.5])

    def test_contrastive(self):
        a = np.array([[1.0, 0.0], [0.0, 0.0], [3.0, 0.0]], dtype=np.float32)
        b = np.zeros((3, 2), dtype=np.float32)
        similar = np.array([1.0, 0.0, 0.0], dtype=np.float32)
        loss, beta = contrastive_cpu(a, b, similar, margin=2.0, scale=0.5)

        np.testing.assert_allclose(loss, [0.5, 2.0, 0.0])
        np.testing.assert_allclose(beta[0], [0.5, 0.0])
        np.testing.assert_allclose(beta[1], [0.0, 0.0])
        np.testing.assert_allclose(beta[2], [0.0, 0.0])

    def test_contrastive_dissimilar_inside_margin(self):
        a = np.array([[1.0, 0.0]], dtype=np.float32)
        b = np.zeros((1, 2), dtype=np.float32)
        loss, beta = contrastive_cpu(a, b, np.zeros(1), margin=2.0, scale=1.0)
        np.testing.assert_allclose(loss, [0.5])
        np.testing.assert_allclose(beta[0, 0], -1.0 / (1.0 + 1e-4), rtol=1e-5)


if __name__ == "__main__":
    unittest.main()
