import os
import tempfile
import unittest
from unittest import mock

import numpy as np

from marvinnet.domain._errors import ConfigError, FatalError, ShapeMismatchError
from marvinnet.domain._phase import Phase
from marvinnet.infrastructure._response import Response
from marvinnet.infrastructure.buffer import Buffer, write_buffers
from marvinnet.infrastructure.device._backend import NumpyBackend
from marvinnet.infrastructure.device._context import DeviceContext
from marvinnet.infrastructure.layers import DiskData, MemoryData, TensorLayer
from marvinnet.infrastructure.layers._disk_data import _JOIN_TIMEOUT


class _DataTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.ctx = DeviceContext(0, backend=NumpyBackend(device_count=1), seed=3)

    def tearDown(self):
        self._tmp.cleanup()

    def save(self, name, array, kind=None):
        path = os.path.join(self.tmp, name)
        write_buffers(path, [Buffer.from_array(np.asarray(array), name=name, kind=kind)])
        return path

    def attach(self, layer, n_out=2, inputs=()):
        layer.inputs = list(inputs)
        layer.outputs = [Response(f"{layer.name}_{i}", self.ctx) for i in range(n_out)]
        return layer


class TestTensorLayer(_DataTestCase):
    def test_serves_file_contents(self):
        values = np.arange(6, dtype=np.float32).reshape(2, 3)
        layer = self.attach(
            TensorLayer("const", self.ctx, files=[self.save("t.tensor", values)]), n_out=1
        )
        layer.allocate(Phase.TESTING)
        out = layer.outputs[0]
        self.assertEqual(out.dims, (2, 3))
        self.assertIsNone(out.diff)
        np.testing.assert_array_equal(out.data, values)
        self.assertEqual(layer.item_count(), 2)

        layer.forward(Phase.TESTING)
        self.assertEqual(layer.epoch, 1)


class TestMemoryData(_DataTestCase):
    def _layer(self, n_items=5, **kwargs):
        data = np.arange(n_items * 2, dtype=np.float32).reshape(n_items, 2, 1, 1)
        label = np.arange(n_items, dtype=np.float32)
        kwargs.setdefault("batch_size", 2)
        return self.attach(
            MemoryData(
                "data",
                self.ctx,
                file_data=self.save("data.tensor", data),
                file_label=self.save("label.tensor", label),
                **kwargs,
            )
        )

    def test_padding_and_sequential_batches(self):
        layer = self._layer(phase=Phase.TESTING)
        layer.allocate(Phase.TESTING)
        out_data, out_label = layer.outputs
        self.assertEqual(layer.item_count(), 6)
        self.assertEqual(out_data.dims, (2, 2, 1, 1))
        self.assertEqual(out_label.dims, (2, 1, 1, 1))

        labels = []
        for _ in range(3):
            layer.forward(Phase.TESTING)
            labels.extend(out_label.data.reshape(-1).tolist())
        self.assertEqual(labels, [0, 1, 2, 3, 4, 0])
        np.testing.assert_array_equal(out_data.data[1].reshape(-1), [0, 0])
        self.assertEqual(layer.epoch, 1)
        self.assertEqual(layer.counter, 0)

    def test_training_wrap_reshuffles(self):
        layer = self._layer(phase=Phase.TRAINING)
        layer.allocate(Phase.TRAINING)
        seen = []
        for _ in range(2):
            layer.forward(Phase.TRAINING)
            seen.extend(layer.outputs[1].data.reshape(-1).tolist())
        self.assertEqual(layer.epoch, 0)

        layer.forward(Phase.TRAINING)
        self.assertEqual(layer.epoch, 1)
        self.assertEqual(layer.counter, 2)
        self.assertEqual(len(seen), 4)

    def test_configured_phase_decides_reshuffle(self):
        testing = self._layer(phase=Phase.TESTING)
        testing.allocate(Phase.TESTING)
        labels = []
        for _ in range(3):
            testing.forward(Phase.TRAINING)
            labels.extend(testing.outputs[1].data.reshape(-1).tolist())
        self.assertEqual(labels, [0, 1, 2, 3, 4, 0])
        self.assertEqual(testing.counter, 0)

        both = self._layer(phase=Phase.TRAINING_TESTING)
        both.allocate(Phase.TESTING)
        for _ in range(3):
            both.forward(Phase.TESTING)
        self.assertEqual(both.epoch, 1)
        self.assertEqual(both.counter, 2)

    def test_batch_size_must_be_positive(self):
        with self.assertRaisesRegex(ConfigError, "^data: batch_size"):
            self._layer(batch_size=0)

    def test_pairs_stay_aligned_after_shuffle(self):
        layer = self._layer(n_items=8, batch_size=4, phase=Phase.TRAINING)
        layer.allocate(Phase.TRAINING)
        layer.forward(Phase.TRAINING)
        data = layer.outputs[0].data.reshape(4, 2)
        label = layer.outputs[1].data.reshape(4)
        np.testing.assert_array_equal(data[:, 0], 2 * label)

    def test_training_source_skipped_when_testing(self):
        layer = self._layer()
        self.assertIs(layer.phase, Phase.TRAINING)
        self.assertEqual(layer.allocate(Phase.TESTING), 0)
        self.assertFalse(layer.outputs[0].allocated)

    def test_mean_file_and_scale(self):
        data = np.full((2, 3), 4.0, dtype=np.float32)
        layer = self.attach(
            MemoryData(
                "data",
                self.ctx,
                file_data=self.save("d.tensor", data),
                file_label=self.save("l.tensor", np.zeros(2, dtype=np.float32)),
                file_mean=self.save("m.tensor", np.array([1.0, 2.0, 3.0], dtype=np.float32)),
                batch_size=2,
                scale=0.5,
                mean=1.0,
                phase=Phase.TESTING,
            )
        )
        layer.allocate(Phase.TESTING)
        layer.forward(Phase.TESTING)
        np.testing.assert_allclose(layer.outputs[0].data[0], [0.5, 0.0, -0.5])

    def test_label_count_mismatch(self):
        layer = self.attach(
            MemoryData(
                "data",
                self.ctx,
                file_data=self.save("d.tensor", np.zeros((4, 2), dtype=np.float32)),
                file_label=self.save("l.tensor", np.zeros(2, dtype=np.float32)),
                batch_size=1,
                phase=Phase.TESTING,
            )
        )
        with self.assertRaises(ShapeMismatchError):
            layer.allocate(Phase.TESTING)


class TestDiskData(_DataTestCase):
    def _layer(self, size_crop, n_items=4, **kwargs):
        data = np.arange(n_items * 9, dtype=np.uint8).reshape(n_items, 1, 3, 3)
        label = np.arange(n_items, dtype=np.float32)
        return self.attach(
            DiskData(
                "disk",
                self.ctx,
                file_data=self.save("data.tensor", data),
                file_label=self.save("label.tensor", label),
                batch_size=2,
                size_crop=size_crop,
                **kwargs,
            )
        )

    def test_prefetched_batches_and_epoch(self):
        layer = self._layer([3, 3], phase=Phase.TESTING)
        try:
            layer.allocate(Phase.TESTING)
            out_data, out_label = layer.outputs
            self.assertEqual(out_data.dims, (2, 1, 3, 3))
            self.assertEqual(out_label.dims, (2, 1, 1, 1))

            layer.forward(Phase.TESTING)
            np.testing.assert_array_equal(out_label.data.reshape(-1), [0, 1])
            np.testing.assert_array_equal(out_data.data[1, 0], np.arange(9, 18).reshape(3, 3))
            self.assertEqual(layer.epoch, 0)

            layer.forward(Phase.TESTING)
            np.testing.assert_array_equal(out_label.data.reshape(-1), [2, 3])
            self.assertEqual(layer.epoch, 1)
        finally:
            layer.close()
        self.assertIsNone(layer._prefetcher)

    def test_random_crop_is_a_window(self):
        layer = self._layer([2, 2], phase=Phase.TESTING, mirror=True)
        try:
            layer.allocate(Phase.TESTING)
            layer.forward(Phase.TESTING)
            crop = layer.outputs[0].data[0, 0]
            self.assertEqual(crop.shape, (2, 2))
            full = np.arange(9).reshape(3, 3)
            windows = [full[i : i + 2, j : j + 2] for i in range(2) for j in range(2)]
            windows += [w[:, ::-1] for w in windows]
            self.assertTrue(any(np.array_equal(crop, w) for w in windows))
        finally:
            layer.close()

    def test_crop_larger_than_data(self):
        layer = self._layer([4, 3], phase=Phase.TESTING)
        with self.assertRaises(ConfigError):
            layer.allocate(Phase.TESTING)
        layer.close()

    def test_forward_before_allocation(self):
        layer = self._layer([3, 3])
        with self.assertRaises(FatalError):
            layer.forward(Phase.TRAINING)

    def test_next_batch_requested_before_publishing(self):
        layer = self._layer([3, 3], phase=Phase.TESTING)
        try:
            layer.allocate(Phase.TESTING)
            out_data = layer.outputs[0]
            with mock.patch.object(out_data, "write_data", side_effect=RuntimeError("device lost")):
                with self.assertRaises(RuntimeError):
                    layer.forward(Phase.TESTING)
            status, _, labels, _ = layer._prefetcher.results.get(timeout=_JOIN_TIMEOUT)
            self.assertEqual(status, "ok")
            np.testing.assert_array_equal(labels.reshape(-1), [2, 3])
        finally:
            layer.close()

    def test_close_without_consuming(self):
        layer = self._layer([3, 3], phase=Phase.TESTING)
        layer.allocate(Phase.TESTING)
        prefetcher = layer._prefetcher
        layer.close()
        self.assertFalse(prefetcher.is_alive())
        layer.close()


if __name__ == "__main__":
    unittest.main()
