import json
import os
import tempfile
import unittest

import numpy as np

from marvinnet.domain._errors import ConfigError, FatalError
from marvinnet.domain._phase import Phase
from marvinnet.infrastructure._description import NetDescription
from marvinnet.infrastructure.buffer import Buffer, read_buffers, write_buffers
from marvinnet.infrastructure.device._backend import NumpyBackend
from marvinnet.infrastructure.device._context import DeviceContext
from marvinnet.infrastructure.layers import Layer, register_layer
from marvinnet.infrastructure.net import Net, format_bytes


@register_layer("ConstantGradient")
class ConstantGradient(Layer):
    """Deposits a constant gradient into each of its inputs."""

    def __init__(self, name, context, *, value=1.0, **kwargs):
        super().__init__(name, context, **kwargs)
        self.value = float(value)

    @classmethod
    def read_attributes(cls, reader):
        kwargs = super().read_attributes(reader)
        kwargs["value"] = reader.get_float("value", 1.0)
        return kwargs

    def backward(self, phase):
        for r in self.inputs:
            self._deposit(r, np.full(r.dims, self.value, dtype=np.float32))


class _NetTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.backend = NumpyBackend(device_count=2)
        self.rng = np.random.default_rng(11)

    def tearDown(self):
        self._tmp.cleanup()

    def save(self, name, array):
        path = os.path.join(self.tmp, name)
        write_buffers(path, [Buffer.from_array(np.asarray(array, dtype=np.float32), name=name)])
        return path

    def net(self, layers, **kwargs):
        ctx = DeviceContext(0, backend=self.backend, seed=0)
        return Net(NetDescription.from_dict({"layers": layers}), ctx, **kwargs)

    def tensor(self, name, dims):
        return {
            "type": "Tensor",
            "name": name,
            "out": [name],
            "files": [self.save(f"{name}.tensor", self.rng.standard_normal(dims))],
        }

    def classifier(self, n_items=5, batch_size=2):
        data = np.arange(n_items * 4, dtype=np.float32).reshape(n_items, 4) / 10.0
        label = np.arange(n_items, dtype=np.float32) % 3
        return [
            {
                "type": "MemoryData",
                "name": "data",
                "phase": "Testing",
                "out": ["data", "label"],
                "file_data": self.save("data.tensor", data),
                "file_label": self.save("label.tensor", label),
                "batch_size": batch_size,
            },
            {"type": "InnerProduct", "name": "fc", "in": ["data"], "out": ["fc"], "num_output": 3},
            {"type": "Softmax", "name": "prob", "in": ["fc"], "out": ["prob"]},
            {"type": "Loss", "name": "loss", "mode": "MultinomialLogistic", "in": ["prob", "label"]},
        ]


class TestNetConstruction(_NetTestCase):
    def test_shape_chain(self):
        net = self.net(
            [
                self.tensor("x", (2, 3, 8, 8)),
                {"type": "InnerProduct", "name": "fc", "in": ["x"], "out": ["fc"], "num_output": 16},
                {"type": "Reshape", "name": "grid", "in": ["fc"], "out": ["grid"], "shape": [0, 1, 4, 4]},
                {"type": "Pooling", "name": "pool", "in": ["grid"], "out": ["pool"], "window": [2, 2]},
            ]
        )
        net.allocate(Phase.TESTING)
        self.assertEqual(net.get_response("fc").dims, (2, 16, 1, 1))
        self.assertEqual(net.get_response("grid").dims, (2, 1, 4, 4))
        self.assertEqual(net.get_response("pool").dims, (2, 1, 2, 2))

        net.rand_init()
        net.forward()
        fc = net.get_response("fc").read_data().reshape(2, 1, 4, 4)
        expected = fc.reshape(2, 1, 2, 2, 2, 2).max(axis=(3, 5))
        np.testing.assert_allclose(net.get_response("pool").data, expected)

    def test_responses_shared_by_name(self):
        net = self.net(
            [
                self.tensor("x", (1, 4)),
                {"type": "Activation", "name": "relu", "in": ["x"], "out": ["x"]},
            ]
        )
        self.assertEqual(list(net.responses), ["x"])
        self.assertIs(net.layers[1].inputs[0], net.layers[1].outputs[0])

    def test_duplicate_layer_name(self):
        with self.assertRaises(ConfigError):
            self.net([self.tensor("x", (1, 2)), self.tensor("x", (1, 2))])

    def test_allocate_twice_reserves_nothing_new(self):
        net = self.net(self.classifier())
        first = net.allocate(Phase.TESTING)
        self.assertGreater(first, 0)
        self.assertEqual(net.allocate(Phase.TESTING), first)

    def test_from_file_owns_its_context(self):
        path = os.path.join(self.tmp, "net.json")
        with open(path, "w") as f:
            json.dump({"test": {"GPU": 1}, "layers": [self.tensor("x", (1, 2))]}, f)
        with Net.from_file(path, backend=self.backend) as net:
            self.assertEqual(net.context.device_id, 1)
            net.allocate()
        self.assertTrue(net.context.closed)

    def test_format_bytes(self):
        self.assertEqual(format_bytes(512), "512 B")
        self.assertEqual(format_bytes(1536), "1.50 KB")
        self.assertEqual(format_bytes(3 * 1024 ** 2), "3.00 MB")


class TestNetExecution(_NetTestCase):
    def _fan_out(self):
        return self.net(
            [
                self.tensor("x", (2, 3)),
                {"type": "InnerProduct", "name": "fc", "in": ["x"], "out": ["h"], "num_output": 4},
                {"type": "ConstantGradient", "name": "g1", "in": ["h"], "value": 1.0},
                {"type": "ConstantGradient", "name": "g2", "in": ["h"], "value": 2.0},
                {"type": "ConstantGradient", "name": "g3", "in": ["h"], "value": 10.0, "phase": "Testing"},
            ]
        )

    def test_gradients_of_consumers_accumulate(self):
        net = self._fan_out()
        net.allocate(Phase.TRAINING)
        net.rand_init()
        h = net.get_response("h")
        self.assertTrue(h.need_diff)

        for _ in range(2):
            net.forward()
            net.backward()
            np.testing.assert_array_equal(h.diff, np.full((2, 4), 3.0))

        fc = net.get_layer("fc")
        x = net.get_response("x").data
        np.testing.assert_allclose(fc.bias.diff, np.full(4, 2 * 2 * 3.0))
        np.testing.assert_allclose(fc.weight.diff, 2 * 3.0 * np.tile(x.sum(0), (4, 1)), rtol=1e-5)

    def test_step_train_clears_parameter_gradients(self):
        net = self._fan_out()
        net.allocate(Phase.TRAINING)
        net.rand_init()
        fc = net.get_layer("fc")
        net.step_train()
        first = fc.bias.diff.copy()
        net.step_train()
        np.testing.assert_array_equal(fc.bias.diff, first)

    def test_debug_mode_logs_and_checks_nan(self):
        net = self.net([self.tensor("x", (1, 3))], debug_mode=True)
        net.allocate(Phase.TESTING)
        with self.assertLogs("marvinnet.infrastructure.net._net", level="INFO") as cm:
            net.forward()
        self.assertTrue(any("[Forward] Layer[0] x" in line for line in cm.output))

        net.get_response("x").data[0, 1] = np.nan
        with self.assertRaises(FatalError):
            net.forward()

    def test_step_test_averages(self):
        net = self.net(self.classifier(n_items=4, batch_size=2), test_iter=2)
        net.allocate(Phase.TESTING)
        net.rand_init()
        net.step_test()
        loss = net.loss_layers[0]
        self.assertGreaterEqual(loss.result, 0.0)
        self.assertLessEqual(loss.result, 1.0)
        self.assertGreater(loss.loss, 0.0)
        self.assertEqual(net.active_loss_layers(), [loss])


class TestNetWeights(_NetTestCase):
    def _ip_net(self, num_output=3):
        return self.net(
            [
                self.tensor("x", (2, 4)),
                {"type": "InnerProduct", "name": "fc", "in": ["x"], "out": ["fc"], "num_output": num_output},
            ]
        )

    def test_save_and_load_round_trip(self):
        src = self._ip_net()
        src.allocate(Phase.TESTING)
        src.rand_init()
        path = os.path.join(self.tmp, "weights.marvin")
        src.save_weights(path)
        self.assertEqual([b.name for b in read_buffers(path)], ["fc.weight", "fc.bias"])

        dst = self._ip_net()
        dst.allocate(Phase.TESTING)
        report = dst.load_weights(path)
        self.assertEqual(report.loaded, ["fc.weight", "fc.bias"])
        np.testing.assert_array_equal(dst.get_layer("fc").weight.data, src.get_layer("fc").weight.data)

    def test_partial_checkpoint(self):
        net = self._ip_net()
        net.allocate(Phase.TESTING)
        records = [
            Buffer.from_array(np.ones((3, 4), dtype=np.float32), name="fc.weight"),
            Buffer.from_array(np.ones(5, dtype=np.float32), name="fc.bias"),
            Buffer.from_array(np.ones(2, dtype=np.float32), name="ghost.weight"),
            Buffer.from_array(np.ones((3, 4), dtype=np.float32), name="fc.weight_diff"),
        ]
        with self.assertLogs("marvinnet", level="WARNING") as cm:
            report = net.load_weights(records)

        self.assertEqual(report.loaded, ["fc.weight"])
        self.assertEqual(report.skipped, ["fc.bias"])
        warnings = "\n".join(cm.output)
        self.assertIn("ghost.weight", warnings)
        self.assertIn("fc.bias", warnings)
        self.assertNotIn("fc.weight_diff", warnings)
        np.testing.assert_array_equal(net.get_layer("fc").weight.data, np.ones((3, 4)))

    def test_same_count_other_dims_loads(self):
        net = self._ip_net()
        net.allocate(Phase.TESTING)
        record = Buffer.from_array(np.arange(12, dtype=np.float32).reshape(4, 3), name="fc.weight")
        with self.assertLogs("marvinnet.infrastructure.layers._base", level="WARNING"):
            report = net.load_weights([record])
        self.assertEqual(report.loaded, ["fc.weight"])
        np.testing.assert_array_equal(net.get_layer("fc").weight.data.reshape(-1), np.arange(12))

    def test_diff_snapshot(self):
        net = self._ip_net()
        net.allocate(Phase.TRAINING)
        net.get_layer("fc").weight.diff[...] = 0.5
        path = os.path.join(self.tmp, "diffs.marvin")
        net.save_weights(path, diff=True)
        names = [b.name for b in read_buffers(path)]
        self.assertEqual(names, ["fc.weight", "fc.bias", "fc.weight_diff", "fc.bias_diff"])

        other = self._ip_net()
        other.allocate(Phase.TRAINING)
        other.load_weights(path, diff=True)
        np.testing.assert_array_equal(other.get_layer("fc").weight.diff, np.full((3, 4), 0.5))


class TestNetTest(_NetTestCase):
    def test_runs_one_epoch_and_saves_features(self):
        net = self.net(self.classifier())
        net.allocate(Phase.TESTING)
        net.rand_init()
        out = os.path.join(self.tmp, "features.tensor")

        result = net.test(["data"], [out])
        self.assertEqual(len(result), 1)
        self.assertGreaterEqual(result[0], 0.0)
        self.assertLessEqual(result[0], 1.0)

        saved = Buffer.load(out)
        self.assertEqual(saved.dims, (6, 4))
        expected = np.zeros((6, 4), dtype=np.float32)
        expected[:5] = np.arange(20, dtype=np.float32).reshape(5, 4) / 10.0
        np.testing.assert_allclose(saved.array, expected)

    def test_features_split_across_files(self):
        net = self.net(self.classifier())
        net.allocate(Phase.TESTING)
        net.rand_init()
        prefix = os.path.join(self.tmp, "feat")

        net.test(["label"], [prefix], iters_per_save=2)
        first = Buffer.load(f"{prefix}_0.tensor")
        second = Buffer.load(f"{prefix}_1.tensor")
        self.assertEqual(first.dims, (4, 1))
        self.assertEqual(second.dims, (2, 1))
        np.testing.assert_array_equal(first.array.reshape(-1), [0, 1, 2, 0])
        np.testing.assert_array_equal(second.array.reshape(-1), [1, 0])

    def test_argument_checks(self):
        net = self.net(self.classifier())
        net.allocate(Phase.TESTING)
        with self.assertRaises(ConfigError):
            net.test(["data"], [])
        with self.assertRaises(ConfigError):
            net.test(["nope"], [os.path.join(self.tmp, "x.tensor")])

    def test_requires_data_layer(self):
        net = self.net([{"type": "Activation", "name": "a", "in": ["x"], "out": ["y"]}])
        with self.assertRaises(FatalError):
            net.test()


if __name__ == "__main__":
    unittest.main()
