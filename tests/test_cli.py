import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout

import numpy as np

from marvinnet.cli import main
from marvinnet.infrastructure.buffer import Buffer, read_buffers, write_buffers


class TestCLI(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def save(self, name, array):
        path = os.path.join(self.tmp, name)
        write_buffers(path, [Buffer.from_array(np.asarray(array, dtype=np.float32), name=name)])
        return path

    def describe(self, layers, **train):
        path = os.path.join(self.tmp, "net.json")
        block = {"path": os.path.join(self.tmp, "model"), "GPU": [0]}
        block.update(train)
        with open(path, "w") as f:
            json.dump({"train": block, "layers": layers}, f)
        return path

    def layers(self, labels=None):
        if labels is None:
            labels = np.arange(4) % 2
        return [
            {
                "type": "MemoryData",
                "name": "data",
                "phase": "TrainingTesting",
                "out": ["data", "label"],
                "file_data": self.save("data.tensor", np.ones((4, 3))),
                "file_label": self.save("label.tensor", labels),
                "batch_size": 2,
            },
            {"type": "InnerProduct", "name": "fc", "in": ["data"], "out": ["fc"], "num_output": 2},
            {"type": "Softmax", "name": "prob", "in": ["fc"], "out": ["prob"]},
            {"type": "Loss", "name": "loss", "mode": "MultinomialLogistic", "in": ["prob", "label"]},
        ]

    def test_version(self):
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(main(["--version"]), 0)
        self.assertEqual(out.getvalue().strip(), "marvinnet v0.1.0")

    def test_fatal_description_exits_with_one(self):
        net = self.describe([{"type": "Mystery", "name": "m"}])
        with self.assertLogs("marvinnet", level="ERROR") as cm:
            self.assertEqual(main(["train", net]), 1)
        self.assertIn("Mystery", cm.output[0])

    def test_label_outside_classes_exits_with_one(self):
        net = self.describe(self.layers(labels=[5, 5, 5, 5]), max_iter=1)
        with self.assertLogs("marvinnet", level="ERROR") as cm:
            self.assertEqual(main(["train", net, "--seed", "1"]), 1)
        self.assertIn("loss: label outside [0, 2)", "\n".join(cm.output))

    def test_train_then_extract_features(self):
        net = self.describe(
            self.layers(), max_iter=2, snapshot_iter=10, display_iter=1, test_interval=10, test_iter=1
        )
        self.assertEqual(main(["train", net, "--seed", "1"]), 0)
        weights = os.path.join(self.tmp, "model.marvin")
        self.assertEqual([b.name for b in read_buffers(weights)], ["fc.weight", "fc.bias"])

        features = os.path.join(self.tmp, "fc.tensor")
        self.assertEqual(main(["test", net, weights, "--response", "fc", features]), 0)
        (record,) = read_buffers(features)
        self.assertEqual(record.dims[:2], (4, 2))


if __name__ == "__main__":
    unittest.main()
