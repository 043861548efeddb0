import unittest

import numpy as np

from marvinnet.domain._errors import FatalError, ShapeMismatchError
from marvinnet.infrastructure._response import Response, c_strides
from marvinnet.infrastructure.device._backend import NumpyBackend
from marvinnet.infrastructure.device._context import DeviceContext


class TestResponse(unittest.TestCase):
    def setUp(self):
        self.ctx = DeviceContext(0, backend=NumpyBackend(device_count=1))

    def test_allocate_is_idempotent(self):
        r = Response("conv1", self.ctx)
        r.need_diff = True
        self.assertEqual(r.allocate((2, 3, 4, 4)), 2 * 2 * 3 * 4 * 4 * 4)
        self.assertEqual(r.allocate((2, 3, 4, 4)), 0)
        self.assertEqual(r.dims, (2, 3, 4, 4))
        self.assertEqual(r.strides, (48, 16, 4, 1))
        self.assertEqual(r.item_size, 48)
        self.assertEqual(r.nbytes, 2 * r.numel * 4)

    def test_allocate_other_dims_is_fatal(self):
        r = Response("fc", self.ctx)
        r.allocate((2, 8))
        with self.assertRaises(ShapeMismatchError) as cm:
            r.allocate((2, 9))
        self.assertEqual(cm.exception.expected, (2, 8))
        self.assertEqual(cm.exception.actual, (2, 9))

    def test_no_gradient_without_need_diff(self):
        r = Response("data", self.ctx)
        r.allocate((1, 3))
        self.assertIsNone(r.diff)
        self.assertEqual(r.amean_diff(), -1.0)
        with self.assertRaises(FatalError):
            r.write_diff(np.zeros(3))

    def test_late_need_diff_adds_gradient(self):
        r = Response("x", self.ctx)
        r.allocate((1, 3))
        r.need_diff = True
        self.assertEqual(r.allocate((1, 3)), 12)
        self.assertIsNotNone(r.diff)

    def test_host_transfer_and_statistics(self):
        r = Response("x", self.ctx)
        self.assertEqual(r.amean_data(), -1.0)
        with self.assertRaises(FatalError):
            r.read_data()

        r.need_diff = True
        r.allocate((2, 2))
        r.write_data([[1, -2], [3, -4]])
        self.assertAlmostEqual(r.amean_data(), 2.5)
        r.write_diff(np.ones(4))
        r.clear_diff()
        np.testing.assert_array_equal(r.read_diff(), np.zeros((2, 2)))

        copy = r.read_data()
        copy[0, 0] = 100
        self.assertEqual(r.data[0, 0], 1)

    def test_check_nan(self):
        r = Response("x", self.ctx)
        r.allocate((1, 4))
        r.check_nan()
        r.data[0, 2] = np.nan
        with self.assertRaisesRegex(FatalError, "element 2"):
            r.check_nan()

    def test_release(self):
        r = Response("x", self.ctx)
        r.allocate((8,))
        r.release()
        self.assertFalse(r.allocated)
        self.assertEqual(self.ctx.reserved_bytes, 0)

    def test_c_strides(self):
        self.assertEqual(c_strides((2, 3, 5)), (15, 5, 1))
        self.assertEqual(c_strides(()), ())


if __name__ == "__main__":
    unittest.main()
