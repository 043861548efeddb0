"""
Gaussian filler: zero-mean normal distribution whose standard deviation is
the filler parameter.
"""

import numpy as np

from ._base import WeightInitializer


@WeightInitializer.register_initializer("Gaussian")
def gaussian(array: np.ndarray, param: float, rng: np.random.Generator) -> np.ndarray:
    array[...] = rng.normal(0.0, float(param), size=array.shape).astype(array.dtype, copy=False)
    return array
