"""
Xavier filler.

Fills a parameter from a uniform distribution scaled by its fan-in:

    U(-scale, +scale), scale = sqrt(3 / fan_in), fan_in = numel / shape[0]

This keeps the variance of each output unit close to the variance of its
inputs at initialization. The filler parameter is unused.
"""

import math

import numpy as np

from ._base import WeightInitializer
from ....domain.utils._weight_initialization import _calculate_fan_in


@WeightInitializer.register_initializer("Xavier")
def xavier(array: np.ndarray, param: float, rng: np.random.Generator) -> np.ndarray:
    """
    Apply Xavier uniform filling in-place.

    Parameters
    ----------
    array:
        The parameter array to fill.
    param:
        Ignored.
    rng:
        Random generator of the owning device context.

    Returns
    -------
    numpy.ndarray
        The filled array (same object).
    """
    fan_in = _calculate_fan_in(tuple(array.shape))
    scale = math.sqrt(3.0 / float(fan_in))
    array[...] = rng.uniform(-scale, scale, size=array.shape).astype(array.dtype, copy=False)
    return array
