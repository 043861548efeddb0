"""
Constant filler.

Sets every element to the filler parameter. This is the default filler for
biases (parameter 0).
"""

import numpy as np

from ._base import WeightInitializer


@WeightInitializer.register_initializer("Constant")
def constant(array: np.ndarray, param: float, rng: np.random.Generator) -> np.ndarray:
    """
    Fill `array` with `param` in-place.

    Parameters
    ----------
    array:
        The parameter array to fill.
    param:
        Value written to every element.
    rng:
        Unused.

    Returns
    -------
    numpy.ndarray
        The filled array (same object).
    """
    array.fill(param)
    return array
