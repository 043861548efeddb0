"""
Abstract interfaces and utilities for parameter filling.

This module defines the abstract base class for the filler registry used by
parameterized layers, along with the shared fan-in helper. The concrete
registry and the filler functions live in the infrastructure layer.

Fillers operate on host arrays in place. A filler receives the array to fill,
a scalar parameter taken from the architecture description (for example the
standard deviation of a Gaussian filler) and the random generator of the
device context the parameter belongs to.
"""

from __future__ import annotations

from abc import ABC
from typing import Callable, Dict, TypeVar

import numpy as np


T = TypeVar("T", bound=Callable[..., np.ndarray])


class _WeightInitializer(ABC):
    """
    Abstract base class for filler dispatchers.

    Design notes
    ------------
    - Fillers are identified by the names used in the architecture
      description ("Xavier", "Gaussian", "Constant").
    - Each filler mutates an array in place and returns it.
    - This class only defines the expected interface; the registry storage
      and dispatch live in the infrastructure layer.
    """

    INITIALIZERS: Dict[str, Callable] = {}

    def __init__(self, initializer_name: str) -> None:
        """
        Construct a filler dispatcher.

        Parameters
        ----------
        initializer_name:
            The string key identifying a registered filler.
        """
        ...

    @classmethod
    def register_initializer(
        cls, name: str, *, overwrite: bool = False
    ) -> Callable[[T], T]:
        """
        Register a filler under a given name.

        Parameters
        ----------
        name:
            Name used to identify the filler.
        overwrite:
            Whether to allow overwriting an existing registration.
        """
        ...

    @classmethod
    def available(cls) -> tuple[str, ...]:
        """Return the names of all registered fillers."""
        ...

    def __call__(
        self, array: np.ndarray, param: float, rng: np.random.Generator
    ) -> np.ndarray:
        """Fill `array` in place and return it."""
        ...


def _calculate_fan_in(shape: tuple[int, ...]) -> int:
    """
    Compute the fan-in of a parameter shape.

    Dimension 0 indexes output units, so every remaining element of the
    parameter contributes to one output unit:

        fan_in = numel / shape[0]

    Parameters
    ----------
    shape:
        Shape of the parameter array.

    Returns
    -------
    int
        The fan-in value, at least 1.
    """
    if len(shape) == 0:
        return 1
    numel = 1
    for d in shape:
        numel *= int(d)
    return max(1, numel // max(1, int(shape[0])))
