"""
Parameter filler public API.

This module aggregates the built-in fillers (Xavier, Gaussian, Constant) and
registers them into the global `WeightInitializer` registry via import side
effects.

Exports
-------
- WeightInitializer:
    The registry-backed dispatcher used to fill parameter arrays.
"""

from ._xavier import *
from ._gaussian import *
from ._constants import *
from ._base import WeightInitializer

__all__ = [
    WeightInitializer.__name__,
]
