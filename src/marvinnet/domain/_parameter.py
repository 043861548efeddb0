"""
Trainable parameter interface definitions.

A parameter is a weight or bias array owned by a layer, paired with a
gradient buffer and an optimizer history buffer of the same shape. When a
solver drives several replicas, the history and the per-replica gradient
buffers are views into one contiguous region owned by the solver.
"""

from __future__ import annotations

from typing import Optional, Protocol, Tuple, runtime_checkable

import numpy as np


@runtime_checkable
class IParameter(Protocol):
    """
    Domain-level interface for trainable parameters.

    Notes
    -----
    - `lr_mult` and `decay_mult` scale the solver learning rate and weight
      decay for this parameter.
    - `hist` holds the velocity computed by the solver; `apply_history`
      performs ``data -= hist``.
    """

    name: str
    lr_mult: float
    decay_mult: float

    @property
    def dims(self) -> Tuple[int, ...]: ...

    @property
    def numel(self) -> int: ...

    @property
    def data(self) -> Optional[np.ndarray]: ...

    @property
    def diff(self) -> Optional[np.ndarray]: ...

    @property
    def hist(self) -> Optional[np.ndarray]: ...

    def clear_diff(self) -> None: ...

    def clear_hist(self) -> None: ...

    def apply_history(self) -> None: ...
