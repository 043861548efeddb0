"""
Edge (response) interface definitions.

A response is a named activation buffer, with an optional gradient buffer of
the same shape, connecting the nodes of one graph. This module defines the
structural contract the graph and the layers rely on.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np


@runtime_checkable
class IResponse(Protocol):
    """
    Domain-level edge interface.

    Notes
    -----
    - `dims` is empty until the first `allocate` call freezes it.
    - `diff` is None when no consumer needs a gradient for this edge.
    - `receptive_field`, `receptive_gap` and `receptive_offset` are
      introspection metadata in input-coordinate units; nothing in the engine
      depends on them for correctness.
    """

    name: str
    need_diff: bool
    receptive_field: List[int]
    receptive_gap: List[int]
    receptive_offset: List[int]

    @property
    def dims(self) -> Tuple[int, ...]: ...

    @property
    def data(self) -> Optional[np.ndarray]: ...

    @property
    def diff(self) -> Optional[np.ndarray]: ...

    def allocate(self, dims: Sequence[int]) -> int:
        """
        Reserve device memory for `dims` and return the bytes reserved.

        A second call with identical dimensions reserves nothing and returns
        0; a call with different dimensions is fatal.
        """
        ...

    def clear_diff(self) -> None:
        """Zero the gradient buffer, if any."""
        ...
