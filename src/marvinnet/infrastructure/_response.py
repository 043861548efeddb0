"""
Concrete edge (response) implementation.

A `Response` is a named activation buffer with an optional gradient buffer of
identical shape. Responses are created by the graph the first time a layer
names them and are shared by every layer that reads or writes that name.

Design notes
------------
- Memory is reserved lazily by the first `allocate` call, which freezes the
  dimensions. Later calls with the same dimensions reserve nothing; this is
  how a training-only and a testing-only layer can both write one response.
  A later call with different dimensions is fatal.
- `need_diff` is decided by the producing layer during its own allocation,
  from whether any of its inputs or parameters need a gradient. Inference-only
  subgraphs therefore never reserve gradient memory.
- The receptive field metadata is informational only.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..domain._errors import FatalError, ShapeMismatchError
from ..domain._response import IResponse
from .device._context import DeviceContext

logger = logging.getLogger(__name__)


def c_strides(dims: Sequence[int]) -> Tuple[int, ...]:
    """Return C-order element strides of `dims`."""
    strides = [1] * len(dims)
    for d in range(len(dims) - 2, -1, -1):
        strides[d] = strides[d + 1] * int(dims[d + 1])
    return tuple(strides)


class Response(IResponse):
    """
    Named activation and gradient buffer connecting layers.

    Parameters
    ----------
    name : str
        Unique name of the response within its graph.
    context : DeviceContext
        Device handle of the owning graph.
    """

    def __init__(self, name: str, context: DeviceContext) -> None:
        self.name = str(name)
        self.context = context
        self.need_diff: bool = False
        self.receptive_field: List[float] = []
        self.receptive_gap: List[float] = []
        self.receptive_offset: List[float] = []
        self._dims: Tuple[int, ...] = ()
        self._strides: Tuple[int, ...] = ()
        self._data: Optional[np.ndarray] = None
        self._diff: Optional[np.ndarray] = None

    # ---- metadata ----
    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def strides(self) -> Tuple[int, ...]:
        return self._strides

    @property
    def numel(self) -> int:
        return int(np.prod(self._dims, dtype=np.int64)) if self._dims else 0

    @property
    def item_size(self) -> int:
        """Number of elements per item (all dims after the first)."""
        return int(np.prod(self._dims[1:], dtype=np.int64)) if self._dims else 0

    @property
    def nbytes(self) -> int:
        n = 0
        if self._data is not None:
            n += int(self._data.nbytes)
        if self._diff is not None:
            n += int(self._diff.nbytes)
        return n

    @property
    def allocated(self) -> bool:
        return self._data is not None

    @property
    def data(self) -> Optional[np.ndarray]:
        return self._data

    @property
    def diff(self) -> Optional[np.ndarray]:
        return self._diff

    def copy_receptive(self, other: "Response") -> None:
        """Inherit receptive field metadata from `other`."""
        self.receptive_field = list(other.receptive_field)
        self.receptive_gap = list(other.receptive_gap)
        self.receptive_offset = list(other.receptive_offset)

    # ---- allocation ----
    def allocate(self, dims: Sequence[int]) -> int:
        """
        Reserve activation (and gradient) memory for `dims`.

        Returns
        -------
        int
            Bytes newly reserved by this call.

        Raises
        ------
        ShapeMismatchError
            If the response already holds different dimensions.
        """
        dims = tuple(int(d) for d in dims)
        if any(d <= 0 for d in dims) or not dims:
            raise ShapeMismatchError(self._dims or dims, dims, where=f"Response[{self.name}]")

        reserved = 0
        if self._data is None:
            self._dims = dims
            self._strides = c_strides(dims)
            self._data = self.context.zeros(dims)
            reserved += int(self._data.nbytes)
            logger.info(
                "  %s%s %s%s",
                "* " if self.need_diff else "  ",
                self.name,
                list(dims),
                self._describe_receptive(),
            )
        elif dims != self._dims:
            raise ShapeMismatchError(self._dims, dims, where=f"Response[{self.name}]")

        if self.need_diff and self._diff is None:
            self._diff = self.context.zeros(dims)
            reserved += int(self._diff.nbytes)
        return reserved

    def _describe_receptive(self) -> str:
        parts = []
        if self.receptive_field:
            parts.append(f" RF{self.receptive_field}")
        if self.receptive_gap:
            parts.append(f" GP{self.receptive_gap}")
        if self.receptive_offset:
            parts.append(f" OF{self.receptive_offset}")
        return "".join(parts)

    def release(self) -> None:
        self.context.release(self._data)
        self.context.release(self._diff)
        self._data = None
        self._diff = None

    # ---- gradient ----
    def clear_diff(self) -> None:
        if self._diff is not None:
            self._diff.fill(0)

    # ---- host transfer ----
    def read_data(self) -> np.ndarray:
        """Copy the activation back to a fresh host array."""
        self._require_allocated()
        return self._data.copy()

    def write_data(self, values: np.ndarray) -> None:
        """Copy host values into the activation buffer."""
        self._require_allocated()
        values = np.asarray(values)
        if values.size != self._data.size:
            raise ShapeMismatchError(self._dims, values.shape, where=f"Response[{self.name}]")
        self._data[...] = values.reshape(self._dims)

    def read_diff(self) -> Optional[np.ndarray]:
        return None if self._diff is None else self._diff.copy()

    def write_diff(self, values: np.ndarray) -> None:
        if self._diff is None:
            raise FatalError("no gradient buffer", where=f"Response[{self.name}]")
        values = np.asarray(values)
        if values.size != self._diff.size:
            raise ShapeMismatchError(self._dims, values.shape, where=f"Response[{self.name}]")
        self._diff[...] = values.reshape(self._dims)

    def _require_allocated(self) -> None:
        if self._data is None:
            raise FatalError("used before allocation", where=f"Response[{self.name}]")

    # ---- introspection ----
    def amean_data(self) -> float:
        """Mean absolute activation, or -1 when not allocated."""
        if self._data is None:
            return -1.0
        return float(np.abs(self._data).mean())

    def amean_diff(self) -> float:
        """Mean absolute gradient, or -1 when there is no gradient buffer."""
        if self._diff is None:
            return -1.0
        return float(np.abs(self._diff).mean())

    def check_nan(self) -> None:
        """
        Fatal if the activation holds a NaN.

        Raises
        ------
        FatalError
            Naming the first offending flat index.
        """
        if self._data is None:
            return
        bad = np.flatnonzero(np.isnan(self._data))
        if bad.size:
            raise FatalError(f"NaN at element {int(bad[0])}", where=f"Response[{self.name}]")

    def __repr__(self) -> str:
        return f"Response(name={self.name!r}, dims={list(self._dims)}, need_diff={self.need_diff})"
