"""
Concrete trainable parameter implementation.

A `Parameter` is a weight or bias array owned by a layer, together with:

- `diff`: the gradient accumulated by `backward`,
- `hist`: the optimizer history (velocity) computed by the solver,
- the per-parameter learning-rate and decay multipliers and the filler used
  by `fill`.

Design notes
------------
- A parameter owns its `data` array. Its `diff` and `hist` arrays are either
  owned locally (a graph trained on its own) or bound to slots of a shared
  ``(N + 1, numel)`` region owned by the solver: slot 0 is the history shared
  by all replicas, slot ``k + 1`` is the gradient of replica ``k``.
- Binding to a shared region never copies. Replicas only ever write their own
  slot, so the solver can reduce gradients with plain offset arithmetic.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from ..domain._errors import FatalError, ShapeMismatchError
from ..domain._parameter import IParameter
from .device._context import DeviceContext
from .utils.weight_initializer import WeightInitializer

logger = logging.getLogger(__name__)


class Parameter(IParameter):
    """
    Trainable array with gradient and history buffers.

    Parameters
    ----------
    name : str
        Record name used in weight files, e.g. ``"conv1.weight"``.
    dims : Sequence[int]
        Parameter dimensions.
    context : DeviceContext
        Device handle of the owning graph.
    lr_mult : float, optional
        Learning-rate multiplier. Defaults to 1.
    decay_mult : float, optional
        Weight-decay multiplier. Defaults to 1.
    filler : str, optional
        Registered filler name. Defaults to "Xavier".
    filler_param : float, optional
        Scalar handed to the filler. Defaults to 0.
    """

    def __init__(
        self,
        name: str,
        dims: Sequence[int],
        context: DeviceContext,
        *,
        lr_mult: float = 1.0,
        decay_mult: float = 1.0,
        filler: str = "Xavier",
        filler_param: float = 0.0,
    ) -> None:
        self.name = str(name)
        self._dims: Tuple[int, ...] = tuple(int(d) for d in dims)
        self.context = context
        self.lr_mult = float(lr_mult)
        self.decay_mult = float(decay_mult)
        self._filler = WeightInitializer(filler)
        self.filler_param = float(filler_param)
        self._data: Optional[np.ndarray] = None
        self._diff: Optional[np.ndarray] = None
        self._hist: Optional[np.ndarray] = None
        self._owns_buffers = False

    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def numel(self) -> int:
        return int(np.prod(self._dims, dtype=np.int64))

    @property
    def data(self) -> Optional[np.ndarray]:
        return self._data

    @property
    def diff(self) -> Optional[np.ndarray]:
        return self._diff

    @property
    def hist(self) -> Optional[np.ndarray]:
        return self._hist

    @property
    def filler(self) -> str:
        return self._filler.name

    # ---- allocation ----
    def allocate(self, *, local_buffers: bool) -> int:
        """
        Reserve the data array, and with `local_buffers` also owned gradient
        and history arrays. Idempotent; returns the bytes newly reserved.
        """
        reserved = 0
        if self._data is None:
            self._data = self.context.zeros(self._dims)
            reserved += int(self._data.nbytes)
        if local_buffers and self._diff is None and self._hist is None:
            self._diff = self.context.zeros(self._dims)
            self._hist = self.context.zeros(self._dims)
            reserved += int(self._diff.nbytes) + int(self._hist.nbytes)
            self._owns_buffers = True
        return reserved

    def bind_region(self, region: np.ndarray, replica: int) -> None:
        """
        Use rows of a solver-owned ``(N + 1, numel)`` region as history and
        gradient buffers.

        Parameters
        ----------
        region : numpy.ndarray
            Shared region; row 0 is the history.
        replica : int
            Index of the replica this parameter belongs to; its gradient is
            row ``replica + 1``.
        """
        if region.ndim != 2 or region.shape[1] != self.numel:
            raise ShapeMismatchError((region.shape[0], self.numel), region.shape, where=self.name)
        if not 0 <= replica < region.shape[0] - 1:
            raise FatalError(f"replica {replica} outside region of {region.shape[0]} rows", where=self.name)
        if self._owns_buffers:
            self.context.release(self._diff)
            self.context.release(self._hist)
            self._owns_buffers = False
        self._hist = region[0].reshape(self._dims)
        self._diff = region[replica + 1].reshape(self._dims)

    # ---- state ----
    def fill(self) -> None:
        """Initialize `data` with the configured filler."""
        self._require_data()
        self._filler(self._data, self.filler_param, self.context.rng)

    def clear_diff(self) -> None:
        if self._diff is not None:
            self._diff.fill(0)

    def clear_hist(self) -> None:
        if self._hist is not None:
            self._hist.fill(0)

    def apply_history(self) -> None:
        """``data -= hist``; no-op before a history buffer exists."""
        if self._data is not None and self._hist is not None:
            self._data -= self._hist

    def load(self, values: np.ndarray) -> None:
        """Copy `values` (any shape with the same element count) into `data`."""
        self._require_data()
        values = np.asarray(values)
        if values.size != self.numel:
            raise ShapeMismatchError(self._dims, values.shape, where=self.name)
        self._data[...] = values.reshape(self._dims)

    def load_diff(self, values: np.ndarray) -> None:
        if self._diff is None:
            raise FatalError("no gradient buffer", where=self.name)
        values = np.asarray(values)
        if values.size != self.numel:
            raise ShapeMismatchError(self._dims, values.shape, where=self.name)
        self._diff[...] = values.reshape(self._dims)

    def _require_data(self) -> None:
        if self._data is None:
            raise FatalError("used before allocation", where=self.name)

    # ---- introspection ----
    def amean_data(self) -> float:
        return -1.0 if self._data is None else float(np.abs(self._data).mean())

    def amean_diff(self) -> float:
        return -1.0 if self._diff is None else float(np.abs(self._diff).mean())

    def __repr__(self) -> str:
        return f"Parameter(name={self.name!r}, dims={list(self._dims)})"
