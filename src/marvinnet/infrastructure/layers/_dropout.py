"""
Dropout regularization layer.

This layer implements inverted dropout: during training every activation is
kept with probability ``1 - dropout_rate`` and scaled by
``1 / (1 - dropout_rate)``, so no rescaling is needed at test time, where the
layer copies its input through.

Design notes
------------
- Masks are double-buffered: the mask applied by a forward pass was drawn
  after the previous pass, and the next one is drawn as soon as the current
  one is taken. The backward pass reuses the mask of the last forward pass.
- The mask already carries the inverted scaling factor.
- Input and output may be the same response (in place).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np

from ...domain._errors import ConfigError
from ...domain._phase import Phase
from .._description import AttributeReader
from ._base import Layer
from ._registry import register_layer


@register_layer("Dropout")
class Dropout(Layer):
    """
    Dropout layer (inverted dropout).

    Behavior
    --------
    - Training phase:
        y = x * mask, where mask ~ Bernoulli(1 - rate) / (1 - rate)
    - Other phases:
        y = x (identity)

    Parameters
    ----------
    dropout_rate : float, optional
        Probability of zeroing an element. Must satisfy 0 <= rate < 1.
        Defaults to 0.5.
    """

    def __init__(self, name: str, context: Any, *, dropout_rate: float = 0.5, **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        if not 0.0 <= float(dropout_rate) < 1.0:
            raise ConfigError(f"dropout_rate must be in [0, 1), got {dropout_rate}", where=self.name)
        self.dropout_rate = float(dropout_rate)
        self.scale = 1.0 / (1.0 - self.dropout_rate)
        self._next: List[Optional[np.ndarray]] = []
        self._applied: List[Optional[np.ndarray]] = []

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["dropout_rate"] = reader.get_float("dropout_rate", 0.5)
        return kwargs

    def _draw(self, dims: Any) -> np.ndarray:
        keep = self.context.rng.random(dims) >= self.dropout_rate
        return keep.astype(self.context.dtype) * np.float32(self.scale)

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        reserved = 0
        for src, dst in zip(self.inputs, self.outputs):
            if dst is not src:
                dst.need_diff = src.need_diff
                dst.copy_receptive(src)
            reserved += dst.allocate(src.dims)
        if not self._next:
            self._next = [self._draw(src.dims) for src in self.inputs]
            self._applied = [None] * len(self.inputs)
        return reserved

    def forward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            if phase is Phase.TRAINING:
                self._applied[i] = self._next[i]
                dst.data[...] = src.data * self._applied[i]
                self._next[i] = self._draw(src.dims)
            elif dst is not src:
                dst.data[...] = src.data

    def backward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            if dst.diff is None or src.diff is None:
                continue
            grad = dst.diff
            if phase is Phase.TRAINING and self._applied[i] is not None:
                grad = grad * self._applied[i]
            self._deposit(src, grad, in_place=dst is src)
