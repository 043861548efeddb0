"""
Fully connected (inner product) layer.

Every input item is flattened and multiplied by the weight:

    y[n] = W @ x[n].ravel() + b

The output keeps the rank of the input, with singleton spatial dimensions:
an input of shape ``(N, C, H, W)`` yields ``(N, num_output, 1, 1)``.
"""

from __future__ import annotations

from typing import Any, Dict

import numpy as np

from ...domain._errors import ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ._base import ParameterizedLayer, receptive_of
from ._registry import register_layer


@register_layer("InnerProduct")
class InnerProduct(ParameterizedLayer):
    """
    Dense layer with bias.

    Parameters
    ----------
    num_output : int
        Output features per item.
    """

    def __init__(self, name: str, context: Any, *, num_output: int, **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.num_output = int(num_output)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["num_output"] = reader.get_int("num_output")
        return kwargs

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        item_size = self.inputs[0].item_size
        reserved = self._allocate_parameters([self.num_output, item_size], [self.num_output])

        for src, dst in zip(self.inputs, self.outputs):
            dims = src.dims
            if len(dims) < 2 or src.item_size != item_size:
                raise ShapeMismatchError([dims[0] if dims else 0, item_size], dims, where=f"{self.name}/{src.name}")
            dst.need_diff = self.train_me or src.need_diff

            spatial = len(dims) - 2
            field_, gap, _ = receptive_of(src, spatial)
            dst.receptive_field = [f + (d - 1) * g for f, d, g in zip(field_, dims[2:], gap)]
            dst.receptive_gap = [0.0] * spatial
            dst.receptive_offset = [0.0] * spatial

            reserved += dst.allocate([dims[0], self.num_output] + [1] * spatial)
        return reserved

    def forward(self, phase: Phase) -> None:
        w, b = self.weight.data, self.bias.data
        for src, dst in zip(self.inputs, self.outputs):
            x = src.data.reshape(src.dims[0], -1)
            dst.data[...] = (x @ w.T + b).reshape(dst.dims)

    def backward(self, phase: Phase) -> None:
        w = self.weight.data
        for src, dst in zip(self.inputs, self.outputs):
            if dst.diff is None:
                continue
            gy = dst.diff.reshape(dst.dims[0], -1)
            if src.diff is not None:
                self._deposit(src, gy @ w)
            if self.train_me and self.weight.diff is not None:
                x = src.data.reshape(src.dims[0], -1)
                np.add(self.weight.diff, gy.T @ x, out=self.weight.diff)
                np.add(self.bias.diff, gy.sum(axis=0), out=self.bias.diff)
