"""
Reshape layer.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import numpy as np

from ...domain._errors import ConfigError, ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ._base import Layer
from ._registry import register_layer


@register_layer("Reshape")
class Reshape(Layer):
    """
    Reinterpret each input with new dimensions.

    Parameters
    ----------
    shape : Sequence[int]
        Output dimensions. 0 copies the input dimension at the same index;
        a single -1 is inferred from the element count.
    """

    def __init__(self, name: str, context: Any, *, shape: Sequence[int], **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.shape = [int(s) for s in shape]
        if self.shape.count(-1) > 1:
            raise ConfigError(f"shape {self.shape} has more than one -1", where=self.name)
        if any(s < -1 for s in self.shape):
            raise ConfigError(f"shape {self.shape} has a negative entry", where=self.name)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["shape"] = reader.get_list("shape")
        return kwargs

    def output_dims(self, in_dims: Sequence[int]) -> List[int]:
        dims = []
        for i, s in enumerate(self.shape):
            if s == 0:
                if i >= len(in_dims):
                    raise ShapeMismatchError(self.shape, in_dims, where=self.name)
                dims.append(int(in_dims[i]))
            else:
                dims.append(s)
        total = int(np.prod(in_dims, dtype=np.int64))
        if -1 in dims:
            known = int(np.prod([d for d in dims if d != -1], dtype=np.int64))
            if known == 0 or total % known:
                raise ShapeMismatchError(self.shape, in_dims, where=self.name)
            dims[dims.index(-1)] = total // known
        if int(np.prod(dims, dtype=np.int64)) != total:
            raise ShapeMismatchError(dims, in_dims, where=self.name)
        return dims

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        reserved = 0
        for src, dst in zip(self.inputs, self.outputs):
            dst.need_diff = src.need_diff
            reserved += dst.allocate(self.output_dims(src.dims))
        return reserved

    def forward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            dst.data[...] = src.data.reshape(dst.dims)

    def backward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            if dst.diff is not None and src.diff is not None:
                self._deposit(src, dst.diff, in_place=dst is src)
