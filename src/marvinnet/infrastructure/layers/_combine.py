"""
Layers combining groups of inputs.

Inputs are consumed in consecutive groups of ``k = len(in) / len(out)``
(``k >= 2``): inputs ``k * i`` through ``k * i + k - 1`` produce output
``i``.

- `ElementWise` combines a group element by element.
- `Concat` stacks a group along the channel dimension.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

import numpy as np

from ...domain._errors import NotImplementedModeError, ShapeMismatchError
from ...domain._phase import Phase
from .._response import Response
from .._description import AttributeReader
from ._base import Layer
from ._registry import register_layer


class ElementWiseMode(Enum):
    EQL = "ElementWise_EQL"
    MUL = "ElementWise_MUL"
    SUM = "ElementWise_SUM"
    MAX = "ElementWise_MAX"


class _GroupedLayer(Layer):
    def _grouped(self) -> List[List[Response]]:
        k = self._groups(2)
        return [self.inputs[k * i : k * (i + 1)] for i in range(len(self.outputs))]

    @staticmethod
    def _merge_receptive(group: List[Response], dst: Response) -> None:
        fields = [r.receptive_field for r in group if r.receptive_field]
        gaps = [r.receptive_gap for r in group if r.receptive_gap]
        offsets = [r.receptive_offset for r in group if r.receptive_offset]
        if fields:
            dst.receptive_field = [max(v) for v in zip(*fields)]
        if gaps:
            dst.receptive_gap = [max(v) for v in zip(*gaps)]
        if offsets:
            dst.receptive_offset = [min(v) for v in zip(*offsets)]


@register_layer("ElementWise")
class ElementWise(_GroupedLayer):
    """
    Element-wise combination of equally shaped inputs.

    Parameters
    ----------
    mode : ElementWiseMode
        EQL writes 1 where all inputs are equal and 0 elsewhere. SUM, MUL and
        MAX combine the inputs with the named operation.

    Notes
    -----
    No mode has a gradient: a backward pass that would have to deliver a
    gradient to an input is fatal.
    """

    def __init__(self, name: str, context: Any, *, mode: ElementWiseMode, **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.mode = ElementWiseMode(mode)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["mode"] = reader.get_enum("mode", ElementWiseMode)
        return kwargs

    def setup(self, phase: Phase) -> int:
        reserved = 0
        for group, dst in zip(self._grouped(), self.outputs):
            dims = group[0].dims
            for r in group[1:]:
                if r.dims != dims:
                    raise ShapeMismatchError(dims, r.dims, where=f"{self.name}/{r.name}")
            dst.need_diff = any(r.need_diff for r in group)
            self._merge_receptive(group, dst)
            reserved += dst.allocate(dims)
        return reserved

    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        if self.mode is ElementWiseMode.EQL:
            first = arrays[0]
            equal = np.ones(first.shape, dtype=bool)
            for a in arrays[1:]:
                equal &= a == first
            return equal.astype(first.dtype)
        if self.mode is ElementWiseMode.SUM:
            return np.sum(arrays, axis=0)
        if self.mode is ElementWiseMode.MUL:
            return np.prod(arrays, axis=0)
        return np.max(arrays, axis=0)

    def forward(self, phase: Phase) -> None:
        for group, dst in zip(self._grouped(), self.outputs):
            dst.data[...] = self._combine([r.data for r in group])

    def backward(self, phase: Phase) -> None:
        for group, dst in zip(self._grouped(), self.outputs):
            if dst.diff is None:
                continue
            for r in group:
                if r.diff is not None:
                    raise NotImplementedModeError(
                        f"{self.mode.value} has no gradient (input {r.name} needs one)", where=self.name
                    )


@register_layer("Concat")
class Concat(_GroupedLayer):
    """
    Concatenation along the channel dimension (dim 1).

    All inputs of a group must agree on every dimension except dim 1.
    """

    def setup(self, phase: Phase) -> int:
        reserved = 0
        for group, dst in zip(self._grouped(), self.outputs):
            dims = list(group[0].dims)
            if len(dims) < 2:
                raise ShapeMismatchError([0, 0], dims, where=f"{self.name}/{group[0].name}")
            for r in group[1:]:
                if len(r.dims) != len(dims) or r.dims[0] != dims[0] or r.dims[2:] != tuple(dims[2:]):
                    raise ShapeMismatchError(dims, r.dims, where=f"{self.name}/{r.name}")
            dims[1] = sum(r.dims[1] for r in group)
            dst.need_diff = any(r.need_diff for r in group)
            self._merge_receptive(group, dst)
            reserved += dst.allocate(dims)
        return reserved

    def forward(self, phase: Phase) -> None:
        for group, dst in zip(self._grouped(), self.outputs):
            dst.data[...] = np.concatenate([r.data for r in group], axis=1)

    def backward(self, phase: Phase) -> None:
        for group, dst in zip(self._grouped(), self.outputs):
            if dst.diff is None:
                continue
            offset = 0
            for r in group:
                width = r.dims[1]
                if r.diff is not None:
                    self._deposit(r, dst.diff[:, offset : offset + width])
                offset += width
