"""
Region-of-interest layers.

- `ROI` crops a fixed-size window out of every item, at offsets read from a
  second input.
- `ROIPooling` max-pools arbitrary regions of a feature map onto a fixed
  grid, one output item per region.

Both take their inputs in pairs: ``in[2 * i]`` is the data and
``in[2 * i + 1]`` the offsets or regions for output ``i``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ...domain._errors import ArityError, ConfigError, ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ..ops.roi_cpu import (
    roi_crop_backward_cpu,
    roi_crop_forward_cpu,
    roi_pool_backward_cpu,
    roi_pool_forward_cpu,
)
from ._base import Layer
from ._registry import register_layer


class _PairedInputs(Layer):
    def _pairs(self):
        if not self.outputs or len(self.inputs) != 2 * len(self.outputs):
            raise ArityError(
                f"needs two inputs per output, got {len(self.inputs)} and {len(self.outputs)}",
                where=self.name,
            )
        return [(self.inputs[2 * i], self.inputs[2 * i + 1], out) for i, out in enumerate(self.outputs)]


@register_layer("ROI")
class ROI(_PairedInputs):
    """
    Per-item crop.

    Parameters
    ----------
    shape : Sequence[int]
        Crop size for every dimension after the item dimension; 0 keeps the
        input size.

    Notes
    -----
    The offsets input holds one row of ``len(shape)`` offsets per item,
    channel offset included.
    """

    def __init__(self, name: str, context: Any, *, shape: Sequence[int], **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.shape = [int(s) for s in shape]

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["shape"] = reader.get_list("shape")
        return kwargs

    def setup(self, phase: Phase) -> int:
        reserved = 0
        for data, start, out in self._pairs():
            dims = data.dims
            if len(self.shape) != len(dims) - 1:
                raise ConfigError(
                    f"shape {self.shape} needs {len(dims) - 1} entries for input {list(dims)}",
                    where=self.name,
                )
            if not start.dims or start.dims[0] != dims[0] or start.item_size != len(self.shape):
                raise ShapeMismatchError([dims[0], len(self.shape)], start.dims, where=f"{self.name}/{start.name}")
            out.need_diff = data.need_diff
            out_dims = [dims[0]] + [s if s else d for s, d in zip(self.shape, dims[1:])]
            if any(o > d for o, d in zip(out_dims[1:], dims[1:])):
                raise ShapeMismatchError(dims, out_dims, where=self.name)
            reserved += out.allocate(out_dims)
        return reserved

    def forward(self, phase: Phase) -> None:
        for data, start, out in self._pairs():
            out.data[...] = roi_crop_forward_cpu(data.data, start.data, out.dims)

    def backward(self, phase: Phase) -> None:
        for data, start, out in self._pairs():
            if out.diff is None or data.diff is None:
                continue
            self._deposit(data, roi_crop_backward_cpu(out.diff, start.data, data.dims))


@register_layer("ROIPooling")
class ROIPooling(_PairedInputs):
    """
    Max pooling of regions of interest onto a fixed grid.

    Parameters
    ----------
    shape : Sequence[int]
        Output grid per spatial dimension.
    spatial_scale : float
        Factor from region coordinates to feature-map coordinates.

    Notes
    -----
    The regions input holds one row per region:
    ``[batch_index, start_0, end_0, start_1, end_1, ...]`` with inclusive
    ends. The output holds one item per region.
    """

    def __init__(
        self, name: str, context: Any, *, shape: Sequence[int], spatial_scale: float, **kwargs: Any
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.shape = [int(s) for s in shape]
        self.spatial_scale = float(spatial_scale)
        if any(s < 1 for s in self.shape):
            raise ConfigError(f"shape {self.shape} must be positive", where=self.name)
        self._argmax: List[Optional[np.ndarray]] = []

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(shape=reader.get_list("shape"), spatial_scale=reader.get_float("spatial_scale"))
        return kwargs

    def setup(self, phase: Phase) -> int:
        reserved = 0
        pairs = self._pairs()
        for data, rois, out in pairs:
            dims = data.dims
            if len(dims) != len(self.shape) + 2:
                raise ShapeMismatchError([0, 0] + self.shape, dims, where=f"{self.name}/{data.name}")
            if not rois.dims or rois.item_size != 1 + 2 * len(self.shape):
                raise ShapeMismatchError([0, 1 + 2 * len(self.shape)], rois.dims, where=f"{self.name}/{rois.name}")
            out.need_diff = data.need_diff
            reserved += out.allocate([rois.dims[0], dims[1]] + self.shape)
        self._argmax = [None] * len(pairs)
        return reserved

    def forward(self, phase: Phase) -> None:
        for i, (data, rois, out) in enumerate(self._pairs()):
            y, self._argmax[i] = roi_pool_forward_cpu(data.data, rois.data, self.shape, self.spatial_scale)
            out.data[...] = y

    def backward(self, phase: Phase) -> None:
        for i, (data, rois, out) in enumerate(self._pairs()):
            if out.diff is None or data.diff is None or self._argmax[i] is None:
                continue
            self._deposit(data, roi_pool_backward_cpu(out.diff, self._argmax[i], data.dims))
