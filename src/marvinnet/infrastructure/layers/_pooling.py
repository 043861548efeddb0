"""
Spatial pooling layer.

Max, inclusive-average and exclusive-average pooling over any number of
spatial dimensions. Kernels live in `ops.pool_cpu`; this layer adds shape
inference, receptive-field bookkeeping and gradient accumulation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ...domain._errors import ConfigError, ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ..ops import pool_cpu
from ._base import Layer, receptive_of
from ._registry import register_layer


class PoolingMode(Enum):
    MAX = pool_cpu.MAX
    AVERAGE_INCLUDE = pool_cpu.AVERAGE_INCLUDE
    AVERAGE_EXCLUDE = pool_cpu.AVERAGE_EXCLUDE


@register_layer("Pooling")
class Pooling(Layer):
    """
    N-d pooling.

    Parameters
    ----------
    window : Sequence[int]
        Pooling window per spatial dimension.
    mode : PoolingMode, optional
        Defaults to max.
    padding : Sequence[int], optional
        Defaults to 0s.
    stride : Sequence[int], optional
        Defaults to `window`.

    Notes
    -----
    Output size per spatial dimension is
    ``1 + (in + 2 * padding - window) // stride``.
    """

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        window: Sequence[int],
        mode: PoolingMode = PoolingMode.MAX,
        padding: Optional[Sequence[int]] = None,
        stride: Optional[Sequence[int]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.mode = PoolingMode(mode)
        self.window = [int(w) for w in window]
        self.padding = [0] * len(self.window) if padding is None else [int(p) for p in padding]
        self.stride = list(self.window) if stride is None else [int(s) for s in stride]
        if not (len(self.padding) == len(self.stride) == len(self.window)):
            raise ConfigError("window, padding and stride must have one entry per spatial dim", where=self.name)
        self._argmax: List[Optional[np.ndarray]] = []

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        window = reader.get_list("window")
        kwargs.update(
            window=window,
            mode=reader.get_enum("mode", PoolingMode, PoolingMode.MAX),
            padding=reader.get_list("padding", [0] * len(window)),
            stride=reader.get_list("stride", list(window)),
        )
        return kwargs

    def _kernel_args(self) -> Dict[str, Any]:
        return dict(mode=self.mode.value, window=self.window, padding=self.padding, stride=self.stride)

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        spatial = len(self.window)
        reserved = 0
        for src, dst in zip(self.inputs, self.outputs):
            dims = src.dims
            if len(dims) != spatial + 2:
                raise ShapeMismatchError([0, 0] + self.window, dims, where=f"{self.name}/{src.name}")
            dst.need_diff = src.need_diff

            field_, gap, offset = receptive_of(src, spatial)
            dst.receptive_field = [f + (w - 1) * g for f, w, g in zip(field_, self.window, gap)]
            dst.receptive_gap = [s * g for s, g in zip(self.stride, gap)]
            dst.receptive_offset = [o - p * g for o, p, g in zip(offset, self.padding, gap)]

            out_spatial = pool_cpu.pool_output_dims(dims[2:], self.window, self.padding, self.stride)
            if any(d < 1 for d in out_spatial):
                raise ShapeMismatchError(dims, list(dims[:2]) + list(out_spatial), where=self.name)
            reserved += dst.allocate(list(dims[:2]) + list(out_spatial))
        self._argmax = [None] * len(self.inputs)
        return reserved

    def forward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            y, self._argmax[i] = pool_cpu.pool_forward_cpu(src.data, **self._kernel_args())
            dst.data[...] = y

    def backward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            if dst.diff is None or src.diff is None:
                continue
            grad = pool_cpu.pool_backward_cpu(dst.diff, src.dims, argmax=self._argmax[i], **self._kernel_args())
            self._deposit(src, grad)
