"""
Spatial convolution layer.

Each input response is convolved with the same weight into the output at the
same position, so one layer can apply shared filters to several streams.
Any number of spatial dimensions is supported; the kernels live in
`ops.conv_cpu`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ...domain._errors import ConfigError, ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ..ops.conv_cpu import conv_backward_cpu, conv_forward_cpu, conv_output_dims
from ._base import ParameterizedLayer, receptive_of
from ._registry import register_layer

logger = logging.getLogger(__name__)


@register_layer("Convolution")
class Convolution(ParameterizedLayer):
    """
    N-d grouped convolution with bias.

    Parameters
    ----------
    num_output : int
        Number of output channels.
    window : Sequence[int]
        Kernel size per spatial dimension.
    padding : Sequence[int], optional
        Zero padding per spatial dimension. Defaults to 0s.
    stride : Sequence[int], optional
        Defaults to 1s.
    upscale : Sequence[int], optional
        Kernel dilation. Defaults to 1s.
    group : int, optional
        Channel groups. Defaults to 1.

    Notes
    -----
    Weight dims are ``[num_output, C / group, *window]``; bias dims are
    ``[1, num_output, 1, ...]``.
    """

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        num_output: int,
        window: Sequence[int],
        padding: Optional[Sequence[int]] = None,
        stride: Optional[Sequence[int]] = None,
        upscale: Optional[Sequence[int]] = None,
        group: int = 1,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.num_output = int(num_output)
        self.window = [int(w) for w in window]
        n = len(self.window)
        self.padding = [0] * n if padding is None else [int(p) for p in padding]
        self.stride = [1] * n if stride is None else [int(s) for s in stride]
        self.upscale = [1] * n if upscale is None else [int(u) for u in upscale]
        self.group = int(group)
        if not (len(self.padding) == len(self.stride) == len(self.upscale) == n):
            raise ConfigError("window, padding, stride and upscale must have one entry per spatial dim", where=self.name)
        if self.group < 1 or self.num_output % self.group:
            raise ConfigError(f"num_output {self.num_output} not divisible by group {self.group}", where=self.name)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        window = reader.get_list("window")
        n = len(window)
        kwargs.update(
            num_output=reader.get_int("num_output"),
            window=window,
            padding=reader.get_list("padding", [0] * n),
            stride=reader.get_list("stride", [1] * n),
            upscale=reader.get_list("upscale", [1] * n),
            group=reader.get_int("group", 1),
        )
        return kwargs

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        spatial = len(self.window)
        channels = self.inputs[0].dims[1] if len(self.inputs[0].dims) > 1 else 0
        if channels % self.group:
            raise ConfigError(f"{channels} input channels not divisible by group {self.group}", where=self.name)
        if self.group > 1:
            logger.info("%s: %d groups", self.name, self.group)

        reserved = self._allocate_parameters(
            [self.num_output, channels // self.group] + self.window,
            [1, self.num_output] + [1] * spatial,
        )
        for src, dst in zip(self.inputs, self.outputs):
            dims = src.dims
            if len(dims) != spatial + 2 or dims[1] != channels:
                raise ShapeMismatchError(
                    [dims[0] if dims else 0, channels] + [0] * spatial, dims, where=f"{self.name}/{src.name}"
                )
            dst.need_diff = self.train_me or src.need_diff

            field_, gap, offset = receptive_of(src, spatial)
            dst.receptive_field = [f + (w - 1) * u * g for f, w, u, g in zip(field_, self.window, self.upscale, gap)]
            dst.receptive_gap = [s * g for s, g in zip(self.stride, gap)]
            dst.receptive_offset = [o - p * g for o, p, g in zip(offset, self.padding, gap)]

            out_spatial = conv_output_dims(dims[2:], self.window, self.padding, self.stride, self.upscale)
            if any(d < 1 for d in out_spatial):
                raise ShapeMismatchError(dims, [dims[0], self.num_output] + list(out_spatial), where=self.name)
            reserved += dst.allocate([dims[0], self.num_output] + list(out_spatial))
        return reserved

    def _kernel_args(self) -> Dict[str, List[int]]:
        return dict(stride=self.stride, padding=self.padding, dilation=self.upscale)

    def forward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            dst.data[...] = conv_forward_cpu(
                src.data, self.weight.data, self.bias.data, group=self.group, **self._kernel_args()
            )

    def backward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            if dst.diff is None:
                continue
            grad_x, grad_w, grad_b = conv_backward_cpu(
                src.data,
                self.weight.data,
                dst.diff,
                group=self.group,
                need_input_grad=src.diff is not None,
                need_param_grad=self.train_me and self.weight.diff is not None,
                **self._kernel_args(),
            )
            if grad_x is not None:
                self._deposit(src, grad_x)
            if grad_w is not None:
                np.add(self.weight.diff, grad_w, out=self.weight.diff)
                np.add(self.bias.diff, grad_b.reshape(self.bias.dims), out=self.bias.diff)
