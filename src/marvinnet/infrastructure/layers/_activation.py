"""
Pointwise nonlinearities and the channel softmax.

Both layers map each input to the output at the same position and accept
in-place wiring (input and output the same response). Their gradients are
computed from the output activation, which is what makes in-place execution
possible.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict

import numpy as np

from ...domain._phase import Phase
from .._description import AttributeReader
from ._base import Layer
from ._registry import register_layer


class ActivationMode(Enum):
    RELU = "ReLU"
    SIGMOID = "Sigmoid"
    TANH = "TanH"


class _PointwiseLayer(Layer):
    """One output per input, same dims; gradient flows where the input needs it."""

    def setup(self, phase: Phase) -> int:
        self._expect_paired()
        reserved = 0
        for src, dst in zip(self.inputs, self.outputs):
            if dst is not src:
                dst.need_diff = src.need_diff
                dst.copy_receptive(src)
            reserved += dst.allocate(src.dims)
        return reserved

    def _apply(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _input_grad(self, y: np.ndarray, dy: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def forward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            dst.data[...] = self._apply(src.data)

    def backward(self, phase: Phase) -> None:
        for src, dst in zip(self.inputs, self.outputs):
            if dst.diff is None or src.diff is None:
                continue
            self._deposit(src, self._input_grad(dst.data, dst.diff), in_place=dst is src)


@register_layer("Activation")
class Activation(_PointwiseLayer):
    """
    Pointwise nonlinearity.

    Parameters
    ----------
    mode : ActivationMode, optional
        ReLU (default), Sigmoid or TanH.
    """

    def __init__(self, name: str, context: Any, *, mode: ActivationMode = ActivationMode.RELU, **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.mode = ActivationMode(mode)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["mode"] = reader.get_enum("mode", ActivationMode, ActivationMode.RELU)
        return kwargs

    def _apply(self, x: np.ndarray) -> np.ndarray:
        if self.mode is ActivationMode.RELU:
            return np.maximum(x, 0)
        if self.mode is ActivationMode.SIGMOID:
            return 1.0 / (1.0 + np.exp(-x))
        return np.tanh(x)

    def _input_grad(self, y: np.ndarray, dy: np.ndarray) -> np.ndarray:
        if self.mode is ActivationMode.RELU:
            return dy * (y > 0)
        if self.mode is ActivationMode.SIGMOID:
            return dy * y * (1.0 - y)
        return dy * (1.0 - y * y)


@register_layer("Softmax")
class Softmax(_PointwiseLayer):
    """
    Softmax over the channel dimension (dim 1) at every position.

    Parameters
    ----------
    stable_gradient : bool, optional
        When True (default) the output gradient is passed to the input
        unchanged. The stable multinomial loss already emits the gradient
        w.r.t. the softmax input, so the Jacobian must not be applied twice.
    """

    def __init__(self, name: str, context: Any, *, stable_gradient: bool = True, **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.stable_gradient = bool(stable_gradient)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["stable_gradient"] = reader.get_bool("stable_gradient", True)
        return kwargs

    def _apply(self, x: np.ndarray) -> np.ndarray:
        shifted = x - x.max(axis=1, keepdims=True)
        e = np.exp(shifted)
        return e / e.sum(axis=1, keepdims=True)

    def _input_grad(self, y: np.ndarray, dy: np.ndarray) -> np.ndarray:
        if self.stable_gradient:
            return dy.copy()
        return y * (dy - np.sum(dy * y, axis=1, keepdims=True))
