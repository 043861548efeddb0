"""
Local response normalization layer (cross-channel).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from ...domain._errors import ConfigError, NotImplementedModeError
from ...domain._phase import Phase
from .._description import AttributeReader
from ..ops.lrn_cpu import lrn_backward_cpu, lrn_forward_cpu
from ._base import Layer
from ._registry import register_layer


class LRNMode(Enum):
    CROSS_CHANNEL = "CrossChannel"
    DIVISIVE_NORMALIZATION = "DivisiveNormalization"


@register_layer("LRN")
class LRN(Layer):
    """
    Cross-channel LRN.

    Parameters
    ----------
    mode : LRNMode, optional
        Only CrossChannel is implemented; DivisiveNormalization is fatal at
        allocation.
    local_size : int, optional
        Channels in the window. Defaults to 5.
    alpha, beta, k : float, optional
        Defaults 1e-4, 0.75 and 1.
    """

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        mode: LRNMode = LRNMode.CROSS_CHANNEL,
        local_size: int = 5,
        alpha: float = 1e-4,
        beta: float = 0.75,
        k: float = 1.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.mode = LRNMode(mode)
        if int(local_size) < 1:
            raise ConfigError(f"local_size must be >= 1, got {local_size}", where=self.name)
        self.local_size = int(local_size)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.k = float(k)
        self._scale: List[Optional[np.ndarray]] = []

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(
            mode=reader.get_enum("mode", LRNMode, LRNMode.CROSS_CHANNEL),
            local_size=reader.get_int("local_size", 5),
            alpha=reader.get_float("alpha", 1e-4),
            beta=reader.get_float("beta", 0.75),
            k=reader.get_float("k", 1.0),
        )
        return kwargs

    def setup(self, phase: Phase) -> int:
        if self.mode is not LRNMode.CROSS_CHANNEL:
            raise NotImplementedModeError(f"LRN mode {self.mode.value} is not implemented", where=self.name)
        self._expect_paired()
        reserved = 0
        for src, dst in zip(self.inputs, self.outputs):
            if dst is src:
                raise ConfigError("LRN cannot run in place", where=self.name)
            dst.need_diff = src.need_diff
            dst.copy_receptive(src)
            reserved += dst.allocate(src.dims)
        self._scale = [None] * len(self.inputs)
        return reserved

    def forward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            y, self._scale[i] = lrn_forward_cpu(
                src.data, local_size=self.local_size, alpha=self.alpha, beta=self.beta, k=self.k
            )
            dst.data[...] = y

    def backward(self, phase: Phase) -> None:
        for i, (src, dst) in enumerate(zip(self.inputs, self.outputs)):
            if dst.diff is None or src.diff is None:
                continue
            grad = lrn_backward_cpu(
                src.data, dst.data, self._scale[i], dst.diff,
                local_size=self.local_size, alpha=self.alpha, beta=self.beta,
            )
            self._deposit(src, grad)
