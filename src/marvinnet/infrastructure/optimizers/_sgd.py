"""
Stochastic Gradient Descent with momentum and L2 weight decay.

This module provides the update rule the solver applies once per iteration
after every replica has finished its backward passes. Each managed parameter
is backed by one solver-owned region of shape ``(N + 1, numel)``: row 0 is
the history shared by all replicas, rows ``1..N`` are the per-replica
gradients.

Design notes
------------
- The rule reads the canonical weight values from replica 0; all replicas
  hold identical values because they all apply the same history.
- The rule only writes the history row. Replicas apply ``data -= hist``
  in their own `update` step.
- Gradients are summed over replicas, not averaged; the loss layers already
  normalize by their own term count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from ...domain._errors import ShapeMismatchError
from .._parameter import Parameter

SharedParameter = Tuple[Parameter, np.ndarray]


@dataclass
class SGD:
    """
    Momentum SGD with coupled (L2) weight decay.

    Update rule
    -----------
    For each parameter ``w`` with region ``R`` (``R[0]`` is the history
    ``h``, ``R[1:]`` the replica gradients):

    - ``g <- weight_decay * decay_mult * w + sum(R[1:])``
    - ``h <- momentum * h + lr * lr_mult * g``

    Parameters
    ----------
    params : Sequence[(Parameter, numpy.ndarray)]
        Canonical parameter (from replica 0) and its shared region.
    momentum : float, optional
        Defaults to 0.9.
    weight_decay : float, optional
        Must be non-negative. Defaults to 0.0005.
    """

    params: Sequence[SharedParameter]
    momentum: float = 0.9
    weight_decay: float = 0.0005

    def __init__(
        self,
        params: Iterable[SharedParameter],
        *,
        momentum: float = 0.9,
        weight_decay: float = 0.0005,
    ) -> None:
        self.params: List[SharedParameter] = list(params)
        self.momentum = float(momentum)
        self.weight_decay = float(weight_decay)

        if self.weight_decay < 0.0:
            raise ValueError(f"weight_decay must be >= 0, got {self.weight_decay}")
        for p, region in self.params:
            if region.ndim != 2 or region.shape[0] < 2 or region.shape[1] != p.numel:
                raise ShapeMismatchError((2, p.numel), region.shape, where=p.name)

    def clear_history(self) -> None:
        for _, region in self.params:
            region[0].fill(0)

    def step(self, lr: float) -> None:
        """
        Compute the history of every managed parameter for learning rate `lr`.
        """
        for p, region in self.params:
            g = region[1:].sum(axis=0)
            decay = self.weight_decay * p.decay_mult
            if decay != 0.0:
                g += decay * p.data.reshape(-1)

            hist = region[0]
            hist *= self.momentum
            hist += (lr * p.lr_mult) * g
