"""
CPU reference kernels for cross-channel local response normalization.

For channel ``c`` the window covers channels ``c - (n - 1) // 2`` through
``c + n // 2`` (clipped to the valid range):

    scale[c] = k + alpha / n * sum(x[c'] ** 2 for c' in window(c))
    y[c]     = x[c] * scale[c] ** -beta
"""

from __future__ import annotations

from typing import Tuple

import numpy as np


def _channel_window_sum(a: np.ndarray, below: int, above: int) -> np.ndarray:
    """``out[:, c] = sum(a[:, c + j] for j in [-below, above])``, clipped."""
    C = a.shape[1]
    width = ((0, 0), (below, above)) + ((0, 0),) * (a.ndim - 2)
    padded = np.pad(a, pad_width=width, mode="constant")
    out = np.zeros_like(a)
    for j in range(below + above + 1):
        out += padded[:, j : j + C]
    return out


def lrn_forward_cpu(
    x: np.ndarray, *, local_size: int, alpha: float, beta: float, k: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Forward pass; returns ``(y, scale)``. `scale` is kept for the backward pass.
    """
    below, above = (local_size - 1) // 2, local_size // 2
    scale = k + (alpha / local_size) * _channel_window_sum(x * x, below, above)
    y = x * np.power(scale, -beta)
    return y.astype(x.dtype), scale.astype(x.dtype)


def lrn_backward_cpu(
    x: np.ndarray,
    y: np.ndarray,
    scale: np.ndarray,
    grad_out: np.ndarray,
    *,
    local_size: int,
    alpha: float,
    beta: float,
) -> np.ndarray:
    """
    Backward pass; returns the gradient w.r.t. `x`.

    ``dx[c] = dy[c] * scale[c] ** -beta
              - 2 * alpha * beta / n * x[c] * sum(dy[c'] * y[c'] / scale[c'])``
    where the sum runs over every ``c'`` whose window contains ``c``.
    """
    below, above = (local_size - 1) // 2, local_size // 2
    ratio = grad_out * y / scale
    spread = _channel_window_sum(ratio, above, below)
    grad_x = grad_out * np.power(scale, -beta) - (2.0 * alpha * beta / local_size) * x * spread
    return grad_x.astype(x.dtype)
