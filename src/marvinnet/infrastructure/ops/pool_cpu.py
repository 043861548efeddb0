"""
CPU reference implementations for N-dimensional pooling (NumPy backend).

Implemented pooling variants
-----------------------------
- max (forward + backward, argmax routing)
- average_include: averages over the full window, padding included
- average_exclude: averages over the in-bounds cells of the window only

Design notes
------------
- Max pooling pads with ``-inf`` so padded values never win. Ties keep the
  first maximum in window order.
- Average pooling pads with zeros.
- All operations assume channel-first layout ``(N, C, *spatial)``.
"""

from __future__ import annotations

import itertools
from typing import Optional, Sequence, Tuple

import numpy as np

MAX = "max"
AVERAGE_INCLUDE = "average_include"
AVERAGE_EXCLUDE = "average_exclude"


def pool_output_dims(
    spatial: Sequence[int],
    window: Sequence[int],
    padding: Sequence[int],
    stride: Sequence[int],
) -> Tuple[int, ...]:
    """``out = 1 + (in + 2 * pad - window) // stride`` per spatial dimension."""
    return tuple(
        1 + (int(i) + 2 * int(p) - int(w)) // int(s)
        for i, w, p, s in zip(spatial, window, padding, stride)
    )


def _window_view(
    offset: Sequence[int], stride: Sequence[int], out_dims: Sequence[int]
) -> Tuple[slice, ...]:
    spatial = tuple(
        slice(k, k + s * (o - 1) + 1, s) for k, s, o in zip(offset, stride, out_dims)
    )
    return (slice(None), slice(None)) + spatial


def _pad(x: np.ndarray, padding: Sequence[int], value: float) -> np.ndarray:
    if not any(padding):
        return x
    width = ((0, 0), (0, 0)) + tuple((int(p), int(p)) for p in padding)
    return np.pad(x, pad_width=width, mode="constant", constant_values=value)


def _divisor(
    spatial: Sequence[int],
    window: Sequence[int],
    padding: Sequence[int],
    stride: Sequence[int],
    mode: str,
) -> np.ndarray | float:
    if mode == AVERAGE_INCLUDE:
        return float(np.prod(window))
    ones = _pad(np.ones((1, 1) + tuple(spatial), dtype=np.float32), padding, 0.0)
    out_dims = pool_output_dims(spatial, window, padding, stride)
    count = np.zeros((1, 1) + out_dims, dtype=np.float32)
    for offset in itertools.product(*(range(k) for k in window)):
        count += ones[_window_view(offset, stride, out_dims)]
    return np.maximum(count, 1.0)


def pool_forward_cpu(
    x: np.ndarray,
    *,
    mode: str,
    window: Sequence[int],
    padding: Sequence[int],
    stride: Sequence[int],
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Forward pass of N-d pooling.

    Returns
    -------
    (y, argmax)
        `y` has shape ``(N, C, *O)``. For max pooling `argmax` holds the
        flat window offset that won each output cell; it is None otherwise.

    Raises
    ------
    ValueError
        For an unknown `mode`.
    """
    spatial = x.shape[2:]
    out_dims = pool_output_dims(spatial, window, padding, stride)
    out_shape = x.shape[:2] + out_dims
    offsets = list(itertools.product(*(range(k) for k in window)))

    if mode == MAX:
        x_pad = _pad(x, padding, -np.inf)
        best = np.full(out_shape, -np.inf, dtype=x.dtype)
        argmax = np.zeros(out_shape, dtype=np.int64)
        for idx, offset in enumerate(offsets):
            xs = x_pad[_window_view(offset, stride, out_dims)]
            better = xs > best
            best = np.where(better, xs, best)
            argmax = np.where(better, idx, argmax)
        best[np.isneginf(best)] = 0.0
        return best, argmax

    if mode in (AVERAGE_INCLUDE, AVERAGE_EXCLUDE):
        x_pad = _pad(x, padding, 0.0)
        total = np.zeros(out_shape, dtype=x.dtype)
        for offset in offsets:
            total += x_pad[_window_view(offset, stride, out_dims)]
        return (total / _divisor(spatial, window, padding, stride, mode)).astype(x.dtype), None

    raise ValueError(f"unknown pooling mode {mode!r}")


def pool_backward_cpu(
    grad_out: np.ndarray,
    x_shape: Sequence[int],
    *,
    mode: str,
    window: Sequence[int],
    padding: Sequence[int],
    stride: Sequence[int],
    argmax: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Backward pass of N-d pooling; returns the gradient w.r.t. the input.

    Raises
    ------
    ValueError
        If max pooling is requested without the forward `argmax`.
    """
    x_shape = tuple(int(d) for d in x_shape)
    spatial = x_shape[2:]
    out_dims = grad_out.shape[2:]
    padded = x_shape[:2] + tuple(d + 2 * int(p) for d, p in zip(spatial, padding))
    grad_pad = np.zeros(padded, dtype=grad_out.dtype)
    offsets = list(itertools.product(*(range(k) for k in window)))

    if mode == MAX:
        if argmax is None:
            raise ValueError("max pooling backward requires argmax")
        for idx, offset in enumerate(offsets):
            grad_pad[_window_view(offset, stride, out_dims)] += np.where(argmax == idx, grad_out, 0)
    elif mode in (AVERAGE_INCLUDE, AVERAGE_EXCLUDE):
        share = grad_out / _divisor(spatial, window, padding, stride, mode)
        for offset in offsets:
            grad_pad[_window_view(offset, stride, out_dims)] += share
    else:
        raise ValueError(f"unknown pooling mode {mode!r}")

    crop = (slice(None), slice(None)) + tuple(
        slice(int(p), int(p) + d) for p, d in zip(padding, spatial)
    )
    return grad_pad[crop]
