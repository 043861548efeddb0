"""
CPU reference kernels for N-dimensional grouped convolution (NumPy backend).

Tensors follow the channel-first layout ``(N, C, *spatial)`` with any number
of spatial dimensions. The kernels loop over kernel offsets rather than
output positions: for each offset a strided view of the padded input lines up
with the whole output grid and one `einsum` contracts the channel axis. This
keeps the loop count equal to the kernel volume.

Design notes
------------
- Cross-correlation semantics, no kernel flip.
- `dilation` spaces kernel taps; `group` splits channels into independent
  blocks with their own slice of the weight.
- Backward kernels return fresh arrays. Callers accumulate them into their
  gradient buffers.
"""

from __future__ import annotations

import itertools
from typing import Optional, Sequence, Tuple

import numpy as np


def conv_output_dims(
    spatial: Sequence[int],
    window: Sequence[int],
    padding: Sequence[int],
    stride: Sequence[int],
    dilation: Sequence[int],
) -> Tuple[int, ...]:
    """
    Output spatial dimensions of a convolution.

    ``out = (in + 2 * pad - ((window - 1) * dilation + 1)) // stride + 1``
    """
    return tuple(
        (int(i) + 2 * int(p) - ((int(w) - 1) * int(u) + 1)) // int(s) + 1
        for i, w, p, s, u in zip(spatial, window, padding, stride, dilation)
    )


def _pad(x: np.ndarray, padding: Sequence[int]) -> np.ndarray:
    if not any(padding):
        return x
    width = ((0, 0), (0, 0)) + tuple((int(p), int(p)) for p in padding)
    return np.pad(x, pad_width=width, mode="constant", constant_values=0.0)


def _tap_view(
    offset: Sequence[int],
    dilation: Sequence[int],
    stride: Sequence[int],
    out_dims: Sequence[int],
) -> Tuple[slice, ...]:
    """Slices of the padded input that kernel tap `offset` reads for every output cell."""
    spatial = tuple(
        slice(k * u, k * u + s * (o - 1) + 1, s)
        for k, u, s, o in zip(offset, dilation, stride, out_dims)
    )
    return (slice(None), slice(None)) + spatial


def conv_forward_cpu(
    x: np.ndarray,
    w: np.ndarray,
    b: Optional[np.ndarray],
    *,
    stride: Sequence[int],
    padding: Sequence[int],
    dilation: Sequence[int],
    group: int = 1,
) -> np.ndarray:
    """
    Forward pass of an N-d grouped convolution.

    Parameters
    ----------
    x : np.ndarray
        Input of shape ``(N, C_in, *S)``.
    w : np.ndarray
        Weight of shape ``(C_out, C_in // group, *K)``.
    b : np.ndarray, optional
        Bias broadcastable to ``(1, C_out, 1, ...)``.
    stride, padding, dilation : Sequence[int]
        One value per spatial dimension.
    group : int, optional
        Number of channel groups.

    Returns
    -------
    np.ndarray
        Output of shape ``(N, C_out, *O)``.

    Raises
    ------
    ValueError
        If channel counts are inconsistent with `group`.
    """
    N, C_in = x.shape[:2]
    C_out, C_per = w.shape[:2]
    window = w.shape[2:]
    if C_in != C_per * group or C_out % group:
        raise ValueError(
            f"channel mismatch: x has {C_in} channels, weight expects {C_per} x {group} groups"
        )

    out_dims = conv_output_dims(x.shape[2:], window, padding, stride, dilation)
    x_pad = _pad(x, padding)
    y = np.zeros((N, C_out) + out_dims, dtype=x.dtype)
    o_per = C_out // group

    for offset in itertools.product(*(range(k) for k in window)):
        xs = x_pad[_tap_view(offset, dilation, stride, out_dims)]
        tap = (slice(None), slice(None)) + offset
        for g in range(group):
            y[:, g * o_per : (g + 1) * o_per] += np.einsum(
                "nc...,oc->no...",
                xs[:, g * C_per : (g + 1) * C_per],
                w[g * o_per : (g + 1) * o_per][tap],
            )

    if b is not None:
        y += b.reshape((1, C_out) + (1,) * len(out_dims))
    return y


def conv_backward_cpu(
    x: np.ndarray,
    w: np.ndarray,
    grad_out: np.ndarray,
    *,
    stride: Sequence[int],
    padding: Sequence[int],
    dilation: Sequence[int],
    group: int = 1,
    need_input_grad: bool = True,
    need_param_grad: bool = True,
) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], Optional[np.ndarray]]:
    """
    Backward pass of an N-d grouped convolution.

    Returns
    -------
    (grad_x, grad_w, grad_b)
        `grad_x` has the shape of `x` (None unless `need_input_grad`);
        `grad_w` the shape of `w` and `grad_b` shape ``(C_out,)`` (both None
        unless `need_param_grad`).
    """
    C_out, C_per = w.shape[:2]
    window = w.shape[2:]
    out_dims = grad_out.shape[2:]
    o_per = C_out // group

    x_pad = _pad(x, padding)
    grad_x_pad = np.zeros_like(x_pad) if need_input_grad else None
    grad_w = np.zeros_like(w) if need_param_grad else None

    for offset in itertools.product(*(range(k) for k in window)):
        view = _tap_view(offset, dilation, stride, out_dims)
        tap = (slice(None), slice(None)) + offset
        for g in range(group):
            gy = grad_out[:, g * o_per : (g + 1) * o_per]
            ci = slice(g * C_per, (g + 1) * C_per)
            if grad_w is not None:
                n = gy.shape[0]
                xs = x_pad[view][:, ci].reshape(n, C_per, -1)
                grad_w[g * o_per : (g + 1) * o_per][tap] += np.einsum(
                    "nop,ncp->oc", gy.reshape(n, o_per, -1), xs
                )
            if grad_x_pad is not None:
                contrib = np.einsum("no...,oc->nc...", gy, w[g * o_per : (g + 1) * o_per][tap])
                target = grad_x_pad[view]
                target[:, ci] += contrib

    grad_x = None
    if grad_x_pad is not None:
        crop = (slice(None), slice(None)) + tuple(
            slice(int(p), int(p) + int(d)) for p, d in zip(padding, x.shape[2:])
        )
        grad_x = grad_x_pad[crop]

    grad_b = None
    if need_param_grad:
        axes = (0,) + tuple(range(2, grad_out.ndim))
        grad_b = grad_out.sum(axis=axes)
    return grad_x, grad_w, grad_b
