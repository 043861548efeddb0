"""
CPU reference kernels for region-of-interest operators (NumPy backend).

- Crop: copy a fixed-size window out of every item, starting at per-item
  offsets.
- Pooling: max-pool every region of interest onto a fixed grid of bins,
  remembering the winning input element for the backward pass.
"""

from __future__ import annotations

import itertools
from typing import Sequence, Tuple

import numpy as np


def _round_half_away(v: float) -> int:
    return int(np.sign(v) * np.floor(abs(v) + 0.5))


def _crop_index(start_row: np.ndarray, out_item: Sequence[int]) -> Tuple[slice, ...]:
    return tuple(slice(int(s), int(s) + int(o)) for s, o in zip(start_row, out_item))


def roi_crop_forward_cpu(x: np.ndarray, start: np.ndarray, out_shape: Sequence[int]) -> np.ndarray:
    """
    Crop each item of `x` to ``out_shape[1:]`` starting at ``start[n]``.

    Parameters
    ----------
    x : np.ndarray
        Input of shape ``(N, *D)``.
    start : np.ndarray
        Offsets, reshaped to ``(N, len(D))``; values are truncated to int.
    out_shape : Sequence[int]
        Output shape ``(N, *O)`` with ``O[d] + start[n, d] <= D[d]``.

    Raises
    ------
    ValueError
        If a crop window leaves the input.
    """
    out_shape = tuple(int(d) for d in out_shape)
    start = np.asarray(start).reshape(x.shape[0], -1).astype(np.int64)
    y = np.empty(out_shape, dtype=x.dtype)
    for n in range(x.shape[0]):
        index = _crop_index(start[n], out_shape[1:])
        window = x[n][index]
        if window.shape != out_shape[1:]:
            raise ValueError(f"crop window {list(start[n])} + {list(out_shape[1:])} leaves the input")
        y[n] = window
    return y


def roi_crop_backward_cpu(
    grad_out: np.ndarray, start: np.ndarray, x_shape: Sequence[int]
) -> np.ndarray:
    """Scatter crop gradients back to an input-shaped array."""
    grad_x = np.zeros(tuple(int(d) for d in x_shape), dtype=grad_out.dtype)
    start = np.asarray(start).reshape(grad_x.shape[0], -1).astype(np.int64)
    for n in range(grad_x.shape[0]):
        grad_x[n][_crop_index(start[n], grad_out.shape[1:])] += grad_out[n]
    return grad_x


def roi_pool_forward_cpu(
    x: np.ndarray,
    rois: np.ndarray,
    pooled: Sequence[int],
    spatial_scale: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Max-pool regions of interest.

    Parameters
    ----------
    x : np.ndarray
        Feature map of shape ``(N, C, *S)``.
    rois : np.ndarray
        One row per region: ``[batch_index, s0, e0, s1, e1, ...]`` in input
        image coordinates (inclusive ends).
    pooled : Sequence[int]
        Output grid per region.
    spatial_scale : float
        Factor mapping image coordinates onto the feature map.

    Returns
    -------
    (y, argmax)
        `y` has shape ``(R, C, *pooled)``. `argmax` holds the flat index into
        `x` of each winning element, or -1 where the bin is empty (output 0).
    """
    pooled = tuple(int(p) for p in pooled)
    spatial = x.shape[2:]
    C = x.shape[1]
    rois = np.asarray(rois).reshape(-1, 1 + 2 * len(pooled))
    R = rois.shape[0]

    y = np.zeros((R, C) + pooled, dtype=x.dtype)
    argmax = np.full((R, C) + pooled, -1, dtype=np.int64)
    channels = np.arange(C)

    for r in range(R):
        b = int(rois[r, 0])
        starts = [_round_half_away(rois[r, 1 + 2 * d] * spatial_scale) for d in range(len(pooled))]
        ends = [_round_half_away(rois[r, 2 + 2 * d] * spatial_scale) for d in range(len(pooled))]
        bins = [max(e - s + 1, 1) / p for s, e, p in zip(starts, ends, pooled)]

        for cell in itertools.product(*(range(p) for p in pooled)):
            lo = [
                min(max(int(np.floor(c * w)) + s, 0), n)
                for c, w, s, n in zip(cell, bins, starts, spatial)
            ]
            hi = [
                min(max(int(np.ceil((c + 1) * w)) + s, 0), n)
                for c, w, s, n in zip(cell, bins, starts, spatial)
            ]
            if any(h <= l for l, h in zip(lo, hi)):
                continue
            region = x[(b, slice(None)) + tuple(slice(l, h) for l, h in zip(lo, hi))]
            flat = region.reshape(C, -1)
            best = flat.argmax(axis=1)
            coords = np.unravel_index(best, region.shape[1:])
            index = (slice(None), slice(None)) + cell
            y[r][index[1:]] = flat[channels, best]
            argmax[r][index[1:]] = np.ravel_multi_index(
                (np.full(C, b), channels) + tuple(c + l for c, l in zip(coords, lo)),
                x.shape,
            )
    return y, argmax


def roi_pool_backward_cpu(
    grad_out: np.ndarray, argmax: np.ndarray, x_shape: Sequence[int]
) -> np.ndarray:
    """Route each pooled gradient to the input element that won the forward max."""
    grad_x = np.zeros(int(np.prod(x_shape)), dtype=grad_out.dtype)
    mask = argmax >= 0
    np.add.at(grad_x, argmax[mask], grad_out[mask])
    return grad_x.reshape(tuple(int(d) for d in x_shape))
