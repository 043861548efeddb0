"""
CPU reference kernels for the loss operators (NumPy backend).

Prediction layout for the multinomial losses is ``(N, C, *spatial)`` holding
class probabilities; labels are ``(N, 1, *spatial)`` holding class indices.
Every kernel returns per-element values or fresh gradient arrays; the caller
reduces and accumulates.

Design notes
------------
- An optional weight tensor of any size is indexed cyclically: element ``e``
  of the prediction uses ``weight.flat[e % weight.size]``.
- Per-class weights (``class_weights``) multiply every term that belongs to
  the labelled class.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np

_TINY = np.finfo(np.float32).tiny


def _as_classes(pred: np.ndarray, label: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    N, C = pred.shape[:2]
    p = pred.reshape(N, C, -1)
    lab = np.rint(label.reshape(N, -1)).astype(np.int64)
    if lab.shape[1] != p.shape[2]:
        raise ValueError(f"label has {lab.shape[1]} positions per item, prediction {p.shape[2]}")
    if lab.size and (lab.min() < 0 or lab.max() >= C):
        raise ValueError(f"label outside [0, {C})")
    return p, lab


def _cyclic(weight: Optional[np.ndarray], shape: Sequence[int]) -> np.ndarray:
    """Broadcast `weight` cyclically onto `shape`; ones when `weight` is None."""
    if weight is None:
        return np.ones(tuple(shape), dtype=np.float32)
    flat = np.asarray(weight, dtype=np.float32).reshape(-1)
    idx = np.arange(int(np.prod(shape))) % flat.size
    return flat[idx].reshape(tuple(shape))


def _class_factor(class_weights: Optional[Sequence[float]], lab: np.ndarray) -> np.ndarray:
    if class_weights is None or len(class_weights) == 0:
        return np.ones(lab.shape, dtype=np.float32)
    return np.asarray(class_weights, dtype=np.float32)[lab]


def _picked(p: np.ndarray, lab: np.ndarray) -> np.ndarray:
    """``p[n, lab[n, m], m]`` for every ``(n, m)``."""
    return np.take_along_axis(p, lab[:, None, :], axis=1)[:, 0, :]


def multinomial_accuracy_cpu(
    pred: np.ndarray,
    label: np.ndarray,
    *,
    class_weights: Optional[Sequence[float]] = None,
    weight: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Weighted hit indicator per ``(n, position)``.

    A position counts as a hit unless another class has a strictly greater
    probability than the labelled one.
    """
    p, lab = _as_classes(pred, label)
    hit = ~np.any(p > _picked(p, lab)[:, None, :], axis=1)
    values = hit.astype(np.float32) * _class_factor(class_weights, lab)
    if weight is not None:
        values = values * _picked(_cyclic(weight, p.shape), lab)
    return values


def multinomial_loss_cpu(
    pred: np.ndarray,
    label: np.ndarray,
    *,
    class_weights: Optional[Sequence[float]] = None,
    weight: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Weighted ``log(p[label])`` per ``(n, position)``; callers take ``|.|``."""
    p, lab = _as_classes(pred, label)
    values = np.log(np.maximum(_picked(p, lab), _TINY)) * _class_factor(class_weights, lab)
    if weight is not None:
        w = _cyclic(weight, p.shape)
        values = values * _picked(w, lab)
    return values


def multinomial_grad_cpu(
    pred: np.ndarray,
    label: np.ndarray,
    scale: float,
    *,
    stable: bool,
    class_weights: Optional[Sequence[float]] = None,
    weight: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Gradient w.r.t. the prediction, shaped like `pred`.

    Parameters
    ----------
    stable : bool
        True for the gradient w.r.t. the softmax input
        (``scale * (p - onehot(label))``); False for the gradient w.r.t. the
        probabilities (``-scale / p`` at the label, zero elsewhere).
    """
    p, lab = _as_classes(pred, label)
    factor = scale * _class_factor(class_weights, lab)
    w = _cyclic(weight, p.shape)
    grad = np.zeros_like(p)
    onehot = np.zeros(p.shape, dtype=bool)
    np.put_along_axis(onehot, lab[:, None, :], True, axis=1)

    if stable:
        grad += factor[:, None, :] * p * w
        grad[onehot] -= (factor[:, None, :] * w)[onehot]
    else:
        picked = np.maximum(_picked(p, lab), _TINY)
        contrib = -factor * _picked(w, lab) / picked
        np.put_along_axis(grad, lab[:, None, :], contrib[:, None, :], axis=1)
    return grad.reshape(pred.shape)


def smooth_l1_cpu(
    pred: np.ndarray,
    target: np.ndarray,
    weight: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Smooth L1 on weighted differences.

    Returns
    -------
    (loss, slope)
        ``loss`` is ``0.5 * v ** 2`` where ``|v| < 1`` and ``|v| - 0.5``
        elsewhere, with ``v = (pred - target) * weight``. ``slope`` is the
        derivative w.r.t. ``v`` (``v`` or ``sign(v)``).
    """
    v = (pred - target.reshape(pred.shape)) * _cyclic(weight, pred.shape)
    inside = np.abs(v) < 1.0
    loss = np.where(inside, 0.5 * v * v, np.abs(v) - 0.5)
    slope = np.where(inside, v, np.sign(v))
    return loss.astype(pred.dtype), slope.astype(pred.dtype)


def contrastive_cpu(
    a: np.ndarray,
    b: np.ndarray,
    similar: np.ndarray,
    *,
    margin: float,
    scale: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Contrastive loss over item pairs.

    ``loss[n] = 0.5 * (y * d2 + (1 - y) * max(margin - sqrt(d2), 0) ** 2)``
    with ``d2 = |a[n] - b[n]| ** 2`` and ``y = similar[n]``.

    Returns
    -------
    (loss, beta)
        Per-pair loss of shape ``(N,)`` and the gradient step ``beta`` shaped
        like `a`; callers add it to ``grad(a)`` and subtract it from
        ``grad(b)``.
    """
    N = a.shape[0]
    diff = (a - b).reshape(N, -1)
    d2 = np.sum(diff * diff, axis=1)
    dist = np.sqrt(d2)
    y = np.asarray(similar, dtype=np.float32).reshape(N)
    mdist = np.maximum(margin - dist, 0.0)
    loss = 0.5 * (y * d2 + (1.0 - y) * mdist * mdist)

    coeff = np.where(
        y == 1,
        scale,
        np.where(mdist > 0.0, -scale * mdist / (dist + 1e-4), 0.0),
    )
    beta = coeff[:, None] * diff
    return loss.astype(a.dtype), beta.reshape(a.shape).astype(a.dtype)
