"""
Loss layer.

A loss layer has inputs and no outputs. `eval()` adds the current batch's
metric (`result`, accuracy for the multinomial modes) and objective (`loss`)
to running sums that the graph resets and averages; `backward` seeds the
gradient of its first input (and, for the contrastive loss, the second).

Design notes
------------
- ``scale = loss_weight / loss_numel`` where `loss_numel` is the number of
  terms the loss averages over: one per item and position for the
  multinomial modes, one per element for Smooth L1 and one per pair for the
  contrastive loss.
- Modes without a formula accept any inputs and contribute nothing.
- An optional third input is a weight tensor indexed cyclically over the
  prediction's elements.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ...domain._errors import ConfigError, ShapeMismatchError
from ...domain._phase import Phase
from .._description import AttributeReader
from ..ops import loss_cpu
from ._base import Layer
from ._registry import register_layer

logger = logging.getLogger(__name__)


class LossMode(Enum):
    MULTINOMIAL_LOGISTIC_STABLE_SOFTMAX = "MultinomialLogistic_StableSoftmax"
    MULTINOMIAL_LOGISTIC = "MultinomialLogistic"
    SMOOTH_L1 = "SmoothL1"
    CONTRASTIVE = "Contrastive"
    EUCLIDEAN_SSE = "EuclideanSSE"
    HINGE_L1 = "HingeL1"
    HINGE_L2 = "HingeL2"
    SIGMOID_CROSS_ENTROPY = "SigmoidCrossEntropy"
    INFOGAIN = "Infogain"

    @property
    def multinomial(self) -> bool:
        return self in (LossMode.MULTINOMIAL_LOGISTIC_STABLE_SOFTMAX, LossMode.MULTINOMIAL_LOGISTIC)


@register_layer("Loss")
class Loss(Layer):
    """
    Objective and metric of a graph.

    Parameters
    ----------
    mode : LossMode
        Loss formula.
    loss_weight : float, optional
        Multiplier of the gradient. Defaults to 1.
    margin : float, optional
        Contrastive margin. Defaults to 1.
    loss_weights : Sequence[float], optional
        Per-class weights for the multinomial modes. Empty means 1 for every
        class.

    Attributes
    ----------
    result : float
        Running sum of the metric since the last reset.
    loss : float
        Running sum of the objective since the last reset.
    """

    is_loss = True

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        mode: LossMode,
        loss_weight: float = 1.0,
        margin: float = 1.0,
        loss_weights: Sequence[float] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.mode = LossMode(mode)
        self.loss_weight = float(loss_weight)
        self.margin = float(margin)
        self.loss_weights: List[float] = [float(w) for w in loss_weights]
        self.loss_numel = 0
        self.scale = 0.0
        self.result = 0.0
        self.loss = 0.0

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(
            mode=reader.get_enum("mode", LossMode),
            loss_weight=reader.get_float("loss_weight", 1.0),
            margin=reader.get_float("margin", 1.0),
            loss_weights=reader.get_list("loss_weights", [], item=float),
        )
        return kwargs

    @property
    def num_examples(self) -> int:
        return self.inputs[0].dims[0] if self.inputs and self.inputs[0].dims else 0

    def setup(self, phase: Phase) -> int:
        self._expect_outputs(0)
        mode = self.mode
        if mode.multinomial:
            self._expect_inputs(2, 3)
            pred, label = self.inputs[0].dims, self.inputs[1].dims
            if (
                len(pred) != len(label)
                or len(pred) < 2
                or label[1] != 1
                or pred[0] != label[0]
                or pred[2:] != label[2:]
            ):
                raise ShapeMismatchError((pred[0] if pred else 0, 1) + tuple(pred[2:]), label, where=self.name)
            if len(self.inputs) == 3:
                self._check_weight(self.inputs[2].numel, (self.inputs[0].numel, self.inputs[0].item_size))
            if self.loss_weights and len(self.loss_weights) < pred[1]:
                raise ShapeMismatchError((pred[1],), (len(self.loss_weights),), where=f"{self.name} loss_weights")
            self.loss_numel = self.inputs[0].numel // pred[1]
        elif mode is LossMode.SMOOTH_L1:
            self._expect_inputs(2, 3)
            for r in self.inputs[1:]:
                if r.dims != self.inputs[0].dims:
                    raise ShapeMismatchError(self.inputs[0].dims, r.dims, where=f"{self.name}/{r.name}")
            self.loss_numel = self.inputs[0].numel
        elif mode is LossMode.CONTRASTIVE:
            self._expect_inputs(3)
            a, b, y = self.inputs
            if a.dims != b.dims:
                raise ShapeMismatchError(a.dims, b.dims, where=f"{self.name}/{b.name}")
            if y.numel != a.dims[0]:
                raise ShapeMismatchError((a.dims[0],), y.dims, where=f"{self.name}/{y.name}")
            self.loss_numel = a.dims[0]
        else:
            logger.warning("%s: loss mode %s has no formula and contributes 0", self.name, mode.value)
            self.loss_numel = 0

        self.scale = self.loss_weight / self.loss_numel if self.loss_numel else 0.0
        return 0

    def _check_weight(self, numel: int, allowed: Sequence[int]) -> None:
        if numel not in allowed:
            raise ShapeMismatchError((allowed[0],), (numel,), where=f"{self.name} weight input")

    def _weight(self) -> Optional[np.ndarray]:
        return self.inputs[2].data if len(self.inputs) > 2 else None

    def _multinomial(self, kernel: Callable[..., np.ndarray], *args: Any, **kwargs: Any) -> np.ndarray:
        """Run a multinomial kernel; labels it rejects are fatal for this layer."""
        try:
            return kernel(*args, class_weights=self.loss_weights, weight=self._weight(), **kwargs)
        except ValueError as e:
            raise ConfigError(str(e), where=self.name) from e

    def reset(self) -> None:
        self.result = 0.0
        self.loss = 0.0

    def eval(self) -> None:
        """Add this batch's metric and objective to `result` and `loss`."""
        if not self.loss_numel:
            return
        mode = self.mode
        if mode.multinomial:
            pred, label = self.inputs[0].data, self.inputs[1].data
            hits = self._multinomial(loss_cpu.multinomial_accuracy_cpu, pred, label)
            values = self._multinomial(loss_cpu.multinomial_loss_cpu, pred, label)
            self.result += float(hits.sum()) / self.loss_numel
            self.loss += float(np.abs(values).sum()) / self.loss_numel
        elif mode is LossMode.SMOOTH_L1:
            values, _ = loss_cpu.smooth_l1_cpu(self.inputs[0].data, self.inputs[1].data, self._weight())
            self.loss += float(values.sum()) / self.loss_numel
        elif mode is LossMode.CONTRASTIVE:
            a, b, y = (r.data for r in self.inputs)
            values, _ = loss_cpu.contrastive_cpu(a, b, y, margin=self.margin, scale=self.scale)
            self.loss += float(values.sum()) / self.loss_numel

    def backward(self, phase: Phase) -> None:
        target = self.inputs[0] if self.inputs else None
        if target is None or target.diff is None or not self.loss_numel:
            return
        mode = self.mode
        if mode.multinomial:
            grad = self._multinomial(
                loss_cpu.multinomial_grad_cpu,
                target.data,
                self.inputs[1].data,
                self.scale,
                stable=mode is LossMode.MULTINOMIAL_LOGISTIC_STABLE_SOFTMAX,
            )
            self._deposit(target, grad)
        elif mode is LossMode.SMOOTH_L1:
            _, slope = loss_cpu.smooth_l1_cpu(target.data, self.inputs[1].data, self._weight())
            self._deposit(target, self.scale * slope)
        elif mode is LossMode.CONTRASTIVE:
            a, b, y = self.inputs
            _, beta = loss_cpu.contrastive_cpu(a.data, b.data, y.data, margin=self.margin, scale=self.scale)
            self._deposit(a, beta)
            if b.diff is not None:
                self._deposit(b, -beta)

    def display(self) -> str:
        text = f" loss = {self.loss} * {self.loss_weight}"
        if self.mode.multinomial:
            text += f"  eval = {self.result}"
        return text
