"""
Base classes of every graph operator.

`Layer` implements the parts of the operator contract that do not depend on
the operator kind: attribute parsing, phase gating of trainability, arity
checks, parameter ownership and the weight file conventions. Concrete
operators override `setup` (shape inference and output allocation),
`forward` and `backward`.

Design notes
------------
- A layer is built from one record of the architecture description by
  `from_attributes`. Subclasses extend `read_attributes` to parse their own
  keys; unknown keys are ignored.
- The graph resolves the record's "in" and "out" names into `inputs` and
  `outputs` before allocation. The same response may appear on both sides
  (an in-place operator); backward then assigns instead of accumulating so
  the output gradient is replaced by the input gradient.
- Parameters are named ``<layer>.weight`` and ``<layer>.bias`` in weight
  files, and ``<layer>.weight_diff`` / ``<layer>.bias_diff`` in gradient
  snapshots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import IO, Any, ClassVar, Dict, Iterable, List, Optional, Sequence

import numpy as np

from ...domain._errors import ArityError, FatalError
from ...domain._layer import ILayer
from ...domain._phase import Phase
from .._parameter import Parameter
from .._response import Response
from ..buffer import Buffer
from ..device._context import DeviceContext
from .._description import AttributeReader

logger = logging.getLogger(__name__)


@dataclass
class LoadReport:
    """
    Outcome of loading parameter records into a layer.

    Attributes
    ----------
    loaded : list[str]
        Record names copied into a parameter.
    skipped : list[str]
        Record names that matched a parameter but could not be loaded.
    """

    loaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def merge(self, other: "LoadReport") -> "LoadReport":
        self.loaded.extend(other.loaded)
        self.skipped.extend(other.skipped)
        return self

    @property
    def matched(self) -> List[str]:
        return self.loaded + self.skipped


class Layer(ILayer):
    """
    Base operator.

    Parameters
    ----------
    name : str
        Unique layer name.
    context : DeviceContext
        Device handle of the owning graph.
    phase : Phase, optional
        Phase in which the layer runs. Defaults to `DEFAULT_PHASE`.
    train_me : bool, optional
        Whether the layer's parameters are trained. Defaults to
        `DEFAULT_TRAIN_ME`.
    in_names, out_names : Sequence[str], optional
        Names of the input and output responses.
    """

    TYPE: ClassVar[str] = ""
    DEFAULT_PHASE: ClassVar[Phase] = Phase.TRAINING_TESTING
    DEFAULT_TRAIN_ME: ClassVar[bool] = False
    is_loss: ClassVar[bool] = False
    is_data: ClassVar[bool] = False

    def __init__(
        self,
        name: str,
        context: DeviceContext,
        *,
        phase: Optional[Phase] = None,
        train_me: Optional[bool] = None,
        in_names: Sequence[str] = (),
        out_names: Sequence[str] = (),
    ) -> None:
        self.name = str(name)
        self.context = context
        self.phase = self.DEFAULT_PHASE if phase is None else phase
        self.train_me = self.DEFAULT_TRAIN_ME if train_me is None else bool(train_me)
        self.in_names: List[str] = [str(n) for n in in_names]
        self.out_names: List[str] = [str(n) for n in out_names]
        self.inputs: List[Response] = []
        self.outputs: List[Response] = []
        self.weight: Optional[Parameter] = None
        self.bias: Optional[Parameter] = None

    # ---- construction ----
    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        """Return constructor keyword arguments parsed from `reader`."""
        return {}

    @classmethod
    def from_attributes(cls, reader: AttributeReader, context: DeviceContext) -> "Layer":
        kwargs = cls.read_attributes(reader)
        return cls(
            reader.get_str("name"),
            context,
            phase=reader.get_enum("phase", Phase, cls.DEFAULT_PHASE),
            train_me=reader.get_bool("train_me", cls.DEFAULT_TRAIN_ME),
            in_names=reader.get_list("in", [], item=str),
            out_names=reader.get_list("out", [], item=str),
            **kwargs,
        )

    # ---- lifecycle ----
    def allocate(self, phase: Phase) -> int:
        """
        Validate wiring, size outputs and parameters.

        Returns
        -------
        int
            Bytes newly reserved.
        """
        self.train_me = self.train_me and phase is not Phase.TESTING
        logger.info("%s%s", "* " if self.train_me else "  ", self.name)
        return self.setup(phase)

    def setup(self, phase: Phase) -> int:
        """Operator-specific allocation; returns bytes newly reserved."""
        return 0

    def forward(self, phase: Phase) -> None:
        pass

    def backward(self, phase: Phase) -> None:
        pass

    def update(self) -> None:
        """``data -= hist`` for every parameter of a trainable layer."""
        if not self.train_me:
            return
        for p in self.parameters():
            p.apply_history()

    def close(self) -> None:
        """Release background resources; the base layer holds none."""

    # ---- wiring helpers ----
    def _expect_inputs(self, *counts: int) -> None:
        if len(self.inputs) not in counts:
            raise ArityError(
                f"expects {' or '.join(map(str, counts))} input(s), got {len(self.inputs)}",
                where=self.name,
            )

    def _expect_outputs(self, *counts: int) -> None:
        if len(self.outputs) not in counts:
            raise ArityError(
                f"expects {' or '.join(map(str, counts))} output(s), got {len(self.outputs)}",
                where=self.name,
            )

    def _expect_paired(self) -> None:
        """One input per output, at least one of each."""
        if not self.outputs or len(self.inputs) != len(self.outputs):
            raise ArityError(
                f"needs as many inputs as outputs, got {len(self.inputs)} and {len(self.outputs)}",
                where=self.name,
            )

    def _groups(self, min_group: int = 2) -> int:
        """
        Inputs per output when inputs are consumed in consecutive groups.

        Raises
        ------
        ArityError
            If the inputs cannot be split evenly or a group is too small.
        """
        if not self.outputs or len(self.inputs) % len(self.outputs):
            raise ArityError(
                f"{len(self.inputs)} inputs cannot be grouped over {len(self.outputs)} outputs",
                where=self.name,
            )
        group = len(self.inputs) // len(self.outputs)
        if group < min_group:
            raise ArityError(f"needs at least {min_group} inputs per output", where=self.name)
        return group

    def _require_data(self, *responses: Response) -> None:
        for r in responses:
            if r.data is None:
                raise FatalError("forward before allocation", where=f"{self.name}/{r.name}")

    @staticmethod
    def _deposit(target: Response, grad: np.ndarray, *, in_place: bool = False) -> None:
        """
        Add `grad` to the gradient of `target`.

        With `in_place` the gradient is assigned; the target's gradient then
        is the output gradient that `grad` was computed from.
        """
        if target.diff is None:
            return
        if in_place:
            target.diff[...] = grad.reshape(target.dims)
        else:
            np.add(target.diff, grad.reshape(target.dims), out=target.diff)

    # ---- parameters ----
    def parameters(self) -> List[Parameter]:
        return [p for p in (self.weight, self.bias) if p is not None]

    def rand_init(self) -> None:
        for p in self.parameters():
            if p.data is not None:
                p.fill()

    def clear_diff(self) -> None:
        for p in self.parameters():
            p.clear_diff()

    def clear_hist(self) -> None:
        for p in self.parameters():
            p.clear_hist()

    def _load_into(
        self, buffers: Iterable[Buffer], suffix: str, load: str
    ) -> LoadReport:
        report = LoadReport()
        by_name = {b.name: b for b in buffers}
        for p in self.parameters():
            record = p.name + suffix
            buf = by_name.get(record)
            if buf is None or p.data is None:
                continue
            if buf.numel != p.numel:
                logger.warning(
                    "%s: %s has %d elements in the file but %d in the net %s; skipped",
                    self.name, record, buf.numel, p.numel, list(p.dims),
                )
                report.skipped.append(record)
                continue
            if tuple(buf.dims) != tuple(p.dims):
                logger.warning(
                    "%s: %s has dims %s in the file but %s in the net; loaded anyway",
                    self.name, record, list(buf.dims), list(p.dims),
                )
            if load == "diff" and p.diff is None:
                report.skipped.append(record)
                continue
            getattr(p, "load" if load == "data" else "load_diff")(buf.array)
            report.loaded.append(record)
        return report

    def set_weights(self, buffers: Iterable[Buffer]) -> LoadReport:
        """
        Copy ``<name>.weight`` / ``<name>.bias`` records into the parameters.

        A record whose element count differs from the parameter is skipped
        with a warning; a record with the same count but other dimensions is
        loaded with a warning.
        """
        return self._load_into(buffers, "", "data")

    def set_diffs(self, buffers: Iterable[Buffer]) -> LoadReport:
        return self._load_into(buffers, "_diff", "diff")

    def save_weights(self, fp: IO[bytes]) -> None:
        for p in self.parameters():
            if p.data is not None:
                Buffer.from_array(p.data, name=p.name).write(fp)

    def save_diffs(self, fp: IO[bytes]) -> None:
        for p in self.parameters():
            if p.diff is not None:
                Buffer.from_array(p.diff, name=p.name + "_diff").write(fp)

    # ---- introspection ----
    def amean_weight_data(self) -> float:
        return -1.0 if self.weight is None else self.weight.amean_data()

    def amean_weight_diff(self) -> float:
        return -1.0 if self.weight is None else self.weight.amean_diff()

    def amean_bias_data(self) -> float:
        return -1.0 if self.bias is None else self.bias.amean_data()

    def amean_bias_diff(self) -> float:
        return -1.0 if self.bias is None else self.bias.amean_diff()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, in={self.in_names}, out={self.out_names})"


class ParameterizedLayer(Layer):
    """
    Layer owning a weight and a bias.

    Adds the learning-rate, decay and filler attributes shared by all
    parameterized operators.
    """

    DEFAULT_TRAIN_ME = True

    def __init__(
        self,
        name: str,
        context: DeviceContext,
        *,
        weight_lr_mult: float = 1.0,
        bias_lr_mult: float = 2.0,
        weight_filler: str = "Xavier",
        weight_filler_param: float = 0.0,
        bias_filler: str = "Constant",
        bias_filler_param: float = 0.0,
        weight_decay_mult: float = 1.0,
        bias_decay_mult: float = 1.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        self.weight_lr_mult = float(weight_lr_mult)
        self.bias_lr_mult = float(bias_lr_mult)
        self.weight_filler = str(weight_filler)
        self.weight_filler_param = float(weight_filler_param)
        self.bias_filler = str(bias_filler)
        self.bias_filler_param = float(bias_filler_param)
        self.weight_decay_mult = float(weight_decay_mult)
        self.bias_decay_mult = float(bias_decay_mult)

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(
            weight_lr_mult=reader.get_float("weight_lr_mult", 1.0),
            bias_lr_mult=reader.get_float("bias_lr_mult", 2.0),
            weight_filler=reader.get_str("weight_filler", "Xavier"),
            weight_filler_param=reader.get_float("weight_filler_param", 0.0),
            bias_filler=reader.get_str("bias_filler", "Constant"),
            bias_filler_param=reader.get_float("bias_filler_param", 0.0),
            weight_decay_mult=reader.get_float("weight_decay_mult", 1.0),
            bias_decay_mult=reader.get_float("bias_decay_mult", 1.0),
        )
        return kwargs

    def _allocate_parameters(self, weight_dims: Sequence[int], bias_dims: Sequence[int]) -> int:
        """Create (first call) and allocate the weight and bias; return bytes reserved."""
        if self.weight is None:
            self.weight = Parameter(
                f"{self.name}.weight",
                weight_dims,
                self.context,
                lr_mult=self.weight_lr_mult,
                decay_mult=self.weight_decay_mult,
                filler=self.weight_filler,
                filler_param=self.weight_filler_param,
            )
            self.bias = Parameter(
                f"{self.name}.bias",
                bias_dims,
                self.context,
                lr_mult=self.bias_lr_mult,
                decay_mult=self.bias_decay_mult,
                filler=self.bias_filler,
                filler_param=self.bias_filler_param,
            )
        return sum(p.allocate(local_buffers=self.train_me) for p in self.parameters())


def receptive_of(response: Response, spatial: int) -> tuple:
    """
    Return ``(field, gap, offset)`` of `response`, defaulting to a unit field
    for each of `spatial` dimensions when the producer recorded none.
    """
    field_ = list(response.receptive_field) or [1.0] * spatial
    gap = list(response.receptive_gap) or [1.0] * spatial
    offset = list(response.receptive_offset) or [0.0] * spatial
    return field_, gap, offset
