"""
Computation graph of one replica.

A `Net` is built once from a `NetDescription`: every layer record becomes a
`Layer`, and every response name mentioned in an "out" or "in" list becomes
one shared `Response`. The net is then allocated once for a phase and
executed repeatedly.

Design notes
------------
- File order is execution order: `forward` walks the layers front to back,
  `backward` back to front. Layers whose phase does not run in the net's
  current phase are skipped.
- `backward` zeroes every response gradient first, so layers can always
  accumulate.
- Loading weights is the one lenient path: records that match no parameter
  and records whose size does not fit are reported and skipped.
"""

from __future__ import annotations

import logging
import time
from typing import IO, Dict, Iterable, List, Optional, Sequence, Union

from ...domain._errors import ConfigError, FatalError
from ...domain._phase import Phase
from .._description import NetDescription
from .._response import Response
from ..buffer import FLOAT, Buffer, open_with_retry, read_buffers, wait_until_absent
from ..device._backend import NumpyBackend
from ..device._context import DeviceContext
from ..layers import Layer, LoadReport, layer_from_attributes
from ..layers._data import DataLayer
from ..layers._loss import Loss

logger = logging.getLogger(__name__)

_RULE = "=" * 100


def format_bytes(n: int) -> str:
    """Human readable size with binary units, e.g. ``"1.50 MB"``."""
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024.0 or unit == "GB":
            return f"{size:.2f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024.0
    return f"{size:.2f} GB"


class Net:
    """
    One executable graph bound to one device context.

    Parameters
    ----------
    description : NetDescription
        Architecture description; only the "layers" section is used.
    context : DeviceContext
        Device handle shared by every layer and response of this graph.
    debug_mode : bool, optional
        Log per-layer statistics and check outputs for NaN on every pass.
    train_iter : int, optional
        Forward/backward repetitions per `step_train`. Defaults to 1.
    test_iter : int, optional
        Forward passes per `step_test`. Defaults to 1.

    Attributes
    ----------
    layers : list[Layer]
        Layers in execution order.
    responses : dict[str, Response]
        Responses keyed by name, in creation order.
    loss_layers : list[Loss]
        Loss layers in execution order.
    phase : Phase
        Phase the net currently executes in.
    """

    def __init__(
        self,
        description: NetDescription,
        context: DeviceContext,
        *,
        debug_mode: bool = False,
        train_iter: int = 1,
        test_iter: int = 1,
    ) -> None:
        self.context = context
        self.debug_mode = bool(debug_mode)
        self.train_iter = int(train_iter)
        self.test_iter = int(test_iter)
        self.phase = Phase.TESTING
        self.layers: List[Layer] = []
        self.responses: Dict[str, Response] = {}
        self.loss_layers: List[Loss] = []
        self._owns_context = False
        self._build(description)

    @classmethod
    def from_file(cls, path: str, *, backend: Optional[NumpyBackend] = None) -> "Net":
        """
        Build a standalone net from a description file, using the "test"
        block for the device id (`GPU`, default 0) and `debug_mode`.
        """
        description = NetDescription.from_file(path)
        test = description.test_reader()
        context = DeviceContext(test.get_int("GPU", 0), backend=backend)
        try:
            net = cls(description, context, debug_mode=test.get_bool("debug_mode", False))
        except FatalError:
            context.close()
            raise
        net._owns_context = True
        return net

    # ---- construction ----
    def _response(self, name: str) -> Response:
        r = self.responses.get(name)
        if r is None:
            r = self.responses[name] = Response(name, self.context)
        return r

    def _build(self, description: NetDescription) -> None:
        for reader in description.layer_readers():
            layer = layer_from_attributes(reader, self.context)
            if self.get_layer(layer.name) is not None:
                raise ConfigError("duplicate layer name", where=layer.name)
            self.layers.append(layer)
            if layer.is_loss:
                self.loss_layers.append(layer)
            layer.outputs = [self._response(n) for n in layer.out_names]
            layer.inputs = [self._response(n) for n in layer.in_names]

    def get_layer(self, name: str) -> Optional[Layer]:
        for layer in self.layers:
            if layer.name == name:
                return layer
        return None

    def get_response(self, name: str) -> Optional[Response]:
        return self.responses.get(name)

    def _active(self, layer: Layer) -> bool:
        return layer.phase.runs_in(self.phase)

    # ---- allocation ----
    def allocate(self, phase: Phase = Phase.TESTING) -> int:
        """
        Allocate every layer for `phase` in construction order.

        Returns
        -------
        int
            Bytes held by this net's device context afterwards. Calling
            `allocate` again with the same inputs reserves nothing new and
            returns the same total.
        """
        self.phase = phase
        logger.info(_RULE)
        logger.info("  Layers / Responses (%s)", phase.value)
        logger.info(_RULE)
        for layer in self.layers:
            layer.allocate(phase)
        total = self.context.reserved_bytes
        logger.info(_RULE)
        logger.info("%s: Total memory: %s", self.context.device, format_bytes(total))
        return total

    def rand_init(self) -> None:
        for layer in self.layers:
            layer.rand_init()

    # ---- execution ----
    def forward(self) -> None:
        for index, layer in enumerate(self.layers):
            if not self._active(layer):
                continue
            if not self.debug_mode:
                layer.forward(self.phase)
                continue

            parts = [f"[Forward] Layer[{index}] {layer.name}"]
            for label, avg in (("weight.data", layer.amean_weight_data()), ("bias.data", layer.amean_bias_data())):
                if avg != -1:
                    parts.append(f"{label}: {avg:g}")
            start = time.perf_counter()
            layer.forward(self.phase)
            self.context.synchronize()
            elapsed = time.perf_counter() - start
            for o, out in enumerate(layer.outputs):
                avg = out.amean_data()
                if avg != -1:
                    parts.append(f"out[{o}].data: {avg:g}")
                out.check_nan()
            logger.info("%s (%.3f ms)", " ".join(parts), elapsed * 1000.0)

    def backward(self) -> None:
        for r in self.responses.values():
            r.clear_diff()

        for index in range(len(self.layers) - 1, -1, -1):
            layer = self.layers[index]
            if not self._active(layer):
                continue
            if not self.debug_mode:
                layer.backward(self.phase)
                continue

            start = time.perf_counter()
            layer.backward(self.phase)
            self.context.synchronize()
            elapsed = time.perf_counter() - start
            parts = [f"[Backward] Layer[{index}] {layer.name}"]
            for label, avg in (("weight.diff", layer.amean_weight_diff()), ("bias.diff", layer.amean_bias_diff())):
                if avg != -1:
                    parts.append(f"{label}: {avg:g}")
            for i, r in enumerate(layer.inputs):
                avg = r.amean_diff()
                if avg != -1:
                    parts.append(f"in[{i}].diff: {avg:g}")
            logger.info("%s (%.3f ms)", " ".join(parts), elapsed * 1000.0)

    def update(self) -> None:
        for layer in self.layers:
            layer.update()

    def reset_loss(self) -> None:
        for layer in self.loss_layers:
            layer.reset()

    def eval(self) -> None:
        for layer in self.loss_layers:
            if self._active(layer):
                layer.eval()

    def step_test(self) -> None:
        """Average the loss layers over `test_iter` forward passes."""
        self.reset_loss()
        for _ in range(self.test_iter):
            self.forward()
            self.eval()
        for layer in self.loss_layers:
            layer.result /= self.test_iter
            layer.loss /= self.test_iter

    def step_train(self) -> None:
        """
        Apply the pending history step, then run `train_iter` forward and
        backward passes accumulating parameter gradients.
        """
        self.update()
        self.reset_loss()
        for layer in self.layers:
            layer.clear_diff()
        for _ in range(self.train_iter):
            self.forward()
            self.backward()
        for layer in self.loss_layers:
            layer.result /= self.train_iter
            layer.loss /= self.train_iter

    def active_loss_layers(self) -> List[Loss]:
        return [layer for layer in self.loss_layers if self._active(layer)]

    # ---- weights ----
    def load_weights(
        self, source: Union[str, Iterable[Buffer]], diff: bool = False
    ) -> LoadReport:
        """
        Load parameter records by name from a weights file or buffers.

        Records that match no parameter are reported with a warning and
        ignored. Size mismatches are warned about and skipped by the layer.

        Returns
        -------
        LoadReport
            Loaded and skipped record names across all layers.
        """
        buffers = read_buffers(source, FLOAT) if isinstance(source, str) else list(source)
        report = LoadReport()
        for layer in self.layers:
            report.merge(layer.set_weights(buffers))
            if diff:
                report.merge(layer.set_diffs(buffers))

        matched = set(report.matched)
        for buf in buffers:
            if buf.name in matched or (not diff and buf.name.endswith("_diff")):
                continue
            logger.warning("weights record %r matches no parameter; ignored", buf.name)
        logger.info("loaded %d parameter record(s), skipped %d", len(report.loaded), len(report.skipped))
        return report

    def save_weights(self, path: str, diff: bool = False) -> None:
        with open_with_retry(path, "wb") as fp:
            self.write_weights(fp, diff=diff)

    def write_weights(self, fp: IO[bytes], *, diff: bool = False) -> None:
        for layer in self.layers:
            layer.save_weights(fp)
            if diff:
                layer.save_diffs(fp)

    # ---- testing ----
    def _first_data_layer(self) -> DataLayer:
        for layer in self.layers:
            if self._active(layer) and layer.is_data:
                return layer
        raise FatalError(f"no data layer for {self.phase.value}")

    def test(
        self,
        response_names: Sequence[str] = (),
        save_filenames: Sequence[str] = (),
        iters_per_save: int = 0,
    ) -> List[float]:
        """
        Run the testing phase over one pass of the dataset.

        Runs forward passes until the first active data layer wraps, and
        optionally streams the activations of `response_names` to
        `save_filenames` as buffer records.

        Parameters
        ----------
        response_names : Sequence[str], optional
            Responses whose activations are saved.
        save_filenames : Sequence[str], optional
            One file per response. With `iters_per_save` the file name gets a
            ``_<k>.tensor`` suffix and a new file is started every
            `iters_per_save` iterations.
        iters_per_save : int, optional
            Iterations per file; 0 writes one file per response.

        Returns
        -------
        list[float]
            Per loss layer, the average `result` over the iterations; 0 for
            loss layers that do not run in the testing phase.

        Notes
        -----
        Must be called after `allocate`. Existing output files are never
        overwritten; the call waits until they are removed.
        """
        if len(response_names) != len(save_filenames):
            raise ConfigError(
                f"{len(response_names)} response(s) but {len(save_filenames)} file name(s)"
            )
        self.phase = Phase.TESTING
        data_layer = self._first_data_layer()
        items = data_layer.item_count()

        responses: List[Response] = []
        for name in response_names:
            r = self.get_response(name)
            if r is None or not r.allocated:
                raise ConfigError(f"unknown response {name!r}")
            responses.append(r)

        remaining = [items * r.item_size for r in responses]
        files: List[Optional[IO[bytes]]] = [None] * len(responses)
        file_counter = [0] * len(responses)
        result = [0.0] * len(self.loss_layers)

        logger.info(_RULE)
        iteration = 0
        try:
            while data_layer.epoch == 0:
                self.reset_loss()
                self.forward()
                self.eval()

                parts = [f"Iteration {iteration} "]
                for i, layer in enumerate(self.loss_layers):
                    if self._active(layer):
                        parts.append(layer.display())
                        result[i] += layer.result
                logger.info("%s", " ".join(parts))

                for i, r in enumerate(responses):
                    starts_file = (iters_per_save == 0 and iteration == 0) or (
                        iters_per_save != 0 and iteration % iters_per_save == 0
                    )
                    if starts_file:
                        files[i] = self._open_feature_file(
                            r, save_filenames[i], items, iters_per_save, file_counter[i]
                        )
                        file_counter[i] += 1

                    features = Buffer.from_array(r.read_data(), name=r.name)
                    features.write_data(files[i], remaining[i])
                    remaining[i] -= features.numel

                    if iters_per_save != 0 and iteration % iters_per_save == iters_per_save - 1:
                        files[i].close()
                        files[i] = None
                iteration += 1
        finally:
            for fp in files:
                if fp is not None:
                    fp.close()

        result = [value / iteration for value in result] if iteration else result
        evals = [
            f"eval = {result[i]:g}" for i, layer in enumerate(self.loss_layers) if self._active(layer)
        ]
        logger.info("Average over %d iterations  %s", iteration, "  ".join(evals))
        return result

    @staticmethod
    def _open_feature_file(
        r: Response, filename: str, items: int, iters_per_save: int, index: int
    ) -> IO[bytes]:
        if iters_per_save != 0:
            filename = f"{filename}_{index}.tensor"
        wait_until_absent(filename)

        dims = list(r.dims)
        if iters_per_save == 0:
            dims[0] = items
        else:
            per_file = r.dims[0] * iters_per_save
            saved = per_file * index
            dims[0] = per_file if saved + per_file <= items else items - saved

        fp = open_with_retry(filename, "wb")
        Buffer((0,), FLOAT, r.name).write_header(fp, dims)
        return fp

    # ---- teardown ----
    def close(self) -> None:
        """Stop background producers and release every response."""
        for layer in self.layers:
            layer.close()
        for r in self.responses.values():
            r.release()
        if self._owns_context:
            self.context.close()

    def __enter__(self) -> "Net":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Net(layers={len(self.layers)}, responses={len(self.responses)}, phase={self.phase.value})"
