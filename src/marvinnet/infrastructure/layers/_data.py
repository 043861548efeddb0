"""
In-memory data source layers.

- `TensorLayer` ("Tensor") loads fixed tensors from files once and serves
  them unchanged on every forward pass.
- `MemoryData` loads a whole dataset and its labels into host memory and
  serves consecutive batches, reshuffling on every wrap-around while
  training.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from ...domain._errors import ConfigError, ShapeMismatchError
from ...domain._layer import IDataSource
from ...domain._phase import Phase
from ..buffer import FLOAT, Buffer
from .._description import AttributeReader
from ._base import Layer
from ._registry import register_layer

logger = logging.getLogger(__name__)


class DataLayer(Layer, IDataSource):
    """
    Base of layers that feed a graph from a dataset.

    `epoch` counts completed passes over the dataset. `Net.test` runs until
    the first data layer of the phase wraps.
    """

    is_data = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.epoch = 0

    def item_count(self) -> int:
        raise NotImplementedError

    def shuffle(self) -> None:
        pass

    def _skips(self, phase: Phase) -> bool:
        """True when a training-only source is allocated for testing."""
        return self.phase is Phase.TRAINING and phase is Phase.TESTING

    @property
    def reshuffles(self) -> bool:
        """
        Whether the order is reshuffled on load and on every wrap-around.

        Decided by the phase the source is configured for, never by the
        phase the graph happens to run.
        """
        return self.phase is not Phase.TESTING


def _unit_receptive(rank: int) -> Dict[str, List[float]]:
    spatial = max(rank - 2, 0)
    return {
        "receptive_field": [1.0] * spatial,
        "receptive_gap": [1.0] * spatial,
        "receptive_offset": [0.0] * spatial,
    }


@register_layer("Tensor")
class TensorLayer(DataLayer):
    """
    Constant tensors read from buffer files.

    Parameters
    ----------
    files : list[str]
        One buffer file per output response.
    """

    def __init__(self, name: str, context: Any, *, files: List[str], **kwargs: Any) -> None:
        super().__init__(name, context, **kwargs)
        self.files = [str(f) for f in files]
        self._item_count = 0

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs["files"] = reader.get_list("files", item=str)
        return kwargs

    def setup(self, phase: Phase) -> int:
        self._expect_inputs(0)
        self._expect_outputs(len(self.files))
        reserved = 0
        for out, path in zip(self.outputs, self.files):
            buf = Buffer.load(path, FLOAT)
            logger.info("%s", buf.summary())
            out.need_diff = False
            reserved += out.allocate(buf.dims)
            out.write_data(buf.array)
        self._item_count = self.outputs[0].dims[0] if self.outputs else 0
        return reserved

    def forward(self, phase: Phase) -> None:
        self.epoch += 1

    def item_count(self) -> int:
        return self._item_count


@register_layer("MemoryData")
class MemoryData(DataLayer):
    """
    Dataset held in host memory, served in batches.

    Parameters
    ----------
    file_data, file_label : str
        Buffer files with the items and their labels (dimension 0 is the item
        dimension in both).
    file_mean : str, optional
        Buffer file with one item-shaped mean, subtracted from every item.
    batch_size : int, optional
        Items per forward pass. Defaults to 64.
    scale : float, optional
        Multiplier applied after the mean tensor is subtracted. Defaults to 1.
    mean : float, optional
        Scalar subtracted after scaling. Defaults to 0.

    Notes
    -----
    Both buffers are padded with zero items up to a multiple of
    `batch_size` when read.
    """

    DEFAULT_PHASE = Phase.TRAINING

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        file_data: str,
        file_label: str,
        file_mean: str = "",
        batch_size: int = 64,
        scale: float = 1.0,
        mean: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        if int(batch_size) < 1:
            raise ConfigError(f"batch_size must be >= 1, got {batch_size}", where=self.name)
        self.file_data = str(file_data)
        self.file_label = str(file_label)
        self.file_mean = str(file_mean)
        self.batch_size = int(batch_size)
        self.scale = float(scale)
        self.mean = float(mean)
        self.counter = 0
        self._data: Optional[Buffer] = None
        self._label: Optional[Buffer] = None

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(
            file_data=reader.get_str("file_data"),
            file_label=reader.get_str("file_label"),
            file_mean=reader.get_str("file_mean", ""),
            batch_size=reader.get_int("batch_size", 64),
            scale=reader.get_float("scale", 1.0),
            mean=reader.get_float("mean", 0.0),
        )
        return kwargs

    def _load(self) -> None:
        data = Buffer.load(self.file_data, FLOAT, self.batch_size)
        logger.info("%s", data.summary())
        if self.file_mean:
            mean = Buffer.load(self.file_mean, FLOAT)
            if mean.numel != data.item_size:
                raise ShapeMismatchError(data.dims[1:], mean.dims, where=f"{self.name} mean file")
            data.array.reshape(data.num_items, -1)[...] -= mean.array.reshape(1, -1)
        if self.scale != 1.0:
            data.array[...] *= self.scale
        if self.mean != 0.0:
            data.array[...] -= self.mean

        label = Buffer.load(self.file_label, FLOAT, self.batch_size)
        if label.num_items != data.num_items:
            raise ShapeMismatchError(
                (data.num_items,), (label.num_items,), where=f"{self.name} label count"
            )
        rank = len(data.dims)
        if len(label.dims) < rank:
            label.reshape(label.dims + (1,) * (rank - len(label.dims)))
        self._data, self._label = data, label

    def setup(self, phase: Phase) -> int:
        if self._skips(phase):
            return 0
        self._expect_inputs(0)
        self._expect_outputs(2)
        if self._data is None:
            self._load()
            if self.reshuffles:
                self.shuffle()

        data, label = self._data.dims, self._label.dims
        out_data, out_label = self.outputs
        out_data.need_diff = False
        out_label.need_diff = False
        for key, value in _unit_receptive(len(data)).items():
            setattr(out_data, key, value)
        reserved = out_data.allocate((self.batch_size,) + data[1:])
        reserved += out_label.allocate((self.batch_size,) + label[1:])
        return reserved

    def item_count(self) -> int:
        return 0 if self._data is None else self._data.num_items

    def shuffle(self) -> None:
        if self._data is None:
            return
        order = self.context.rng.permutation(self._data.num_items)
        self._data.permute(order)
        self._label.permute(order)

    def forward(self, phase: Phase) -> None:
        items = self.item_count()
        if self.counter + self.batch_size >= items:
            self.epoch += 1
            if self.reshuffles:
                self.shuffle()
                self.counter = 0

        batch = slice(self.counter, self.counter + self.batch_size)
        self.outputs[0].write_data(self._data.array[batch])
        self.outputs[1].write_data(self._label.array[batch])

        self.counter += self.batch_size
        if self.counter >= items:
            self.counter = 0
