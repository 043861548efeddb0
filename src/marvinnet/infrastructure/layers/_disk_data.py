"""
Disk-backed data source with background prefetch.

`DiskData` reads one item at a time from a buffer file that is too large to
hold in memory. It seeks to each item, takes a random crop (and optionally a
random mirror) and assembles a batch on a dedicated producer thread while the
graph computes on the previous batch.

Design notes
------------
- Producer and consumer talk through two single-slot queues. The consumer
  posts a request, the producer answers with one batch. At most one batch
  is being filled while the graph consumes the other, which is the double
  buffer of the classic design with an explicit hand-off instead of a shared
  flag.
- A batch is requested during allocation, so the first `forward` only waits
  for a read that is already under way. `forward` takes the ready batch and
  immediately requests the next one.
- Each batch carries the epoch counter as it stood when the batch was
  completed; `forward` publishes that value as `epoch`.
- An exception on the producer thread is handed to the consumer through the
  result queue and re-raised by `forward`.
- `close()` stops the producer, drains the queues and joins the thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import IO, Any, Dict, List, Optional, Tuple

import numpy as np

from ...domain._errors import ConfigError, FatalError, MalformedRecordError, ShapeMismatchError
from ...domain._phase import Phase
from ..buffer import FLOAT, Buffer, RecordHeader, open_with_retry, read_header
from .._description import AttributeReader
from ._data import DataLayer, _unit_receptive
from ._registry import register_layer

logger = logging.getLogger(__name__)

_STOP = None
_JOIN_TIMEOUT = 5.0


class _BatchPrefetcher(threading.Thread):
    """
    Producer thread of one `DiskData` layer.

    Waits for a request, reads one batch, posts it, and repeats until
    stopped.
    """

    def __init__(self, source: "DiskData", stop: threading.Event, seed: int) -> None:
        super().__init__(name=f"prefetch-{source.name}", daemon=True)
        self.source = source
        self.stop = stop
        self.rng = np.random.default_rng(seed)
        self.requests: "queue.Queue[Optional[bool]]" = queue.Queue(maxsize=1)
        self.results: "queue.Queue[Tuple[Any, ...]]" = queue.Queue(maxsize=1)

    def run(self) -> None:
        while not self.stop.is_set():
            request = self.requests.get()
            if request is _STOP or self.stop.is_set():
                return
            try:
                item = ("ok",) + self.source._read_batch(self.rng)
            except Exception as e:
                item = ("error", e)
            self.results.put(item)
            if item[0] == "error":
                return


@register_layer("DiskData")
class DiskData(DataLayer):
    """
    Batches read item by item from a buffer file, with augmentation.

    Parameters
    ----------
    file_data : str
        Buffer file of shape ``(items, C, *spatial)``; any storage kind.
    file_label : str
        Buffer file with one label record per item.
    batch_size : int
        Items per forward pass.
    size_crop : list[int]
        Spatial size of the random crop, one entry per spatial dimension.
    mirror : bool, optional
        Flip the second spatial axis with probability 0.5. Defaults to False.

    Notes
    -----
    An optional single input holds a mean that is subtracted, cyclically,
    from every converted item.
    """

    DEFAULT_PHASE = Phase.TRAINING

    def __init__(
        self,
        name: str,
        context: Any,
        *,
        file_data: str,
        file_label: str,
        batch_size: int,
        size_crop: List[int],
        mirror: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, context, **kwargs)
        if int(batch_size) < 1:
            raise ConfigError(f"batch_size must be >= 1, got {batch_size}", where=self.name)
        self.file_data = str(file_data)
        self.file_label = str(file_label)
        self.batch_size = int(batch_size)
        self.size_crop = [int(s) for s in size_crop]
        self.mirror = bool(mirror)

        self.counter = 0
        self.epoch_prefetch = 0
        self.size_data: Tuple[int, ...] = ()
        self._header: Optional[RecordHeader] = None
        self._fp: Optional[IO[bytes]] = None
        self._label: Optional[Buffer] = None
        self._ordering: Optional[np.ndarray] = None
        self._stop = threading.Event()
        self._prefetcher: Optional[_BatchPrefetcher] = None

    @classmethod
    def read_attributes(cls, reader: AttributeReader) -> Dict[str, Any]:
        kwargs = super().read_attributes(reader)
        kwargs.update(
            file_data=reader.get_str("file_data"),
            file_label=reader.get_str("file_label"),
            batch_size=reader.get_int("batch_size"),
            size_crop=reader.get_list("size_crop"),
            mirror=reader.get_bool("mirror", False),
        )
        return kwargs

    # ---- allocation ----
    def _open(self) -> None:
        self._fp = open_with_retry(self.file_data, "rb")
        self._header = read_header(self._fp)
        dims = self._header.dims
        if len(dims) < 3:
            raise ShapeMismatchError(dims, dims, where=f"{self.name} data file needs (items, C, *spatial)")
        self.size_data = tuple(dims[1:])
        if len(self.size_crop) != len(self.size_data) - 1:
            raise ConfigError(
                f"size_crop has {len(self.size_crop)} entries for {len(self.size_data) - 1} spatial dims",
                where=self.name,
            )
        for crop, full in zip(self.size_crop, self.size_data[1:]):
            if not 0 < crop <= full:
                raise ConfigError(f"size_crop {self.size_crop} exceeds data {list(self.size_data)}", where=self.name)
        logger.info("%s: %d items of %s (%s)", self.name, dims[0], list(self.size_data), self._header.kind.name)

        label = Buffer.load(self.file_label, FLOAT)
        if label.num_items != dims[0]:
            raise ShapeMismatchError((dims[0],), (label.num_items,), where=f"{self.name} label count")
        rank = len(self.size_data) + 1
        if len(label.dims) < rank:
            label.reshape(label.dims + (1,) * (rank - len(label.dims)))
        self._label = label
        self._ordering = np.arange(dims[0])

    def setup(self, phase: Phase) -> int:
        if self._skips(phase):
            return 0
        self._expect_inputs(0, 1)
        self._expect_outputs(2)
        if self._header is None:
            self._open()
            if self.reshuffles:
                self.shuffle()

        out_data, out_label = self.outputs
        out_data.need_diff = False
        out_label.need_diff = False
        for key, value in _unit_receptive(len(self.size_data) + 1).items():
            setattr(out_data, key, value)
        reserved = out_data.allocate((self.batch_size, self.size_data[0]) + tuple(self.size_crop))
        reserved += out_label.allocate((self.batch_size,) + self._label.dims[1:])

        if self._prefetcher is None:
            self._stop.clear()
            self._prefetcher = _BatchPrefetcher(
                self, self._stop, int(self.context.rng.integers(0, 2**32 - 1))
            )
            self._prefetcher.start()
            self._prefetcher.requests.put(True)
        return reserved

    # ---- dataset ----
    def item_count(self) -> int:
        return 0 if self._header is None else self._header.dims[0]

    def shuffle(self, rng: Optional[np.random.Generator] = None) -> None:
        if self._ordering is None:
            return
        rng = self.context.rng if rng is None else rng
        self._ordering = rng.permutation(self._ordering.size)

    def _read_item(self, index: int) -> np.ndarray:
        kind = self._header.kind
        numel = int(np.prod(self.size_data))
        self._fp.seek(self._header.nbytes + index * numel * kind.itemsize)
        raw = self._fp.read(numel * kind.itemsize)
        if len(raw) != numel * kind.itemsize:
            raise MalformedRecordError(f"item {index} is truncated", where=self.file_data)
        return np.frombuffer(raw, dtype=kind.dtype).reshape(self.size_data)

    def _read_batch(self, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray, int]:
        """Assemble one batch; runs on the producer thread."""
        spatial = self.size_data[1:]
        full_crop = int(np.prod(self.size_crop)) == int(np.prod(spatial))
        mirror_axis = 2 if len(spatial) > 1 else 1
        data = np.empty((self.batch_size, self.size_data[0]) + tuple(self.size_crop), dtype=self._header.kind.dtype)
        labels = np.empty((self.batch_size,) + self._label.dims[1:], dtype=np.float32)

        for i in range(self.batch_size):
            index = int(self._ordering[self.counter])
            item = self._read_item(index)
            if full_crop:
                offsets = [0] * len(spatial)
            else:
                offsets = [int(rng.integers(0, full - crop + 1)) for full, crop in zip(spatial, self.size_crop)]
            window = (slice(None),) + tuple(slice(o, o + c) for o, c in zip(offsets, self.size_crop))
            item = item[window]
            if self.mirror and rng.random() < 0.5:
                item = np.flip(item, axis=mirror_axis)
            data[i] = item
            labels[i] = self._label.array[index]

            self.counter += 1
            if self.counter >= self._ordering.size:
                if self.reshuffles:
                    self.shuffle(rng)
                self.counter = 0
                self.epoch_prefetch += 1
        return data, labels, self.epoch_prefetch

    # ---- execution ----
    def forward(self, phase: Phase) -> None:
        if self._prefetcher is None:
            raise FatalError("forward before allocation", where=self.name)
        status, *payload = self._prefetcher.results.get()
        if status == "error":
            raise payload[0]
        data, labels, epoch = payload
        self.epoch = epoch
        self._prefetcher.requests.put(True)

        batch = data.astype(np.float32)
        if self.inputs:
            mean = self.inputs[0].data.reshape(-1)
            flat = batch.reshape(self.batch_size, -1)
            flat -= mean[np.arange(flat.shape[1]) % mean.size]
        self.outputs[0].write_data(batch)
        self.outputs[1].write_data(labels)

    def close(self) -> None:
        """Stop the producer thread and release the data file."""
        prefetcher, self._prefetcher = self._prefetcher, None
        if prefetcher is not None:
            self._stop.set()
            try:
                prefetcher.requests.put_nowait(_STOP)
            except queue.Full:
                pass
            prefetcher.join(timeout=_JOIN_TIMEOUT)
            while True:
                try:
                    prefetcher.results.get_nowait()
                except queue.Empty:
                    break
            if prefetcher.is_alive():
                prefetcher.join(timeout=_JOIN_TIMEOUT)
            if prefetcher.is_alive():
                logger.warning("%s: prefetch thread did not stop", self.name)
        if self._fp is not None:
            self._fp.close()
            self._fp = None
