"""
Per-graph device context.

A `DeviceContext` is the handle every node and edge of one graph replica uses
to reach its device: it allocates zero-filled device arrays, accounts for the
bytes reserved and owns the random generator used for initialization,
shuffling, dropout masks and augmentation. One context is created per replica
and passed explicitly to the graph, so replicas running on separate threads
never share mutable backend state.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence

import numpy as np

from ...domain._errors import FatalError
from ...domain.device._device import Device
from ._backend import NumpyBackend

logger = logging.getLogger(__name__)

STORAGE_DTYPE = np.dtype(np.float32)


class DeviceContext:
    """
    Device handle of one graph replica.

    Parameters
    ----------
    device_id : int, optional
        Logical device slot. Defaults to 0.
    backend : NumpyBackend, optional
        Backend that owns the slot. A default backend is created if omitted.
    seed : int, optional
        Seed for the context's random generator.

    Notes
    -----
    - `close()` releases the context; allocating afterwards is fatal.
    - The context can be used as a context manager.
    """

    def __init__(
        self,
        device_id: int = 0,
        *,
        backend: Optional[NumpyBackend] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.backend = backend if backend is not None else NumpyBackend()
        self.device: Device = self.backend.device(device_id)
        self.rng = np.random.default_rng(seed)
        self.dtype = STORAGE_DTYPE
        self._reserved = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def device_id(self) -> int:
        return self.device.index

    @property
    def reserved_bytes(self) -> int:
        return self._reserved

    @property
    def closed(self) -> bool:
        return self._closed

    def zeros(self, dims: Sequence[int], dtype: Optional[np.dtype] = None) -> np.ndarray:
        """Allocate a zero-filled device array and account for its bytes."""
        if self._closed:
            raise FatalError("allocation on a released device context", where=str(self.device))
        arr = np.zeros(tuple(int(d) for d in dims), dtype=self.dtype if dtype is None else dtype)
        with self._lock:
            self._reserved += int(arr.nbytes)
        return arr

    def release(self, array: Optional[np.ndarray]) -> None:
        """Stop accounting for an array allocated by `zeros`."""
        if array is None:
            return
        with self._lock:
            self._reserved = max(0, self._reserved - int(array.nbytes))

    def synchronize(self) -> None:
        self.backend.synchronize(self.device_id)

    def close(self) -> None:
        if not self._closed:
            logger.debug("releasing %s (%d bytes reserved)", self.device, self._reserved)
            self._closed = True

    def __enter__(self) -> "DeviceContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DeviceContext({self.device!r}, reserved={self._reserved})"
