"""
Compute backend registry of logical devices.

The engine runs its kernels through numpy, so every logical device is a slot
of host memory. The backend still answers the questions a multi-device
trainer needs at startup: how many devices exist, whether an id is valid and
whether one device may address another device's memory.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from ...domain._errors import ConfigError
from ...domain.device._device import Device

logger = logging.getLogger(__name__)


class NumpyBackend:
    """
    Host (numpy) compute backend.

    Parameters
    ----------
    device_count : int, optional
        Number of logical device slots. Defaults to the number of CPUs.

    Notes
    -----
    All slots share one address space, so peer access between any two valid
    devices is always available.
    """

    name = "numpy"

    def __init__(self, device_count: Optional[int] = None) -> None:
        count = device_count if device_count is not None else (os.cpu_count() or 1)
        if int(count) < 1:
            raise ValueError(f"device_count must be >= 1, got {count}")
        self._device_count = int(count)

    def device_count(self) -> int:
        return self._device_count

    def device(self, device_id: int) -> Device:
        """
        Return the descriptor of `device_id`.

        Raises
        ------
        ConfigError
            If the id is negative or not below `device_count()`.
        """
        device_id = int(device_id)
        if device_id < 0 or device_id >= self._device_count:
            raise ConfigError(
                f"device #{device_id} requested but only "
                f"{self._device_count} device(s) are available"
            )
        return Device.from_index(device_id)

    def can_access_peer(self, device_id: int, peer_id: int) -> bool:
        self.device(device_id)
        self.device(peer_id)
        return True

    def synchronize(self, device_id: int) -> None:
        """Wait for outstanding work on `device_id`; numpy work is synchronous."""
        self.device(device_id)

    def __repr__(self) -> str:
        return f"NumpyBackend(device_count={self._device_count})"
