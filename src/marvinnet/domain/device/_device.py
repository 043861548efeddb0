"""
Logical device descriptors.

A replica of the computation graph is bound to one logical device slot. The
architecture description refers to these slots by integer id (the `GPU` list
of the `train` block); inside the engine they are represented by `Device`,
which validates and normalizes user-facing strings such as "host:0".

The descriptor is backend-agnostic and allocates nothing. Memory for a device
is reserved through a `DeviceContext` bound to it.
"""

from __future__ import annotations

import re


class Device:
    """
    Logical compute device descriptor.

    Parameters
    ----------
    device : str
        Device identifier string, ``"host"`` (slot 0) or ``"host:<index>"``
        where ``<index>`` is a non-negative integer.

    Raises
    ------
    ValueError
        If the provided device string does not match the supported formats.

    Notes
    -----
    `__slots__` prevents dynamic attribute creation; a Device is a value
    object used as a dictionary key for per-device memory accounting.
    """

    __slots__ = ("index",)

    _PATTERN = re.compile(r"^host(?::(\d+))?$")

    def __init__(self, device: str):
        m = self._PATTERN.match(device) if isinstance(device, str) else None
        if not m:
            raise ValueError(
                f"Invalid device {device!r}. Expected 'host' or 'host:<index>'"
            )
        self.index = int(m.group(1)) if m.group(1) is not None else 0

    @classmethod
    def from_index(cls, index: int) -> "Device":
        """Build the descriptor of device slot `index`."""
        if int(index) < 0:
            raise ValueError(f"Device index must be >= 0, got {index}")
        return cls(f"host:{int(index)}")

    def __str__(self) -> str:
        return f"host:{self.index}"

    def __repr__(self) -> str:
        return f"Device('{self}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return self.index == other.index

    def __hash__(self) -> int:
        return hash(("host", self.index))
