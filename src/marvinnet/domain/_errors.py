"""
Engine error taxonomy for marvinnet.

Every structural or schema violation detected by the engine derives from
`FatalError`. These errors are not meant to be handled inside the engine:
they propagate to the outermost caller (the command line entry point), which
releases the device contexts and terminates the process with a non-zero
status.

The two recoverable situations, transient file unavailability and soft
mismatches while loading a checkpoint, are not represented here. They are
handled by retry loops and typed return values respectively.
"""

from __future__ import annotations

from typing import Optional, Sequence


class FatalError(RuntimeError):
    """
    Base class of all unrecoverable engine errors.

    Attributes
    ----------
    where : str or None
        Optional name of the node, edge or file involved.
    """

    def __init__(self, message: str, *, where: Optional[str] = None) -> None:
        if where:
            message = f"{where}: {message}"
        super().__init__(message)
        self.where = where


class ShapeMismatchError(FatalError):
    """
    Raised when a buffer or edge is given dimensions that contradict the
    dimensions it already has, or that an operator cannot accept.

    Attributes
    ----------
    expected : tuple[int, ...]
        Dimensions that were required.
    actual : tuple[int, ...]
        Dimensions that were supplied.
    """

    def __init__(
        self,
        expected: Sequence[int],
        actual: Sequence[int],
        *,
        where: Optional[str] = None,
    ) -> None:
        self.expected = tuple(int(d) for d in expected)
        self.actual = tuple(int(d) for d in actual)
        super().__init__(
            f"shape mismatch, expected {list(self.expected)} got {list(self.actual)}",
            where=where,
        )


class ArityError(FatalError):
    """Raised when a node is wired to the wrong number of inputs or outputs."""


class ConfigError(FatalError):
    """
    Raised for a missing required attribute, an unsupported enumeration value
    or an out-of-range setting in the architecture description.
    """


class UnknownLayerTypeError(ConfigError):
    """
    Raised when the architecture description names an operator type that has
    no registered implementation.

    Attributes
    ----------
    type_name : str
        The unrecognized type tag.
    available : tuple[str, ...]
        Registered type tags at the time of the lookup.
    """

    def __init__(self, type_name: str, available: Sequence[str]) -> None:
        self.type_name = type_name
        self.available = tuple(available)
        listing = ", ".join(self.available) or "<none>"
        super().__init__(
            f"unrecognizable layer type {type_name!r}. Available: {listing}"
        )


class MalformedRecordError(FatalError):
    """Raised when a buffer record header or payload is truncated or invalid."""


class KindConversionError(FatalError):
    """
    Raised when a buffer stored with one element kind is requested as another
    kind and no conversion between the two is defined.

    Attributes
    ----------
    stored : str
        Element kind found on disk.
    requested : str
        Element kind requested by the reader.
    """

    def __init__(self, stored: str, requested: str, *, where: Optional[str] = None) -> None:
        self.stored = stored
        self.requested = requested
        super().__init__(
            f"cannot convert stored kind {stored!r} to requested kind {requested!r}",
            where=where,
        )


class PeerAccessError(FatalError):
    """
    Raised when a replica device cannot address the memory of the device that
    hosts the shared parameter regions.
    """

    def __init__(self, device_id: int, solver_device_id: int) -> None:
        self.device_id = device_id
        self.solver_device_id = solver_device_id
        super().__init__(
            f"device #{device_id} cannot access solver device #{solver_device_id}"
        )


class NotImplementedModeError(FatalError):
    """Raised when an operator is asked to run a mode it does not implement."""
