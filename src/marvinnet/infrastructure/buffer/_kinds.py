"""
Storage kinds of host buffers.

Every buffer record on disk starts with a one-byte kind tag followed by the
byte width of one element. The tag values are part of the file format and
must not change.

    tag  kind     numpy dtype
    ---  -------  -----------
     0   half     float16
     1   float    float32
     2   double   float64
     3   uint8    uint8
     4   uint16   uint16
     5   uint32   uint32
     6   uint64   uint64
     7   int8     int8
     8   int16    int16
     9   int32    int32
    10   int64    int64
    11   char     int8
    12   bool     bool

Only the three floating kinds convert into one another when a file holds a
different kind than the reader asked for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Union

import numpy as np

from ...domain._errors import ConfigError, KindConversionError


@dataclass(frozen=True)
class StorageKind:
    """
    One element kind of the buffer file format.

    Attributes
    ----------
    name : str
        Canonical kind name ("float", "uint8", ...).
    tag : int
        One-byte tag written in record headers.
    dtype : numpy.dtype
        Host dtype, always little-endian.
    """

    name: str
    tag: int
    dtype: np.dtype

    @property
    def itemsize(self) -> int:
        return int(self.dtype.itemsize)

    @property
    def is_floating(self) -> bool:
        return self.name in _FLOATING

    def __str__(self) -> str:
        return self.name


_FLOATING = frozenset({"half", "float", "double"})

KINDS = (
    StorageKind("half", 0, np.dtype("<f2")),
    StorageKind("float", 1, np.dtype("<f4")),
    StorageKind("double", 2, np.dtype("<f8")),
    StorageKind("uint8", 3, np.dtype("u1")),
    StorageKind("uint16", 4, np.dtype("<u2")),
    StorageKind("uint32", 5, np.dtype("<u4")),
    StorageKind("uint64", 6, np.dtype("<u8")),
    StorageKind("int8", 7, np.dtype("i1")),
    StorageKind("int16", 8, np.dtype("<i2")),
    StorageKind("int32", 9, np.dtype("<i4")),
    StorageKind("int64", 10, np.dtype("<i8")),
    StorageKind("char", 11, np.dtype("i1")),
    StorageKind("bool", 12, np.dtype("?")),
)

KINDS_BY_TAG: Dict[int, StorageKind] = {k.tag: k for k in KINDS}
KINDS_BY_NAME: Dict[str, StorageKind] = {k.name: k for k in KINDS}

FLOAT = KINDS_BY_NAME["float"]

KindLike = Union[StorageKind, str, np.dtype, type]


def resolve_kind(kind: KindLike) -> StorageKind:
    """
    Normalize a kind given as a `StorageKind`, a kind name or a numpy dtype.

    A dtype maps to the first kind that stores it, so ``np.int8`` resolves to
    "int8" and the "char" kind can only be selected by name.

    Raises
    ------
    ConfigError
        If the value names no supported kind.
    """
    if isinstance(kind, StorageKind):
        return kind
    if isinstance(kind, str) and kind in KINDS_BY_NAME:
        return KINDS_BY_NAME[kind]
    try:
        dt = np.dtype(kind).newbyteorder("<")
    except TypeError as e:
        raise ConfigError(f"unsupported storage kind {kind!r}") from e
    for k in KINDS:
        if k.dtype == dt or k.dtype == np.dtype(kind):
            return k
    raise ConfigError(f"unsupported storage kind {kind!r}")


def kind_from_tag(tag: int, itemsize: int) -> StorageKind:
    """
    Look up the kind of a record header.

    Raises
    ------
    KindConversionError
        If the tag is known but the stored byte width differs from the width
        of that kind on this machine.
    ConfigError
        If the tag is not part of the format.
    """
    try:
        kind = KINDS_BY_TAG[int(tag)]
    except KeyError as e:
        raise ConfigError(f"unknown storage kind tag {tag}") from e
    if kind.itemsize != int(itemsize):
        raise KindConversionError(
            f"{kind.name}[{itemsize} bytes]", f"{kind.name}[{kind.itemsize} bytes]"
        )
    return kind


def can_convert(stored: StorageKind, requested: StorageKind) -> bool:
    """Return True if `stored` data may be read as `requested`."""
    return stored == requested or (stored.is_floating and requested.is_floating)
