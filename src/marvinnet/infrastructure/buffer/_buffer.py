"""
Host-resident typed buffers and their binary record format.

A `Buffer` is an owned numpy array of one storage kind, plus a name. It is the
unit of every file the engine reads or writes: datasets, labels, mean images,
weights and snapshots are all streams of self-describing records:

    [kind tag: u8][element bytes: u32][name length: i32][name bytes]
    [dims count: i32][dims: i32 x count][payload: element bytes x numel]

All integers are little-endian. A stream is read record by record until a
header read comes back short, which marks the end of the stream. A short
payload is a truncated file and is fatal: no partially filled buffer is ever
handed to a caller.

Design notes
------------
- Dimension 0 is the item (batch) dimension. `permute` reorders items and is
  how data sources shuffle.
- Reading with a different kind than the one stored is allowed only between
  the floating kinds; the record is read in its stored kind first, then
  converted.
- Reading with ``batch_size > 1`` pads dimension 0 up to a multiple of the
  batch size; padded items are zero.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import IO, Optional, Sequence, Tuple

import numpy as np

from ...domain._errors import (
    KindConversionError,
    MalformedRecordError,
    ShapeMismatchError,
)
from ._io import open_with_retry
from ._kinds import FLOAT, KindLike, StorageKind, can_convert, kind_from_tag, resolve_kind


_HEAD = struct.Struct("<BI")
_INT = struct.Struct("<i")


def _prod(dims: Sequence[int]) -> int:
    n = 1
    for d in dims:
        n *= int(d)
    return n


@dataclass(frozen=True)
class RecordHeader:
    """
    Decoded header of one record.

    Attributes
    ----------
    kind : StorageKind
        Stored element kind.
    name : str
        Record name.
    dims : tuple[int, ...]
        Stored dimensions.
    nbytes : int
        Size of the header itself, in bytes.
    """

    kind: StorageKind
    name: str
    dims: Tuple[int, ...]
    nbytes: int

    @property
    def numel(self) -> int:
        return _prod(self.dims)


def _read_exact(fp: IO[bytes], n: int) -> Optional[bytes]:
    raw = fp.read(n) if n > 0 else b""
    if len(raw) != n:
        return None
    return raw


def _read_header(fp: IO[bytes], *, strict: bool) -> Optional[RecordHeader]:
    """
    Decode one record header.

    Returns None on a short read, unless `strict`, in which case a short read
    is fatal.
    """

    def short(what: str) -> None:
        if strict:
            raise MalformedRecordError(f"truncated record header ({what})")
        return None

    raw = _read_exact(fp, _HEAD.size)
    if raw is None:
        return short("kind")
    tag, itemsize = _HEAD.unpack(raw)
    kind = kind_from_tag(tag, itemsize)

    raw = _read_exact(fp, _INT.size)
    if raw is None:
        return short("name length")
    (name_len,) = _INT.unpack(raw)
    if name_len < 0:
        raise MalformedRecordError(f"negative name length {name_len}")
    raw_name = _read_exact(fp, name_len)
    if raw_name is None:
        return short("name")

    raw = _read_exact(fp, _INT.size)
    if raw is None:
        return short("dims count")
    (ndims,) = _INT.unpack(raw)
    if ndims < 0:
        raise MalformedRecordError(f"negative dims count {ndims}")
    raw = _read_exact(fp, 4 * ndims)
    if raw is None:
        return short("dims")
    dims = struct.unpack(f"<{ndims}i", raw)
    if any(d < 0 for d in dims):
        raise MalformedRecordError(f"negative dimension in {list(dims)}")

    nbytes = _HEAD.size + 2 * _INT.size + name_len + 4 * ndims
    return RecordHeader(kind, raw_name.decode("utf-8"), tuple(dims), nbytes)


def read_header(fp: IO[bytes]) -> RecordHeader:
    """
    Read a record header, treating a short read as a truncated file.

    Used by readers that seek into the payload themselves.
    """
    return _read_header(fp, strict=True)


class Buffer:
    """
    Owned host array of one storage kind.

    Parameters
    ----------
    dims : Sequence[int], optional
        Dimensions. Dimension 0 is the item dimension.
    kind : StorageKind or str or numpy dtype, optional
        Element kind. Defaults to "float".
    name : str, optional
        Record name, for example ``"conv1.weight"``.
    data : array-like, optional
        Initial values; must hold exactly ``prod(dims)`` elements. The values
        are copied. When omitted the buffer is zero-filled.

    Raises
    ------
    ShapeMismatchError
        If `data` does not hold ``prod(dims)`` elements.
    """

    def __init__(
        self,
        dims: Sequence[int] = (),
        kind: KindLike = FLOAT,
        name: str = "",
        *,
        data: Optional[np.ndarray] = None,
    ) -> None:
        self.kind: StorageKind = resolve_kind(kind)
        self.name: str = str(name)
        dims = tuple(int(d) for d in dims)
        if any(d < 0 for d in dims):
            raise ShapeMismatchError(dims, dims, where=f"Buffer {self.name!r}")

        if data is None:
            self._array = np.zeros(dims, dtype=self.kind.dtype)
        else:
            arr = np.asarray(data)
            if arr.size != _prod(dims):
                raise ShapeMismatchError(dims, arr.shape, where=f"Buffer {self.name!r}")
            self._array = np.array(arr, dtype=self.kind.dtype, order="C").reshape(dims)

    @classmethod
    def from_array(
        cls, array: np.ndarray, name: str = "", kind: Optional[KindLike] = None
    ) -> "Buffer":
        """Build a buffer holding a copy of `array` with its shape."""
        arr = np.asarray(array)
        return cls(arr.shape, arr.dtype if kind is None else kind, name, data=arr)

    # ---- shape ----
    @property
    def array(self) -> np.ndarray:
        """The underlying array, shaped `dims`."""
        return self._array

    @property
    def dims(self) -> Tuple[int, ...]:
        return tuple(self._array.shape)

    @property
    def numel(self) -> int:
        return int(self._array.size)

    @property
    def num_items(self) -> int:
        return self.dims[0] if self.dims else 0

    @property
    def item_size(self) -> int:
        """Number of elements in one item (all dims after the first)."""
        return _prod(self.dims[1:])

    @property
    def nbytes(self) -> int:
        return int(self._array.nbytes)

    def reshape(self, dims: Sequence[int]) -> None:
        """Change the dimensions in place; the element count must not change."""
        dims = tuple(int(d) for d in dims)
        if _prod(dims) != self.numel:
            raise ShapeMismatchError(self.dims, dims, where=f"Buffer {self.name!r}")
        self._array = self._array.reshape(dims)

    # ---- reading ----
    @classmethod
    def read(
        cls,
        fp: IO[bytes],
        kind: Optional[KindLike] = None,
        batch_size: int = 1,
    ) -> Optional["Buffer"]:
        """
        Read the next record of an open stream.

        Parameters
        ----------
        fp : IO[bytes]
            Binary stream positioned at a record boundary.
        kind : optional
            Requested element kind. Defaults to the stored kind.
        batch_size : int, optional
            Pad dimension 0 to a multiple of this value.

        Returns
        -------
        Buffer or None
            The buffer, or None when the stream ends before a full header.

        Raises
        ------
        KindConversionError
            If the stored kind cannot be converted to the requested kind.
        MalformedRecordError
            If the payload is truncated.
        """
        header = _read_header(fp, strict=False)
        if header is None:
            return None

        requested = header.kind if kind is None else resolve_kind(kind)
        if not can_convert(header.kind, requested):
            raise KindConversionError(
                header.kind.name, requested.name, where=header.name or None
            )

        numel = header.numel
        payload = _read_exact(fp, numel * header.kind.itemsize)
        if payload is None:
            raise MalformedRecordError(
                f"payload of {numel} elements is truncated", where=header.name or None
            )
        arr = np.frombuffer(payload, dtype=header.kind.dtype).reshape(header.dims)

        buf = cls(header.dims, requested, header.name, data=arr)
        if batch_size > 1 and buf.dims:
            buf._pad_items(int(batch_size))
        return buf

    @classmethod
    def load(
        cls,
        path: str,
        kind: Optional[KindLike] = None,
        batch_size: int = 1,
    ) -> "Buffer":
        """
        Read the first record of the file at `path`.

        Raises
        ------
        MalformedRecordError
            If the file holds no complete record.
        """
        with open_with_retry(path, "rb") as fp:
            buf = cls.read(fp, kind, batch_size)
        if buf is None:
            raise MalformedRecordError("file holds no buffer record", where=str(path))
        return buf

    def _pad_items(self, batch_size: int) -> None:
        n = self.num_items
        padded = -(-n // batch_size) * batch_size
        if padded == n:
            return
        arr = np.zeros((padded,) + self.dims[1:], dtype=self.kind.dtype)
        arr[:n] = self._array
        self._array = arr

    # ---- writing ----
    def write_header(self, fp: IO[bytes], dims: Optional[Sequence[int]] = None) -> int:
        """
        Write a record header and return its size in bytes.

        `dims` overrides the written dimensions, for streams whose payload is
        appended piecewise with `write_data`.
        """
        dims = self.dims if dims is None else tuple(int(d) for d in dims)
        name = self.name.encode("utf-8")
        parts = [
            _HEAD.pack(self.kind.tag, self.kind.itemsize),
            _INT.pack(len(name)),
            name,
            _INT.pack(len(dims)),
            struct.pack(f"<{len(dims)}i", *dims),
        ]
        raw = b"".join(parts)
        fp.write(raw)
        return len(raw)

    def write_data(self, fp: IO[bytes], max_count: Optional[int] = None) -> int:
        """Write at most `max_count` elements of the payload; return the count."""
        n = self.numel if max_count is None else max(0, min(self.numel, int(max_count)))
        flat = self._array.reshape(-1)[:n]
        fp.write(np.ascontiguousarray(flat, dtype=self.kind.dtype).tobytes())
        return n

    def write(self, fp: IO[bytes]) -> None:
        self.write_header(fp)
        self.write_data(fp)

    # ---- item operations ----
    def permute(self, order: Sequence[int]) -> None:
        """
        Reorder items along dimension 0 so that new item ``i`` is old item
        ``order[i]``.
        """
        order = np.asarray(order, dtype=np.int64)
        if order.shape != (self.num_items,):
            raise ShapeMismatchError((self.num_items,), order.shape, where=f"Buffer {self.name!r}")
        self._array = self._array[order]

    def value_range(self) -> Tuple[float, float]:
        if self.numel == 0:
            return (0.0, 0.0)
        return float(self._array.min()), float(self._array.max())

    def summary(self) -> str:
        lo, hi = self.value_range()
        return f"{self.name or '<unnamed>'} {self.kind.name} dims={list(self.dims)} range=[{lo:g}, {hi:g}]"

    def __repr__(self) -> str:
        return f"Buffer(name={self.name!r}, kind={self.kind.name}, dims={list(self.dims)})"
