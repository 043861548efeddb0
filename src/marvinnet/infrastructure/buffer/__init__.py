"""
Host buffers and the binary record stream format.

Exports
-------
- Buffer, RecordHeader, read_header
- read_buffers, write_buffers, read_kind
- StorageKind, KINDS, resolve_kind
- open_with_retry, wait_until_absent
"""

from ._kinds import KINDS, FLOAT, StorageKind, resolve_kind, can_convert
from ._io import open_with_retry, wait_until_absent
from ._buffer import Buffer, RecordHeader, read_header
from ._stream import read_buffers, write_buffers, read_kind

__all__ = [
    Buffer.__name__,
    RecordHeader.__name__,
    StorageKind.__name__,
    "KINDS",
    "FLOAT",
    resolve_kind.__name__,
    can_convert.__name__,
    open_with_retry.__name__,
    wait_until_absent.__name__,
    read_header.__name__,
    read_buffers.__name__,
    write_buffers.__name__,
    read_kind.__name__,
]
