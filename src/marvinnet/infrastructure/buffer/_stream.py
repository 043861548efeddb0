"""
Multi-record buffer streams.

Weights files and snapshots hold one record per parameter, back to back.
These helpers read and write whole streams.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ...domain._errors import MalformedRecordError
from ._buffer import Buffer, read_header
from ._io import open_with_retry
from ._kinds import KindLike, StorageKind

logger = logging.getLogger(__name__)


def read_buffers(
    path: str,
    kind: Optional[KindLike] = None,
    max_count: Optional[int] = None,
) -> List[Buffer]:
    """
    Read up to `max_count` records from `path` (all records when None).

    Parameters
    ----------
    path : str
        Stream file.
    kind : optional
        Requested element kind for every record.
    max_count : int, optional
        Upper bound on the number of records read.

    Returns
    -------
    list[Buffer]
        Records in file order.
    """
    buffers: List[Buffer] = []
    with open_with_retry(path, "rb") as fp:
        while max_count is None or len(buffers) < max_count:
            buf = Buffer.read(fp, kind)
            if buf is None:
                break
            buffers.append(buf)
    logger.debug("read %d buffers from %s", len(buffers), path)
    return buffers


def write_buffers(path: str, buffers: Iterable[Buffer]) -> int:
    """Write `buffers` as one stream; return the number of records written."""
    count = 0
    with open_with_retry(path, "wb") as fp:
        for buf in buffers:
            buf.write(fp)
            count += 1
    return count


def read_kind(path: str) -> StorageKind:
    """Return the stored kind of the first record of `path`."""
    with open_with_retry(path, "rb") as fp:
        try:
            return read_header(fp).kind
        except MalformedRecordError as e:
            raise MalformedRecordError("no data kind", where=str(path)) from e
