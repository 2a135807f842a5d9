"""Slicing of large binary payloads into sequential transfer chunks."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Chunk:
    """One slice of an encoded payload."""

    transfer_id: str
    index: int
    total: int
    data: str


def chunk_count(length: int, chunk_size: int) -> int:
    """Number of slices for a payload of ``length`` characters (at least one)."""
    if chunk_size <= 0:
        msg = f"chunk_size must be positive, got {chunk_size}"
        raise ValueError(msg)
    return max(1, math.ceil(length / chunk_size))


def split_into_chunks(
    content: str,
    chunk_size: int,
    *,
    transfer_id: str | None = None,
) -> list[Chunk]:
    """Split encoded content into ``chunk_size`` pieces sharing one transfer id.

    Empty content yields a single empty chunk.
    """
    total = chunk_count(len(content), chunk_size)
    tid = transfer_id or str(uuid.uuid4())
    return [
        Chunk(
            transfer_id=tid,
            index=i,
            total=total,
            data=content[i * chunk_size : (i + 1) * chunk_size],
        )
        for i in range(total)
    ]


def needs_chunking(is_binary: bool, size: int, threshold: int) -> bool:
    """Only binary files larger than the threshold are sent in slices."""
    return is_binary and size > threshold
