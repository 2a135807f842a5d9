"""Receiving side of the webhook contract: signature checks and chunk reassembly."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gitrelay.exceptions import ChunkIntegrityError
from gitrelay.services.signature_service import SIGNATURE_PREFIX, compute_signature

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def verify_signature(
    secret: str,
    timestamp: str,
    body: bytes | str,
    signature_header: str,
    *,
    tolerance_seconds: float | None = None,
    now: float | None = None,
) -> bool:
    """Recompute the HMAC over ``"{timestamp}.{body}"`` and compare in constant time.

    With ``tolerance_seconds`` the timestamp must also be that close to ``now``.
    """
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    if tolerance_seconds is not None:
        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        current = now if now is not None else time.time()
        if abs(current - sent_at) > tolerance_seconds:
            return False
    if isinstance(body, bytes):
        try:
            text = body.decode()
        except UnicodeDecodeError:
            return False
    else:
        text = body
    expected = compute_signature(secret, timestamp, text)
    return hmac.compare_digest(expected, signature_header[len(SIGNATURE_PREFIX) :])


@dataclass
class ChunkTransfer:
    """Slices of one chunked file, buffered by index until all have arrived."""

    transfer_id: str
    total: int
    expected_sha: str
    path: str = ""
    parts: dict[int, str] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    def add(self, index: int, data: str, total: int) -> None:
        if total != self.total:
            msg = f"Transfer {self.transfer_id}: total changed from {self.total} to {total}"
            raise ChunkIntegrityError(msg)
        if not 0 <= index < self.total:
            msg = f"Transfer {self.transfer_id}: index {index} outside 0..{self.total - 1}"
            raise ChunkIntegrityError(msg)
        self.parts[index] = data

    @property
    def received(self) -> int:
        return len(self.parts)

    @property
    def is_complete(self) -> bool:
        return all(i in self.parts for i in range(self.total))

    def assemble(self) -> bytes:
        """Concatenate in index order, decode and verify the SHA-256."""
        if not self.is_complete:
            missing = [i for i in range(self.total) if i not in self.parts]
            msg = f"Transfer {self.transfer_id}: missing chunks {missing}"
            raise ChunkIntegrityError(msg)
        encoded = "".join(self.parts[i] for i in range(self.total))
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = f"Transfer {self.transfer_id}: invalid base64 content"
            raise ChunkIntegrityError(msg) from exc
        actual = hashlib.sha256(data).hexdigest()
        if actual != self.expected_sha:
            msg = (
                f"Transfer {self.transfer_id}: hash mismatch "
                f"(expected {self.expected_sha}, got {actual})"
            )
            raise ChunkIntegrityError(msg)
        return data


class ChunkAssembler:
    """Tracks in-flight transfers by id.

    Transfers older than ``max_age_seconds`` are dropped when a new one
    starts, and at most ``max_transfers`` are buffered at once; the oldest
    goes first.
    """

    def __init__(
        self,
        *,
        max_transfers: int = 64,
        max_age_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_transfers = max_transfers
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._transfers: dict[str, ChunkTransfer] = {}

    def __len__(self) -> int:
        return len(self._transfers)

    def add_chunk(
        self,
        transfer_id: str,
        index: int,
        total: int,
        data: str,
        *,
        expected_sha: str,
        path: str = "",
    ) -> bytes | None:
        """Buffer a slice; return the verified content once the transfer is complete.

        A transfer that fails verification is discarded and the error raised.
        """
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            self._evict()
            transfer = ChunkTransfer(
                transfer_id=transfer_id,
                total=total,
                expected_sha=expected_sha,
                path=path,
                started_at=self._clock(),
            )
            self._transfers[transfer_id] = transfer
        try:
            transfer.add(index, data, total)
        except ChunkIntegrityError:
            self.discard(transfer_id)
            raise
        if not transfer.is_complete:
            return None
        del self._transfers[transfer_id]
        return transfer.assemble()

    def discard(self, transfer_id: str) -> None:
        self._transfers.pop(transfer_id, None)

    def _evict(self) -> None:
        cutoff = self._clock() - self.max_age_seconds
        for transfer in list(self._transfers.values()):
            if transfer.started_at <= cutoff:
                logger.warning(
                    "Dropping stale transfer %s (%d/%d chunks)",
                    transfer.transfer_id,
                    transfer.received,
                    transfer.total,
                )
                self.discard(transfer.transfer_id)
        while len(self._transfers) >= self.max_transfers:
            oldest = next(iter(self._transfers))
            logger.warning("Dropping transfer %s, too many in flight", oldest)
            self.discard(oldest)
