"""Signed webhook dispatch of file changes, with slicing for large binaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from gitrelay.schemas.notification import (
    ChunkInfo,
    FileNotificationPayload,
    FilePayload,
    RepositoryInfo,
)
from gitrelay.services.change_detector import ChangeType, FileChange
from gitrelay.services.chunking import needs_chunking, split_into_chunks
from gitrelay.services.datetime_service import format_iso, now_utc
from gitrelay.services.signature_service import sign_payload

if TYPE_CHECKING:
    from pydantic import BaseModel

    from gitrelay.config import Settings

logger = logging.getLogger(__name__)

ENDPOINTS: dict[ChangeType, str] = {
    ChangeType.CREATED: "create",
    ChangeType.UPDATED: "update",
    ChangeType.DELETED: "delete",
}


@dataclass(frozen=True)
class WebhookTarget:
    """Where and how to deliver notifications for one app."""

    app_id: str
    base_url: str
    secret: str

    def url(self, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/{endpoint}"


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one logical notification.

    Every failure is retryable: the job fails as a whole and is rescheduled.
    """

    success: bool
    status_code: int | None = None
    error: str | None = None
    chunks_sent: int = 0


def build_file_payload(change: FileChange) -> FilePayload:
    if change.type is ChangeType.DELETED:
        return FilePayload(path=change.path, sha=change.previous_sha or "")
    scanned = change.file
    if scanned is None:
        msg = f"{change.type} change for {change.path} has no scanned file"
        raise ValueError(msg)
    return FilePayload(
        path=scanned.path,
        sha=scanned.sha,
        size=scanned.size,
        content=scanned.content,
        content_encoding="base64" if scanned.is_binary else None,
    )


def build_notification_payload(
    repository: RepositoryInfo,
    change: FileChange,
    commit_sha: str,
) -> FileNotificationPayload:
    """Build the body for a created, updated or deleted file."""
    return FileNotificationPayload(
        repository=repository,
        file=build_file_payload(change),
        previous_sha=change.previous_sha if change.type is ChangeType.UPDATED else None,
        commit_sha=commit_sha,
        timestamp=format_iso(now_utc()),
    )


class Notifier:
    """Posts signed notifications through a shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        chunk_threshold_bytes: int = 1_048_576,
        chunk_size_bytes: int = 524_288,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.client = client
        self.chunk_threshold_bytes = chunk_threshold_bytes
        self.chunk_size_bytes = chunk_size_bytes
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> Notifier:
        return cls(
            client,
            chunk_threshold_bytes=settings.binary_chunk_threshold_bytes,
            chunk_size_bytes=settings.binary_chunk_size_bytes,
            timeout_seconds=settings.notification_timeout_seconds,
        )

    async def post(
        self,
        target: WebhookTarget,
        endpoint: str,
        payload: BaseModel,
        *,
        timeout: float | None = None,
    ) -> NotificationResult:
        """Sign and send one request. Never raises for HTTP or network failures."""
        signed = sign_payload(
            target.app_id, target.secret, payload.model_dump(mode="json", exclude_none=True)
        )
        url = target.url(endpoint)
        try:
            response = await self.client.post(
                url,
                content=signed.body,
                headers=signed.headers,
                timeout=timeout if timeout is not None else self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("Webhook %s failed: %s", url, exc)
            return NotificationResult(success=False, error=f"Network error: {exc}")

        if not response.is_success:
            logger.warning("Webhook %s returned HTTP %d", url, response.status_code)
            return NotificationResult(
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return NotificationResult(success=True, status_code=response.status_code, chunks_sent=1)

    async def send_file_with_chunking(
        self,
        target: WebhookTarget,
        endpoint: str,
        payload: FileNotificationPayload,
        *,
        is_binary: bool,
    ) -> NotificationResult:
        """Send a file notification, slicing large binary content.

        Slices go out sequentially; the first failure aborts the transfer.
        A retry starts over from slice 0.
        """
        file = payload.file
        if file.content is None or not needs_chunking(
            is_binary, file.size or 0, self.chunk_threshold_bytes
        ):
            return await self.post(target, endpoint, payload)

        chunks = split_into_chunks(file.content, self.chunk_size_bytes)
        logger.info(
            "Sending %s in %d chunks (transfer %s)", file.path, len(chunks), chunks[0].transfer_id
        )
        status_code: int | None = None
        for chunk in chunks:
            piece = payload.model_copy(
                update={
                    "file": file.model_copy(
                        update={
                            "content": chunk.data,
                            "chunk": ChunkInfo(
                                id=chunk.transfer_id, index=chunk.index, total=chunk.total
                            ),
                        }
                    )
                }
            )
            result = await self.post(target, endpoint, piece)
            if not result.success:
                return NotificationResult(
                    success=False,
                    status_code=result.status_code,
                    error=f"Chunk {chunk.index + 1}/{chunk.total} failed: {result.error}",
                    chunks_sent=chunk.index,
                )
            status_code = result.status_code
        return NotificationResult(success=True, status_code=status_code, chunks_sent=len(chunks))

    async def notify_change(
        self,
        target: WebhookTarget,
        repository: RepositoryInfo,
        change: FileChange,
        commit_sha: str,
    ) -> NotificationResult:
        """Deliver one file change to the app's create, update or delete endpoint."""
        payload = build_notification_payload(repository, change, commit_sha)
        is_binary = change.file is not None and change.file.is_binary
        return await self.send_file_with_chunking(
            target, ENDPOINTS[change.type], payload, is_binary=is_binary
        )
