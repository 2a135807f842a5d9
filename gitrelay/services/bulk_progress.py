"""Progress counters and cancellation flags for bulk administrative actions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from gitrelay.models import BulkOperation
from gitrelay.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class BulkProgress:
    operation_id: str
    kind: str
    total: int
    completed: int
    succeeded: int
    failed: int
    cancelled: bool

    @property
    def done(self) -> bool:
        return self.cancelled or self.completed >= self.total


def _to_progress(op: BulkOperation) -> BulkProgress:
    return BulkProgress(
        operation_id=op.operation_id,
        kind=op.kind,
        total=op.total,
        completed=op.completed,
        succeeded=op.succeeded,
        failed=op.failed,
        cancelled=op.cancelled,
    )


async def start_operation(session: AsyncSession, kind: str, total: int) -> BulkProgress:
    op = BulkOperation(
        operation_id=uuid.uuid4().hex,
        kind=kind,
        total=total,
        completed=0,
        succeeded=0,
        failed=0,
        cancelled=False,
        created_at=format_datetime(now_utc()),
    )
    session.add(op)
    await session.commit()
    return _to_progress(op)


async def record_item(session: AsyncSession, operation_id: str, *, success: bool) -> None:
    """Atomically count one processed item."""
    values = {"completed": BulkOperation.completed + 1}
    if success:
        values["succeeded"] = BulkOperation.succeeded + 1
    else:
        values["failed"] = BulkOperation.failed + 1
    await session.execute(
        update(BulkOperation).where(BulkOperation.operation_id == operation_id).values(**values)
    )
    await session.commit()


async def request_cancel(session: AsyncSession, operation_id: str) -> bool:
    result = await session.execute(
        update(BulkOperation)
        .where(BulkOperation.operation_id == operation_id)
        .values(cancelled=True)
    )
    await session.commit()
    return bool(result.rowcount)


async def is_cancelled(session: AsyncSession, operation_id: str) -> bool:
    stmt = select(BulkOperation.cancelled).where(BulkOperation.operation_id == operation_id)
    return bool((await session.execute(stmt)).scalar_one_or_none())


async def get_progress(session: AsyncSession, operation_id: str) -> BulkProgress | None:
    op = await session.get(BulkOperation, operation_id, populate_existing=True)
    return _to_progress(op) if op is not None else None
