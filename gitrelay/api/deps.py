"""Shared API dependencies: DB session and runtime."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from gitrelay.runtime import RelayRuntime


def get_runtime(request: Request) -> RelayRuntime:
    """Get the sync engine runtime from app state."""
    runtime: RelayRuntime = request.app.state.runtime
    return runtime


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.runtime.session_factory
    async with session_factory() as session:
        yield session
