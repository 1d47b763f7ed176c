from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from mailbill.db.async_session import get_async_db as get_db_async  # re-export for routes

AsyncSessionT = AsyncSession

__all__ = [
    "get_db_async",
    "AsyncSessionT",
]
