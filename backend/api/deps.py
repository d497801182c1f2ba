"""
StockLedger API Dependencies

Dependency injection for DB sessions and the replenishment scheduler.
"""

from collections.abc import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import AsyncSessionLocal
from replenishment.scheduler import ReplenishmentScheduler


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_scheduler(request: Request) -> ReplenishmentScheduler:
    """The process-wide scheduler created by the application lifespan."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Replenishment scheduler is not initialised",
        )
    return scheduler
