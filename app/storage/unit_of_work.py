"""
Transactional unit of work over an AsyncSession.

    async with UnitOfWork(session) as uow:
        uow.add(group)
        uow.add_all(members)

Commits on normal exit, rolls back on any exception. Database errors surface as
PersistenceFailure so callers never see a half-written artifact.
"""

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.engine.errors import PersistenceFailure

logger = structlog.get_logger(__name__)


class UnitOfWork:
    def __init__(self, session: AsyncSession, label: str = "unit_of_work"):
        self.session = session
        self.label = label

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            try:
                await self.session.flush()
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.error("unit_of_work_commit_failed", label=self.label, error=str(e))
                raise PersistenceFailure(f"{self.label}: {e}") from e
            return False

        await self.session.rollback()
        logger.warning(
            "unit_of_work_rolled_back",
            label=self.label,
            error_type=exc_type.__name__,
        )
        if isinstance(exc, SQLAlchemyError):
            raise PersistenceFailure(f"{self.label}: {exc}") from exc
        return False

    def add(self, instance) -> None:
        self.session.add(instance)

    def add_all(self, instances) -> None:
        self.session.add_all(instances)

    async def flush(self) -> None:
        """Flush pending rows, e.g. to obtain generated ids mid-unit."""
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"{self.label}: {e}") from e

    async def delete(self, instance) -> None:
        await self.session.delete(instance)

    async def execute(self, statement):
        return await self.session.execute(statement)
