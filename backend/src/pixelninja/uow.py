"""Unit of Work for the SQL-backed Task Store.

Provides transaction management with automatic commit/rollback and access to repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelninja.repositories.system_state import SystemStateRepository
from pixelninja.repositories.task import TaskRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            record = await uow.tasks.get_by_id(task_id)
            record.copy_from(task.apply(patch))
            await uow.tasks.save(record)
            # Commits on successful exit, rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.tasks = TaskRepository(session)
        self.system_state = SystemStateRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        # Never swallow the exception
        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Create a factory function that produces UnitOfWork instances.

    Example:
        session_factory = setup_db_session(db_url)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.tasks.add(record)
    """

    async def _create_uow():
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
