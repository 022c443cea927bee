"""Task repository.

Provides data access methods for TaskRecord rows.
"""

import builtins

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelninja.models.task import TaskRecord, TaskStatus


class TaskRepository:
    """Repository for TaskRecord entities.

    Rows are converted to and from the ``Task`` domain model by the Task Store;
    the repository only deals with records.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, task_id: str) -> TaskRecord | None:
        """Retrieve task row by id.

        Args:
            task_id: Task id (task_<millis>_<random>)

        Returns:
            TaskRecord if found, None otherwise
        """
        result = await self.session.execute(select(TaskRecord).where(TaskRecord.id == task_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_token(
        self,
        token_id: int,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> TaskRecord | None:
        """Retrieve the task for an on-chain token.

        Args:
            token_id: On-chain token ID
            chain_id: Narrow to one chain (optional)
            contract_address: Narrow to one contract, case-insensitive (optional)

        Returns:
            Oldest matching TaskRecord, None if no task exists for the token
        """
        query = select(TaskRecord).where(TaskRecord.token_id == token_id)  # type: ignore[arg-type]
        if chain_id is not None:
            query = query.where(TaskRecord.chain_id == chain_id)  # type: ignore[arg-type]
        if contract_address is not None:
            query = query.where(
                func.lower(TaskRecord.contract_address) == contract_address.lower()  # type: ignore[arg-type]
            )
        result = await self.session.execute(
            query.order_by(TaskRecord.created_at.asc()).limit(1)  # type: ignore[attr-defined]
        )
        return result.scalar_one_or_none()

    async def add(self, record: TaskRecord) -> TaskRecord:
        """Persist new task row.

        Raises:
            sqlalchemy.exc.IntegrityError: Id or (chain, contract, token) already exists
        """
        self.session.add(record)
        await self.session.flush()
        return record

    async def save(self, record: TaskRecord) -> None:
        """Flush changes made to a loaded row."""
        self.session.add(record)
        await self.session.flush()

    async def list(
        self,
        status: TaskStatus | None = None,
        token_id: int | None = None,
        limit: int = 50,
    ) -> list[TaskRecord]:
        """Retrieve tasks, newest first.

        Args:
            status: Only tasks in this status (optional)
            token_id: Only tasks for this token (optional)
            limit: Maximum number of rows

        Returns:
            List of task rows ordered by created_at DESC
        """
        query = select(TaskRecord)
        if status is not None:
            query = query.where(TaskRecord.status == status)  # type: ignore[arg-type]
        if token_id is not None:
            query = query.where(TaskRecord.token_id == token_id)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(TaskRecord.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[TaskStatus, int]:
        """Count tasks grouped by status.

        Returns:
            Mapping of status to row count (statuses with no rows are omitted)
        """
        result = await self.session.execute(
            select(TaskRecord.status, func.count()).group_by(TaskRecord.status)  # type: ignore[arg-type]
        )
        return {TaskStatus(status): count for status, count in result.all()}

    async def get_completion_spans(self) -> builtins.list[tuple]:
        """Return (created_at, updated_at) of every COMPLETED task."""
        result = await self.session.execute(
            select(TaskRecord.created_at, TaskRecord.updated_at).where(  # type: ignore[call-overload]
                TaskRecord.status == TaskStatus.COMPLETED  # type: ignore[arg-type]
            )
        )
        return list(result.all())
