"""SystemState repository.

Provides data access methods for the SystemState key-value store.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelninja.models.system_state import SystemState


class SystemStateRepository:
    """Repository for SystemState key-value store.

    Values are wrapped as ``{"value": ...}`` so scalars (block numbers) fit the JSON column.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_state(self, key: str) -> Any | None:
        """Retrieve state value for a key.

        Args:
            key: State key (e.g., "last_ack_block")

        Returns:
            Stored value if found, None otherwise
        """
        result = await self.session.execute(select(SystemState).where(SystemState.key == key))  # type: ignore[arg-type]
        state = result.scalar_one_or_none()
        return state.state_value.get("value") if state else None

    async def set_state(self, key: str, value: Any) -> None:
        """Set state value for a key (insert or update).

        Uses ``session.merge`` on the primary key so the same code runs on
        PostgreSQL and SQLite.

        Args:
            key: State key (alphanumeric + underscores only)
            value: State value (must be JSON-serializable)
        """
        state = SystemState.model_validate(
            {"key": key, "state_value": {"value": value}, "updated_at": datetime.now(timezone.utc)}
        )
        await self.session.merge(state)
        await self.session.flush()

