"""SystemState entity - key-value store for watcher cursor and token preferences."""

from datetime import datetime, timezone

from pydantic import field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class SystemState(SQLModel, table=True):
    """Small operational values that must survive restarts (e.g. last_ack_block)."""

    __tablename__ = "system_state"  # type: ignore[assignment]

    key: str = Field(primary_key=True, max_length=255)
    state_value: dict = Field(sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Keys are alphanumeric with underscores only."""
        if not v.replace("_", "").isalnum():
            raise ValueError("Key must be alphanumeric with underscores only")
        return v
