"""Task entity - one mint generation job with lifecycle and history tracking."""

import re
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from pixelninja.models.provider_request import ProviderRequest, parse_provider_request
from pixelninja.services.exceptions import InvalidStateTransition

TASK_ID_PATTERN = re.compile(r"^task_\d+_[A-Za-z0-9]+$")


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})


class Stage(str, Enum):
    """Pipeline stage, in execution order."""

    ART = "ART"
    METADATA = "METADATA"
    IPFS = "IPFS"
    TOKENURI = "TOKENURI"
    DONE = "DONE"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

# Progress written before each attempt of a stage
STAGE_PROGRESS: dict[Stage, int] = {
    Stage.ART: 25,
    Stage.METADATA: 50,
    Stage.IPFS: 75,
    Stage.TOKENURI: 95,
    Stage.DONE: 100,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_task_id(now: datetime | None = None) -> str:
    """Build an id of the form task_<millis>_<random>."""
    millis = int((now or utcnow()).timestamp() * 1000)
    return f"task_{millis}_{secrets.token_hex(8)}"


def is_valid_task_id(task_id: str) -> bool:
    return bool(TASK_ID_PATTERN.match(task_id))


class HistoryEntry(BaseModel):
    """One immutable line of a task's audit trail."""

    model_config = ConfigDict(frozen=True)

    time: datetime
    stage: Optional[Stage] = None
    status: TaskStatus
    message: str
    progress: int = 0


class TaskArtifact(BaseModel):
    """Stage outputs, accumulated as the pipeline advances."""

    provider: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    image_cid: Optional[str] = None
    metadata_json: Optional[dict[str, Any]] = None
    metadata_cid: Optional[str] = None
    token_uri: Optional[str] = None
    tx_hash: Optional[str] = None


class TaskPatch(BaseModel):
    """Partial update applied atomically by the Task Store.

    ``artifact`` and ``attempts`` are merged key by key; every other field replaces.
    """

    status: Optional[TaskStatus] = None
    stage: Optional[Stage] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    message: Optional[str] = Field(default=None, max_length=500)
    artifact: Optional[dict[str, Any]] = None
    attempts: Optional[dict[str, int]] = None


class Task(BaseModel):
    """Task tracks one observed MintRequested from event to committed tokenURI."""

    id: str
    token_id: int = Field(ge=0)
    buyer: str = Field(max_length=42)
    breed: str = Field(max_length=32)
    chain_id: int
    contract_address: str = Field(max_length=42)
    provider_request: ProviderRequest
    status: TaskStatus = TaskStatus.PENDING
    stage: Optional[Stage] = None
    progress: int = Field(default=0, ge=0, le=100)
    message: str = "Task created"
    artifact: TaskArtifact = Field(default_factory=TaskArtifact)
    attempts: dict[str, int] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    block_number: Optional[int] = None
    event_tx_hash: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(
        cls,
        *,
        token_id: int,
        buyer: str,
        breed: str,
        chain_id: int,
        contract_address: str,
        provider_request: ProviderRequest,
        block_number: int | None = None,
        event_tx_hash: str | None = None,
        now: datetime | None = None,
    ) -> "Task":
        """Create a PENDING task with its first history entry."""
        now = now or utcnow()
        return cls(
            id=generate_task_id(now),
            token_id=token_id,
            buyer=buyer,
            breed=breed,
            chain_id=chain_id,
            contract_address=contract_address,
            provider_request=provider_request,
            block_number=block_number,
            event_tx_hash=event_tx_hash,
            history=[HistoryEntry(time=now, status=TaskStatus.PENDING, message="Task created")],
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def token_key(self) -> tuple[int, str, int]:
        """Deduplication key: (chain_id, contract address, token id)."""
        return (self.chain_id, self.contract_address.lower(), self.token_id)

    def apply(self, patch: TaskPatch, now: datetime | None = None) -> "Task":
        """Return a copy of this task with ``patch`` applied and one history entry appended.

        Args:
            patch: Fields to change
            now: Timestamp of the change (default: current UTC time)

        Returns:
            New Task instance; ``self`` is left untouched

        Raises:
            InvalidStateTransition: If the patch would modify a terminal task, regress
                the stage or progress, or break the status lifecycle
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Task {self.id} is {self.status.value}; terminal tasks are immutable."
            )

        status = patch.status or self.status
        stage = patch.stage or self.stage
        progress = self.progress if patch.progress is None else patch.progress

        if self.status == TaskStatus.IN_PROGRESS and status == TaskStatus.PENDING:
            raise InvalidStateTransition(f"Cannot move task {self.id} back to PENDING.")
        if self.status == TaskStatus.PENDING and status in TERMINAL_STATUSES:
            raise InvalidStateTransition(
                f"Task {self.id} cannot become {status.value} without running."
            )
        if status == TaskStatus.PENDING and stage is not None:
            raise InvalidStateTransition("A PENDING task has no stage.")
        if status == TaskStatus.COMPLETED and stage != Stage.DONE:
            raise InvalidStateTransition("A COMPLETED task must be at stage DONE.")

        if (
            self.stage is not None
            and stage is not None
            and STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage)
        ):
            raise InvalidStateTransition(
                f"Cannot move task {self.id} from {self.stage.value} back to {stage.value}."
            )
        if progress < self.progress:
            raise InvalidStateTransition(
                f"Progress of task {self.id} cannot drop from {self.progress} to {progress}."
            )

        artifact = self.artifact.model_dump()
        for key, value in (patch.artifact or {}).items():
            if key not in artifact:
                raise ValueError(f"Unknown artifact field: {key}")
            if value is None and artifact[key] is not None:
                raise InvalidStateTransition(f"Artifact field {key} cannot be cleared.")
            artifact[key] = value

        if status == TaskStatus.TIMEOUT and artifact["token_uri"] is not None:
            raise InvalidStateTransition(
                "A task with a tokenUri must finish its commit or fail; it cannot time out."
            )

        attempts = dict(self.attempts)
        attempts.update(patch.attempts or {})

        message = self.message if patch.message is None else patch.message

        # History times are strictly increasing even if the clock is coarse
        time = now or utcnow()
        if self.history and time <= self.history[-1].time:
            time = self.history[-1].time + timedelta(microseconds=1)

        entry = HistoryEntry(
            time=time, stage=stage, status=status, message=message, progress=progress
        )
        return self.model_copy(
            update={
                "status": status,
                "stage": stage,
                "progress": progress,
                "message": message,
                "artifact": TaskArtifact(**artifact),
                "attempts": attempts,
                "history": [*self.history, entry],
                "updated_at": time,
            }
        )


class TaskRecord(SQLModel, table=True):
    """Database row for a Task (JSON columns for nested fields)."""

    __tablename__ = "tasks"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", "token_id", name="uq_tasks_token"),
    )

    id: str = SQLField(primary_key=True, max_length=64)
    chain_id: int
    contract_address: str = SQLField(max_length=42)
    token_id: int = SQLField(index=True)
    buyer: str = SQLField(max_length=42)
    breed: str = SQLField(max_length=32)
    provider_request: dict = SQLField(sa_column=Column(JSON, nullable=False))
    status: TaskStatus = SQLField(default=TaskStatus.PENDING, index=True)
    stage: Optional[Stage] = SQLField(default=None)
    progress: int = SQLField(default=0, ge=0, le=100)
    message: str = SQLField(default="", max_length=500)
    artifact: dict = SQLField(sa_column=Column(JSON, nullable=False))
    attempts: dict = SQLField(sa_column=Column(JSON, nullable=False))
    history: list = SQLField(sa_column=Column(JSON, nullable=False))
    block_number: Optional[int] = SQLField(default=None)
    event_tx_hash: Optional[str] = SQLField(default=None, max_length=66)
    created_at: datetime = SQLField(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = SQLField(sa_column=Column(DateTime(timezone=True), nullable=False))

    @classmethod
    def from_task(cls, task: Task) -> "TaskRecord":
        record = cls(id=task.id)
        record.copy_from(task)
        return record

    def copy_from(self, task: Task) -> None:
        """Overwrite every column with the task's current values."""
        self.chain_id = task.chain_id
        self.contract_address = task.contract_address
        self.token_id = task.token_id
        self.buyer = task.buyer
        self.breed = task.breed
        self.provider_request = task.provider_request.model_dump(mode="json")
        self.status = task.status
        self.stage = task.stage
        self.progress = task.progress
        self.message = task.message
        self.artifact = task.artifact.model_dump(mode="json")
        self.attempts = dict(task.attempts)
        self.history = [entry.model_dump(mode="json") for entry in task.history]
        self.block_number = task.block_number
        self.event_tx_hash = task.event_tx_hash
        self.created_at = task.created_at
        self.updated_at = task.updated_at

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            token_id=self.token_id,
            buyer=self.buyer,
            breed=self.breed,
            chain_id=self.chain_id,
            contract_address=self.contract_address,
            provider_request=parse_provider_request(self.provider_request),
            status=self.status,
            stage=self.stage,
            progress=self.progress,
            message=self.message,
            artifact=TaskArtifact(**self.artifact),
            attempts=self.attempts,
            history=[HistoryEntry(**_with_utc_time(entry)) for entry in self.history],
            block_number=self.block_number,
            event_tx_hash=self.event_tx_hash,
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _with_utc_time(entry: dict) -> dict:
    time = entry["time"]
    if isinstance(time, str):
        time = datetime.fromisoformat(time)
    return {**entry, "time": _as_utc(time)}
