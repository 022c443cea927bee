"""Task Store - the single owner of Task records.

Two interchangeable backends implement the same async interface:

- InMemoryTaskStore: process-local, bounded retention of terminal tasks
- SqlTaskStore: SQLModel tables through the Unit of Work

All writes go through ``create`` and ``update``; ``update`` applies a patch and
appends history in one step, serialized per store so history order matches the
visible state transitions. Reads return snapshots that later writes never touch.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from pixelninja.models.provider_request import ProviderRequest, parse_provider_request
from pixelninja.models.task import TERMINAL_STATUSES, Task, TaskPatch, TaskRecord, TaskStatus, utcnow
from pixelninja.services.exceptions import DuplicateKey, TaskNotFound

logger = structlog.get_logger()

LAST_ACK_BLOCK_KEY = "last_ack_block"


def _preference_key(token_id: int) -> str:
    return f"provider_pref_{token_id}"


class TaskMetrics(BaseModel):
    """Aggregate counters over the tasks a store has seen."""

    created: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    average_completion_seconds: float | None = None


class TaskStore(ABC):
    """Persist and query task state, stage, progress and history."""

    @abstractmethod
    async def create(self, task: Task) -> Task:
        """Store a new task.

        Raises:
            DuplicateKey: A task with this id, or for this (chain, contract, token), exists
        """

    @abstractmethod
    async def get(self, task_id: str) -> Task:
        """Snapshot of one task.

        Raises:
            TaskNotFound: No task with this id
        """

    @abstractmethod
    async def find_by_token(
        self,
        token_id: int,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> Task:
        """Snapshot of the task for a token.

        Raises:
            TaskNotFound: No task for this token
        """

    @abstractmethod
    async def update(self, task_id: str, patch: TaskPatch) -> Task:
        """Apply ``patch`` atomically and return the updated snapshot.

        Raises:
            TaskNotFound: No task with this id
            InvalidStateTransition: Patch violates the task lifecycle
        """

    @abstractmethod
    async def list(
        self,
        status: TaskStatus | None = None,
        token_id: int | None = None,
        limit: int = 50,
    ) -> list[Task]:
        """Newest-first snapshots matching the filter."""

    @abstractmethod
    async def get_last_ack_block(self) -> int | None: ...

    @abstractmethod
    async def set_last_ack_block(self, block: int) -> None: ...

    @abstractmethod
    async def get_provider_preference(self, token_id: int) -> ProviderRequest | None: ...

    @abstractmethod
    async def set_provider_preference(self, token_id: int, request: ProviderRequest) -> None: ...

    @abstractmethod
    async def metrics(self) -> TaskMetrics: ...

    async def ping(self) -> bool:
        """Return True when the backing store is reachable."""
        return True


class InMemoryTaskStore(TaskStore):
    """Task Store held in process memory.

    Keeps at most ``retention`` tasks; once over the bound, the oldest terminal
    tasks are evicted. Evicted tokens are still remembered for deduplication, up
    to ``token_memory`` keys (default ten times ``retention``); past that the
    oldest evicted keys are forgotten first.
    """

    def __init__(
        self,
        retention: int = 10_000,
        clock: Callable[[], datetime] = utcnow,
        token_memory: int | None = None,
    ):
        self._retention = retention
        self._token_memory = max(token_memory or retention * 10, retention)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tasks: OrderedDict[str, Task] = OrderedDict()
        self._seen_tokens: OrderedDict[tuple[int, str, int], str] = OrderedDict()
        self._state: dict[str, Any] = {}
        self._created = 0
        self._finished = {status: 0 for status in TERMINAL_STATUSES}
        self._completion_seconds_total = 0.0

    async def create(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._tasks:
                raise DuplicateKey(f"Task {task.id} already exists")
            if task.token_key in self._seen_tokens:
                raise DuplicateKey(f"Token {task.token_id} already has a task")

            self._tasks[task.id] = task.model_copy(deep=True)
            self._seen_tokens[task.token_key] = task.id
            self._created += 1
            self._evict()
            self._forget_tokens()
            return task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task.model_copy(deep=True)

    async def find_by_token(
        self,
        token_id: int,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> Task:
        for task in self._tasks.values():
            if task.token_id != token_id:
                continue
            if chain_id is not None and task.chain_id != chain_id:
                continue
            if contract_address is not None and task.contract_address.lower() != contract_address.lower():
                continue
            return task.model_copy(deep=True)
        raise TaskNotFound(f"token {token_id}")

    async def update(self, task_id: str, patch: TaskPatch) -> Task:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskNotFound(task_id)

            updated = current.apply(patch, self._clock())
            self._tasks[task_id] = updated

            if updated.is_terminal:
                self._finished[updated.status] += 1
                if updated.status == TaskStatus.COMPLETED:
                    self._completion_seconds_total += (
                        updated.updated_at - updated.created_at
                    ).total_seconds()
                self._evict()
            return updated.model_copy(deep=True)

    async def list(
        self,
        status: TaskStatus | None = None,
        token_id: int | None = None,
        limit: int = 50,
    ) -> list[Task]:
        matches = []
        for task in reversed(self._tasks.values()):
            if status is not None and task.status != status:
                continue
            if token_id is not None and task.token_id != token_id:
                continue
            matches.append(task.model_copy(deep=True))
            if len(matches) >= limit:
                break
        return matches

    async def get_last_ack_block(self) -> int | None:
        return self._state.get(LAST_ACK_BLOCK_KEY)

    async def set_last_ack_block(self, block: int) -> None:
        self._state[LAST_ACK_BLOCK_KEY] = block

    async def get_provider_preference(self, token_id: int) -> ProviderRequest | None:
        return self._state.get(_preference_key(token_id))

    async def set_provider_preference(self, token_id: int, request: ProviderRequest) -> None:
        self._state[_preference_key(token_id)] = request

    async def metrics(self) -> TaskMetrics:
        completed = self._finished[TaskStatus.COMPLETED]
        return TaskMetrics(
            created=self._created,
            active=sum(1 for task in self._tasks.values() if not task.is_terminal),
            completed=completed,
            failed=self._finished[TaskStatus.FAILED],
            timed_out=self._finished[TaskStatus.TIMEOUT],
            average_completion_seconds=(
                self._completion_seconds_total / completed if completed else None
            ),
        )

    def _evict(self) -> None:
        """Drop the oldest terminal tasks while over the retention bound."""
        overflow = len(self._tasks) - self._retention
        if overflow <= 0:
            return
        for task_id in [tid for tid, task in self._tasks.items() if task.is_terminal][:overflow]:
            del self._tasks[task_id]
            logger.debug("task_store.evicted", task_id=task_id)

    def _forget_tokens(self) -> None:
        """Drop the oldest dedup keys of evicted tasks while over ``token_memory``."""
        while len(self._seen_tokens) > self._token_memory:
            token_key, task_id = next(iter(self._seen_tokens.items()))
            # Stop at a key whose task is still retained
            if task_id in self._tasks:
                break
            del self._seen_tokens[token_key]


class SqlTaskStore(TaskStore):
    """Task Store backed by the ``tasks`` and ``system_state`` tables."""

    def __init__(self, uow_factory, clock: Callable[[], datetime] = utcnow):
        self._uow_factory = uow_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def create(self, task: Task) -> Task:
        try:
            async with await self._uow_factory() as uow:
                existing = await uow.tasks.get_by_token(
                    task.token_id, task.chain_id, task.contract_address
                )
                if existing is not None:
                    raise DuplicateKey(f"Token {task.token_id} already has task {existing.id}")
                await uow.tasks.add(TaskRecord.from_task(task))
        except IntegrityError as e:
            raise DuplicateKey(f"Task {task.id} conflicts with an existing row") from e
        return task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task:
        async with await self._uow_factory() as uow:
            record = await uow.tasks.get_by_id(task_id)
            if record is None:
                raise TaskNotFound(task_id)
            return record.to_task()

    async def find_by_token(
        self,
        token_id: int,
        chain_id: int | None = None,
        contract_address: str | None = None,
    ) -> Task:
        async with await self._uow_factory() as uow:
            record = await uow.tasks.get_by_token(token_id, chain_id, contract_address)
            if record is None:
                raise TaskNotFound(f"token {token_id}")
            return record.to_task()

    async def update(self, task_id: str, patch: TaskPatch) -> Task:
        # Serialized so concurrent read-modify-write cycles cannot interleave
        async with self._lock:
            async with await self._uow_factory() as uow:
                record = await uow.tasks.get_by_id(task_id)
                if record is None:
                    raise TaskNotFound(task_id)
                updated = record.to_task().apply(patch, self._clock())
                record.copy_from(updated)
                await uow.tasks.save(record)
        return updated

    async def list(
        self,
        status: TaskStatus | None = None,
        token_id: int | None = None,
        limit: int = 50,
    ) -> list[Task]:
        async with await self._uow_factory() as uow:
            records = await uow.tasks.list(status=status, token_id=token_id, limit=limit)
            return [record.to_task() for record in records]

    async def get_last_ack_block(self) -> int | None:
        async with await self._uow_factory() as uow:
            return await uow.system_state.get_state(LAST_ACK_BLOCK_KEY)

    async def set_last_ack_block(self, block: int) -> None:
        async with await self._uow_factory() as uow:
            await uow.system_state.set_state(LAST_ACK_BLOCK_KEY, block)

    async def get_provider_preference(self, token_id: int) -> ProviderRequest | None:
        async with await self._uow_factory() as uow:
            value = await uow.system_state.get_state(_preference_key(token_id))
        return parse_provider_request(value) if value is not None else None

    async def set_provider_preference(self, token_id: int, request: ProviderRequest) -> None:
        async with await self._uow_factory() as uow:
            await uow.system_state.set_state(
                _preference_key(token_id), request.model_dump(mode="json")
            )

    async def metrics(self) -> TaskMetrics:
        async with await self._uow_factory() as uow:
            counts = await uow.tasks.count_by_status()
            spans = await uow.tasks.get_completion_spans()

        durations = [(updated - created).total_seconds() for created, updated in spans]
        return TaskMetrics(
            created=sum(counts.values()),
            active=counts.get(TaskStatus.PENDING, 0) + counts.get(TaskStatus.IN_PROGRESS, 0),
            completed=counts.get(TaskStatus.COMPLETED, 0),
            failed=counts.get(TaskStatus.FAILED, 0),
            timed_out=counts.get(TaskStatus.TIMEOUT, 0),
            average_completion_seconds=sum(durations) / len(durations) if durations else None,
        )

    async def ping(self) -> bool:
        try:
            async with await self._uow_factory() as uow:
                await uow.session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("task_store.ping_failed", error=str(e), error_type=type(e).__name__)
            return False
        return True
