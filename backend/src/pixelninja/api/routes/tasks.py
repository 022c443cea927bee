"""Task status API endpoints.

Read-only projection of the Task Store for clients:
- GET /api/task-status?id=... - Status of one task (polled by the mint page)
- GET /api/tasks - Newest-first task listing with optional filters
- GET /api/task-metrics - Aggregate task counters

Nothing here writes task state.
"""

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from pixelninja.api.dependencies import get_task_store
from pixelninja.models.task import TASK_ID_PATTERN, Stage, Task, TaskStatus, is_valid_task_id
from pixelninja.services.exceptions import TaskNotFound
from pixelninja.services.task_store import TaskStore

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["tasks"])

NOT_FOUND_MESSAGE = "Task not found or expired"


# Response Models


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryEntryResponse(_CamelModel):
    time: datetime
    stage: Optional[Stage] = None
    status: TaskStatus
    message: str
    progress: int


class TaskStatusResponse(_CamelModel):
    """Client view of a task."""

    id: str
    token_id: int
    status: TaskStatus
    stage: Optional[Stage] = None
    progress: int
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    token_uri: Optional[str] = None
    provider: Optional[str] = None
    history: Optional[list[HistoryEntryResponse]] = None

    @classmethod
    def from_task(cls, task: Task, minimal: bool = False, history: bool = False) -> "TaskStatusResponse":
        return cls(
            id=task.id,
            token_id=task.token_id,
            status=task.status,
            stage=task.stage,
            progress=task.progress,
            message=None if minimal else task.message,
            created_at=task.created_at,
            updated_at=task.updated_at,
            token_uri=task.artifact.token_uri,
            provider=task.artifact.provider,
            history=(
                [HistoryEntryResponse.model_validate(entry.model_dump()) for entry in task.history]
                if history and not minimal
                else None
            ),
        )

    def to_json(self, minimal: bool = False) -> dict:
        exclude = set()
        if self.history is None:
            exclude.add("history")
        if minimal:
            exclude.add("message")
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


class TaskListResponse(_CamelModel):
    tasks: list[TaskStatusResponse]
    count: int


class TaskMetricsResponse(_CamelModel):
    created: int
    active: int
    completed: int
    failed: int
    timed_out: int
    average_completion_seconds: Optional[float] = None


# Endpoints


@router.get("/task-status")
async def get_task_status(
    id: str = Query(..., description=f"Task id matching {TASK_ID_PATTERN.pattern}"),
    minimal: bool = Query(False, description="Omit message and history"),
    history: bool = Query(False, description="Include the stage history"),
    store: TaskStore = Depends(get_task_store),
):
    """Get the status of one generation task.

    Returns:
        200 with the task view for every known task, whatever its status

    Raises:
        HTTPException: 400 if ``id`` is not a task id

    An unknown or evicted task answers 404 with ``status=UNKNOWN``.
    """
    if not is_valid_task_id(id):
        logger.info("task_status.invalid_id", task_id=id[:80])
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid task id format")

    try:
        task = await store.get(id)
    except TaskNotFound:
        logger.debug("task_status.not_found", task_id=id)
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"id": id, "status": "UNKNOWN", "message": NOT_FOUND_MESSAGE},
        )

    return TaskStatusResponse.from_task(task, minimal=minimal, history=history).to_json(minimal)


@router.get("/tasks", response_model=TaskListResponse, response_model_exclude_none=True)
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    token_id: Optional[int] = Query(None, alias="tokenId", ge=0),
    limit: int = Query(50, ge=1, le=200),
    store: TaskStore = Depends(get_task_store),
) -> TaskListResponse:
    """List tasks newest first, optionally filtered by status and token."""
    tasks = await store.list(status=status_filter, token_id=token_id, limit=limit)
    return TaskListResponse(
        tasks=[TaskStatusResponse.from_task(task) for task in tasks],
        count=len(tasks),
    )


@router.get("/task-metrics", response_model=TaskMetricsResponse)
async def get_task_metrics(store: TaskStore = Depends(get_task_store)) -> TaskMetricsResponse:
    """Aggregate counters over every task the store has seen."""
    metrics = await store.metrics()
    return TaskMetricsResponse.model_validate(metrics.model_dump())
