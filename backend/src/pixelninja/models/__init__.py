"""Domain models and SQLModel tables.

Table models are imported here so they register with SQLModel metadata before
``create_all`` runs.
"""

from pixelninja.models.provider_request import (
    FALLBACK_ORDER,
    DallERequest,
    HuggingFaceRequest,
    ProviderName,
    ProviderRequest,
    StabilityRequest,
)
from pixelninja.models.system_state import SystemState
from pixelninja.models.task import (
    HistoryEntry,
    Stage,
    Task,
    TaskArtifact,
    TaskPatch,
    TaskRecord,
    TaskStatus,
)

__all__ = [
    "FALLBACK_ORDER",
    "DallERequest",
    "HistoryEntry",
    "HuggingFaceRequest",
    "ProviderName",
    "ProviderRequest",
    "StabilityRequest",
    "Stage",
    "SystemState",
    "Task",
    "TaskArtifact",
    "TaskPatch",
    "TaskRecord",
    "TaskStatus",
]
