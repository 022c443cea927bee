"""Repository layer.

Provides data access abstractions for persisted entities.
"""

from pixelninja.repositories.system_state import SystemStateRepository
from pixelninja.repositories.task import TaskRepository

__all__ = [
    "SystemStateRepository",
    "TaskRepository",
]
