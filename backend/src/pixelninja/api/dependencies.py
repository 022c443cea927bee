"""FastAPI dependencies for access to the pipeline components held in app state."""

from fastapi import HTTPException, Request, status

from pixelninja.core.config import Settings
from pixelninja.services.blockchain.chain import ChainAdapter
from pixelninja.services.image_generation.providers import ProviderRegistry
from pixelninja.services.ipfs.client import IpfsClient
from pixelninja.services.task_store import TaskStore


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


def get_task_store(request: Request) -> TaskStore:
    """Get the Task Store from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(store: TaskStore = Depends(get_task_store)):
        ...     task = await store.get(task_id)
    """
    store = getattr(request.app.state, "task_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Task store is not ready"
        )
    return store


def get_chain(request: Request) -> ChainAdapter | None:
    """Get the chain adapter from app state, or None when the chain is not wired."""
    return getattr(request.app.state, "chain", None)


def get_registry(request: Request) -> ProviderRegistry | None:
    """Get the image provider registry from app state, or None when not wired."""
    return getattr(request.app.state, "registry", None)


def get_ipfs(request: Request) -> IpfsClient | None:
    """Get the IPFS client from app state, or None when not wired."""
    return getattr(request.app.state, "ipfs", None)
