"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware

from pixelninja.api.routes import tasks, tokens
from pixelninja.core.config import Settings, configure_logging
from pixelninja.services.pipeline.runtime import build_runtime

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1.0,
) -> list[asyncio.Task]:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Zero-argument coroutine function running the worker loop
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        restart_delay: Fixed delay between restarts in seconds

    Returns:
        Handles of every incarnation of the worker; the last one is current
    """
    handles: list[asyncio.Task] = []

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Worker loops only return once shutdown is requested
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart_worker():
            await asyncio.sleep(restart_delay)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            spawn()

        handles.append(asyncio.create_task(restart_worker()))

    def spawn():
        task = asyncio.create_task(coro_func(), name=worker_name)
        task.add_done_callback(on_worker_done)
        handles.append(task)

    spawn()
    return handles


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, build the pipeline (fails fast on bad config or a
      chain id mismatch), resume unfinished tasks, start the event watcher
    - Shutdown: stop the watcher, then drain in-flight tasks
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    runtime = await build_runtime(settings)

    # Store in app.state for access in routes
    app.state.runtime = runtime
    app.state.task_store = runtime.store
    app.state.chain = runtime.chain
    app.state.registry = runtime.registry
    app.state.ipfs = runtime.ipfs

    await runtime.orchestrator.resume_unfinished()

    shutdown_event = asyncio.Event()
    watcher_handles = create_resilient_worker(
        lambda: runtime.watcher.run(stop=shutdown_event), "event_watcher", shutdown_event
    )

    logger.info(
        "application.startup",
        chain_id=settings.chain_id,
        contract_address=runtime.chain.contract_address,
        store=type(runtime.store).__name__,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    for handle in watcher_handles:
        handle.cancel()
    await asyncio.gather(*watcher_handles, return_exceptions=True)

    await runtime.orchestrator.drain()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Pixel Ninja Mint Pipeline",
        description="Turns MintRequested events into generated, pinned and committed NFTs",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks.router)
    app.include_router(tokens.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with Task Store connectivity test.

        Returns:
            200: {"status": "healthy"} if the store answers
            503: {"status": "unhealthy"} otherwise
        """
        store = getattr(app.state, "task_store", None)
        if store is None or not await store.ping():
            logger.error("health_check.failed", store_ready=store is not None)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unhealthy"}

        logger.debug("health_check.success")
        return {"status": "healthy"}

    return app


# Create app instance for uvicorn
app = create_app()
