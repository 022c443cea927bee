"""Pipeline orchestrator: sequences ART → METADATA → IPFS → TOKENURI for each task.

Each task runs as its own asyncio task; a semaphore caps how many run at once.
The whole-task deadline covers everything up to the commit. Once a tokenUri
exists the commit always runs to an outcome, so an on-chain write is never
abandoned halfway.
"""

import asyncio
from datetime import datetime
from typing import Callable

import structlog

from pixelninja.models.task import STAGE_PROGRESS, Stage, Task, TaskPatch, TaskStatus, utcnow
from pixelninja.services.blockchain.chain import ChainAdapter
from pixelninja.services.exceptions import InvalidStateTransition, StageFailed
from pixelninja.services.ipfs.client import IpfsClient
from pixelninja.services.metadata import build_metadata
from pixelninja.services.pipeline.executor import STAGE_MESSAGES, StageExecutor
from pixelninja.services.task_store import TaskStore

logger = structlog.get_logger()

_UNEXPECTED_MESSAGE = "Unexpected error while generating this NFT"


class PipelineOrchestrator:
    """Owns task execution: the only writer of task state after creation."""

    def __init__(
        self,
        store: TaskStore,
        executor: StageExecutor,
        ipfs: IpfsClient,
        chain: ChainAdapter,
        deadline_seconds: float = 120.0,
        max_concurrent: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.executor = executor
        self.ipfs = ipfs
        self.chain = chain
        self.deadline_seconds = deadline_seconds
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._running: dict[str, asyncio.Task] = {}

    @property
    def active_count(self) -> int:
        return len(self._running)

    def start(self, task_id: str) -> asyncio.Task:
        """Schedule a task in the background; a task already running is not started twice."""
        running = self._running.get(task_id)
        if running is not None and not running.done():
            return running

        job = asyncio.create_task(self.run(task_id), name=f"pipeline-{task_id}")
        self._running[task_id] = job
        job.add_done_callback(lambda _: self._running.pop(task_id, None))
        return job

    async def run(self, task_id: str) -> Task:
        """Run a task to a terminal state, waiting for a concurrency slot first."""
        async with self._semaphore:
            return await self._execute(task_id)

    async def resume_unfinished(self, limit: int = 200) -> list[str]:
        """Restart tasks a previous process left PENDING or IN_PROGRESS.

        Tasks past their deadline end as TIMEOUT, or go straight to the commit
        when their tokenUri was already uploaded.
        """
        resumed = []
        for status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            for task in await self.store.list(status=status, limit=limit):
                self.start(task.id)
                resumed.append(task.id)
        if resumed:
            logger.info("pipeline.tasks_resumed", count=len(resumed))
        return resumed

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for running tasks, cancelling whatever is still going after ``timeout``."""
        jobs = list(self._running.values())
        if not jobs:
            return
        done, pending = await asyncio.wait(jobs, timeout=timeout)
        for job in pending:
            job.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("pipeline.drain_cancelled", cancelled=len(pending))

    async def _execute(self, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if task.is_terminal:
            return task

        log = logger.bind(task_id=task_id, token_id=task.token_id)
        log.info("pipeline.task_started", breed=task.breed, provider=task.provider_request.provider)

        # Every terminal state is reached through IN_PROGRESS
        if task.status == TaskStatus.PENDING:
            task = await self.store.update(
                task_id,
                TaskPatch(
                    status=TaskStatus.IN_PROGRESS,
                    stage=Stage.ART,
                    progress=STAGE_PROGRESS[Stage.ART],
                    message=STAGE_MESSAGES[Stage.ART],
                ),
            )

        remaining = self.deadline_seconds - (self.clock() - task.created_at).total_seconds()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            await asyncio.wait_for(self._produce(task_id), timeout=remaining)
        except asyncio.TimeoutError:
            task = await self.store.get(task_id)
            if task.artifact.token_uri is None:
                log.warning("pipeline.task_timeout", stage=task.stage, deadline=self.deadline_seconds)
                return await self._finish(
                    task_id,
                    TaskPatch(
                        status=TaskStatus.TIMEOUT,
                        message=f"Generation timed out after {self.deadline_seconds:g} seconds",
                    ),
                )
            log.info("pipeline.deadline_passed_after_upload", token_uri=task.artifact.token_uri)
        except StageFailed as e:
            log.warning("pipeline.stage_failed", stage=e.stage, error=str(e.cause))
            return await self._finish(task_id, TaskPatch(status=TaskStatus.FAILED, message=e.user_message))
        except Exception as e:
            log.exception("pipeline.unexpected_error", error=str(e), error_type=type(e).__name__)
            return await self._finish(task_id, TaskPatch(status=TaskStatus.FAILED, message=_UNEXPECTED_MESSAGE))

        try:
            return await self._commit(task_id)
        except StageFailed as e:
            log.error("pipeline.commit_failed", error=str(e.cause))
            return await self._finish(task_id, TaskPatch(status=TaskStatus.FAILED, message=e.user_message))
        except Exception as e:
            log.exception("pipeline.unexpected_error", error=str(e), error_type=type(e).__name__)
            return await self._finish(task_id, TaskPatch(status=TaskStatus.FAILED, message=_UNEXPECTED_MESSAGE))

    async def _produce(self, task_id: str) -> None:
        """ART, METADATA and IPFS; ends with ``artifact.token_uri`` set."""
        task = await self.store.get(task_id)
        upload_timeout = self.executor.timeouts[Stage.IPFS]

        if task.artifact.image_cid is None:
            art = await self.executor.run_art(task_id, task.breed, task.provider_request)
            await self.store.update(
                task_id,
                TaskPatch(
                    artifact={"provider": art.provider.value, "model": art.model, "prompt": art.prompt},
                    message=f"Artwork generated with {art.provider.value}",
                ),
            )

            # The image is pinned first so the metadata can reference its CID
            image_cid = await self.executor.run(
                task_id,
                Stage.METADATA,
                lambda: self.ipfs.upload_bytes(
                    art.image, "image/png", name=f"pixel-ninja-{task.token_id}.png"
                ),
                message="Uploading artwork",
                timeout=upload_timeout,
            )
            task = await self.store.update(
                task_id, TaskPatch(artifact={"image_cid": image_cid}, message="Artwork uploaded")
            )

        if task.artifact.metadata_json is None:
            image_uri = self.ipfs.to_uri(task.artifact.image_cid)  # type: ignore[arg-type]

            async def build() -> dict:
                return build_metadata(task.token_id, task.breed, image_uri)

            metadata = await self.executor.run(task_id, Stage.METADATA, build)
            task = await self.store.update(
                task_id, TaskPatch(artifact={"metadata_json": metadata}, message="Metadata ready")
            )

        if task.artifact.token_uri is None:
            metadata_cid = await self.executor.run(
                task_id,
                Stage.IPFS,
                lambda: self.ipfs.upload_json(
                    task.artifact.metadata_json,  # type: ignore[arg-type]
                    name=f"pixel-ninja-{task.token_id}.json",
                ),
            )
            await self.store.update(
                task_id,
                TaskPatch(
                    artifact={"metadata_cid": metadata_cid, "token_uri": self.ipfs.to_uri(metadata_cid)},
                    message="Metadata pinned to IPFS",
                ),
            )

    async def _commit(self, task_id: str) -> Task:
        """TOKENURI: point the token at its metadata, at most one write per task."""
        task = await self.store.get(task_id)
        token_uri = task.artifact.token_uri
        if token_uri is None:
            raise StageFailed(Stage.TOKENURI.value, "Metadata was never uploaded")

        if task.artifact.tx_hash is None:

            async def commit() -> str | None:
                # Skip the write if the chain already points at our metadata
                if await self.chain.read_token_uri(task.token_id) == token_uri:
                    logger.info("pipeline.commit_already_applied", task_id=task_id, token_id=task.token_id)
                    return None
                return await self.chain.set_token_uri(task.token_id, token_uri)

            tx_hash = await self.executor.run(task_id, Stage.TOKENURI, commit)
        else:
            tx_hash = task.artifact.tx_hash

        completed = await self._finish(
            task_id,
            TaskPatch(
                status=TaskStatus.COMPLETED,
                stage=Stage.DONE,
                progress=100,
                message="Your Pixel Ninja is ready",
                artifact={"tx_hash": tx_hash} if tx_hash else None,
            ),
        )
        logger.info(
            "pipeline.task_completed",
            task_id=task_id,
            token_id=task.token_id,
            token_uri=token_uri,
            tx_hash=tx_hash,
        )
        return completed

    async def _finish(self, task_id: str, patch: TaskPatch) -> Task:
        try:
            return await self.store.update(task_id, patch)
        except InvalidStateTransition as e:
            # Already terminal; the first outcome stands
            logger.warning("pipeline.finish_ignored", task_id=task_id, error=str(e))
            return await self.store.get(task_id)
