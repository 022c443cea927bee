"""Stage executor: runs one pipeline stage with timeout, retry and provider fallback."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from pixelninja.models.provider_request import ProviderName, ProviderRequest, request_for_provider
from pixelninja.models.task import STAGE_PROGRESS, Stage, TaskPatch, TaskStatus
from pixelninja.services.exceptions import (
    PermanentError,
    ProviderTransient,
    StageFailed,
    StageTimeout,
    TransientError,
)
from pixelninja.services.image_generation.prompts import build_prompt
from pixelninja.services.image_generation.providers import ProviderRegistry
from pixelninja.services.retry import RetryPolicy
from pixelninja.services.task_store import TaskStore

logger = structlog.get_logger()

T = TypeVar("T")

STAGE_MESSAGES = {
    Stage.ART: "Generating artwork",
    Stage.METADATA: "Building metadata",
    Stage.IPFS: "Uploading to IPFS",
    Stage.TOKENURI: "Setting token URI on-chain",
}

# Shown to clients instead of upstream error text
_FAILURE_MESSAGES = {
    Stage.ART: "Image generation failed",
    Stage.METADATA: "Could not prepare the NFT metadata",
    Stage.IPFS: "Could not upload the NFT to IPFS",
    Stage.TOKENURI: "Could not set the token URI on-chain",
}


@dataclass
class ArtResult:
    provider: ProviderName
    model: str
    prompt: str
    image: bytes


class StageExecutor:
    """Runs stage operations for the orchestrator.

    Before each attempt the task is moved to the stage with its progress bucket,
    a message and the attempt count. Transient errors are retried with backoff;
    permanent errors and exhausted retries raise StageFailed carrying a
    client-safe message.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ProviderRegistry,
        timeouts: dict[Stage, float],
        retry_policy: RetryPolicy | None = None,
    ):
        self.store = store
        self.registry = registry
        self.timeouts = timeouts
        self.retry_policy = retry_policy or RetryPolicy()

    async def run(
        self,
        task_id: str,
        stage: Stage,
        operation: Callable[[], Awaitable[T]],
        message: str | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run ``operation`` as (part of) ``stage``.

        Args:
            task_id: Task being advanced
            stage: Stage the operation belongs to
            operation: Zero-argument coroutine factory, called once per attempt
            message: Progress message (default: the stage's standard message)
            timeout: Per-attempt timeout in seconds (default: the stage timeout)

        Returns:
            Whatever ``operation`` returns

        Raises:
            StageFailed: Permanent error, or retries exhausted
        """
        timeout = timeout or self.timeouts[stage]
        message = message or STAGE_MESSAGES[stage]
        previous = (await self.store.get(task_id)).attempts.get(stage.value, 0)
        log = logger.bind(task_id=task_id, stage=stage.value)

        attempt = 0
        while True:
            attempt += 1
            await self.store.update(
                task_id,
                TaskPatch(
                    status=TaskStatus.IN_PROGRESS,
                    stage=stage,
                    progress=STAGE_PROGRESS[stage],
                    message=message if attempt == 1 else f"{message} (attempt {attempt})",
                    attempts={stage.value: previous + attempt},
                ),
            )
            log.debug("executor.attempt_started", attempt=attempt)

            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error: Exception = StageTimeout(f"{stage.value} attempt exceeded {timeout}s")
                # A timed-out commit may still land; re-sending could write twice
                if stage == Stage.TOKENURI:
                    log.error("executor.commit_timeout", attempt=attempt, timeout=timeout)
                    raise StageFailed(stage.value, "Timed out waiting for the on-chain update", error) from e
            except TransientError as e:
                error = e
            except PermanentError as e:
                log.warning(
                    "executor.permanent_error",
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StageFailed(stage.value, _FAILURE_MESSAGES[stage], e) from e

            limit = self.retry_policy.max_attempts
            if isinstance(error, ProviderTransient) and limit > 1:
                limit -= 1

            if attempt >= limit:
                log.warning(
                    "executor.retries_exhausted",
                    attempts=attempt,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                raise StageFailed(stage.value, _FAILURE_MESSAGES[stage], error) from error

            log.info(
                "executor.retrying",
                attempt=attempt,
                error=str(error),
                error_type=type(error).__name__,
            )
            await self.retry_policy.wait(attempt)

    async def run_art(self, task_id: str, breed: str, request: ProviderRequest) -> ArtResult:
        """Generate the image, falling back across providers.

        Order: requested provider, then dalle, stability, huggingface; each at most
        once, unconfigured providers skipped. A provider is abandoned on a permanent
        error or once its retries are exhausted.

        Raises:
            StageFailed: No provider produced an image
        """
        prompt = build_prompt(breed, request.prompt_extras)
        last_error: StageFailed | None = None

        for name in self.registry.fallback_sequence(request.provider):
            provider = self.registry.get(name)
            if provider is None or not provider.enabled:
                logger.debug("executor.provider_skipped", task_id=task_id, provider=name.value)
                continue

            provider_request = request_for_provider(name, request)
            try:
                image = await self.run(
                    task_id,
                    Stage.ART,
                    lambda: provider.generate(prompt, provider_request),
                    message=f"Generating artwork with {name.value}",
                )
            except StageFailed as e:
                last_error = e
                logger.warning(
                    "executor.provider_fallback",
                    task_id=task_id,
                    provider=name.value,
                    error_type=type(e.cause).__name__,
                )
                continue

            return ArtResult(
                provider=name, model=provider_request.model, prompt=prompt, image=image
            )

        raise StageFailed(
            Stage.ART.value,
            "Image generation failed with every available provider",
            last_error.cause if last_error else None,
        )
