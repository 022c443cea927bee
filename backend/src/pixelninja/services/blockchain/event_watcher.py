"""Event watcher: turns MintRequested events into pipeline tasks.

Two strategies feed the same handler:
1. Backfill - chunked eth_getLogs scan from the last acknowledged block to the tip,
   run at startup and after every subscription outage
2. Live - the chain adapter's polling subscription

Progress is tracked via ``last_ack_block`` in the Task Store so restarts resume
where the previous process stopped.
"""

import asyncio

import structlog

from pixelninja.models.provider_request import ProviderName, default_provider_request
from pixelninja.models.task import Task
from pixelninja.services.blockchain.chain import ChainAdapter, MintRequested
from pixelninja.services.exceptions import DuplicateKey, TaskNotFound, UnknownBreed
from pixelninja.services.image_generation.prompts import normalize_breed
from pixelninja.services.pipeline.orchestrator import PipelineOrchestrator
from pixelninja.services.task_store import TaskStore

logger = structlog.get_logger()

# First-run backfill window when neither last_ack_block nor START_BLOCK is known
DEFAULT_LOOKBACK_BLOCKS = 100


class EventWatcher:
    """Discovers mints, deduplicates them and hands new tasks to the orchestrator."""

    def __init__(
        self,
        store: TaskStore,
        chain: ChainAdapter,
        chain_id: int,
        orchestrator: PipelineOrchestrator | None = None,
        default_provider: str = ProviderName.DALLE.value,
        chunk_blocks: int = 2000,
        start_block: int | None = None,
        poll_interval: float = 5.0,
    ):
        """Initialize event watcher.

        Args:
            store: Task Store (tasks and last_ack_block)
            chain: Chain adapter for the watched contract
            chain_id: Chain the contract lives on (part of the dedup key)
            orchestrator: Receives each new task; None only records tasks
            default_provider: Provider used when no preference is stored for a token
            chunk_blocks: Blocks per eth_getLogs request during backfill
            start_block: First block to scan on a fresh store
            poll_interval: Seconds between live polls
        """
        self.store = store
        self.chain = chain
        self.chain_id = chain_id
        self.orchestrator = orchestrator
        self.default_provider = ProviderName(default_provider)
        self.chunk_blocks = chunk_blocks
        self.start_block = start_block
        self.poll_interval = poll_interval

    async def handle_event(self, event: MintRequested) -> Task | None:
        """Create and start a task for a MintRequested event.

        Returns:
            The new task, or None if the event was rejected or is a duplicate
        """
        log = logger.bind(token_id=event.token_id, tx_hash=event.tx_hash, block_number=event.block_number)

        try:
            breed = normalize_breed(event.breed)
        except UnknownBreed:
            log.warning("watcher.unknown_breed", breed=event.breed)
            return None

        try:
            existing = await self.store.find_by_token(
                event.token_id, self.chain_id, self.chain.contract_address
            )
            log.debug("watcher.duplicate_event", task_id=existing.id)
            return None
        except TaskNotFound:
            pass

        request = await self.store.get_provider_preference(event.token_id)
        if request is None:
            request = default_provider_request(self.default_provider)

        task = Task.new(
            token_id=event.token_id,
            buyer=event.buyer,
            breed=breed,
            chain_id=self.chain_id,
            contract_address=self.chain.contract_address,
            provider_request=request,
            block_number=event.block_number,
            event_tx_hash=event.tx_hash,
        )
        try:
            await self.store.create(task)
        except DuplicateKey:
            log.debug("watcher.duplicate_event")
            return None

        log.info("watcher.task_created", task_id=task.id, breed=breed, provider=request.provider)
        if self.orchestrator is not None:
            self.orchestrator.start(task.id)
        return task

    async def initial_cursor(self, tip: int) -> int:
        """Last acknowledged block, or the block before the configured origin."""
        last_ack = await self.store.get_last_ack_block()
        if last_ack is not None:
            return last_ack
        if self.start_block is not None:
            return max(self.start_block - 1, 0)
        return max(tip - DEFAULT_LOOKBACK_BLOCKS, 0)

    async def backfill(self, to_block: int | None = None, from_block: int | None = None) -> int:
        """Scan ``(last_ack_block, to_block]`` in chunks and create tasks in block order.

        ``last_ack_block`` advances after each chunk, so a crash mid-backfill
        resumes at the first unfinished chunk. It never moves backwards.

        Args:
            to_block: Last block to scan (default: current chain tip)
            from_block: First block to scan, overriding the stored cursor

        Returns:
            The last block scanned

        Raises:
            ChainUnavailable: RPC failed (progress up to the last full chunk is kept)
        """
        tip = to_block if to_block is not None else await self.chain.get_current_block()
        last_ack = await self.store.get_last_ack_block()
        cursor = from_block - 1 if from_block is not None else await self.initial_cursor(tip)

        if tip <= cursor:
            return cursor

        logger.info("watcher.backfill_started", from_block=cursor + 1, to_block=tip)
        created = 0
        start = cursor + 1
        while start <= tip:
            end = min(start + self.chunk_blocks - 1, tip)
            for event in await self.chain.scan_range(start, end):
                if await self.handle_event(event) is not None:
                    created += 1
            if last_ack is None or end > last_ack:
                await self.store.set_last_ack_block(end)
            start = end + 1

        logger.info("watcher.backfill_complete", to_block=tip, tasks_created=created)
        return tip

    async def _on_live_event(self, event: MintRequested) -> None:
        await self.handle_event(event)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Backfill, then follow live events until ``stop`` is set."""
        cursor = await self.backfill()
        logger.info("watcher.live", cursor=cursor, poll_interval=self.poll_interval)
        await self.chain.subscribe_mint_requested(
            on_event=self._on_live_event,
            from_block=cursor,
            on_ack=self.store.set_last_ack_block,
            on_reconnect=self.backfill,
            poll_interval=self.poll_interval,
            stop=stop,
            chunk_blocks=self.chunk_blocks,
        )
