"""Wiring of the pipeline components from Settings (shared by the app and the CLI)."""

from dataclasses import dataclass

import structlog

from pixelninja.core.config import Settings
from pixelninja.core.database import create_tables, setup_db_session
from pixelninja.models.task import Stage
from pixelninja.services.blockchain.chain import ChainAdapter, create_web3
from pixelninja.services.blockchain.event_watcher import EventWatcher
from pixelninja.services.exceptions import ChainIdMismatch, ChainUnavailable, ConfigurationError
from pixelninja.services.image_generation.providers import ProviderRegistry
from pixelninja.services.ipfs.client import IpfsClient
from pixelninja.services.pipeline.executor import StageExecutor
from pixelninja.services.pipeline.orchestrator import PipelineOrchestrator
from pixelninja.services.retry import RetryPolicy
from pixelninja.services.task_store import InMemoryTaskStore, SqlTaskStore, TaskStore
from pixelninja.uow import create_uow_factory

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    store: TaskStore
    chain: ChainAdapter
    registry: ProviderRegistry
    ipfs: IpfsClient
    executor: StageExecutor
    orchestrator: PipelineOrchestrator
    watcher: EventWatcher


async def build_task_store(settings: Settings) -> TaskStore:
    """SQL store when DATABASE_URL is set, otherwise in-memory."""
    if not settings.database_url:
        logger.info("task_store.in_memory", retention=settings.task_retention)
        return InMemoryTaskStore(retention=settings.task_retention)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    await create_tables(session_factory.kw["bind"])
    logger.info("task_store.sql")
    return SqlTaskStore(create_uow_factory(session_factory))


async def verify_chain(chain: ChainAdapter, expected_chain_id: int) -> None:
    """Refuse to run against an unreachable RPC or the wrong chain.

    Raises:
        ConfigurationError: RPC unreachable
        ChainIdMismatch: RPC reports a different chain id
    """
    try:
        actual = await chain.get_chain_id()
    except ChainUnavailable as e:
        raise ConfigurationError(f"RPC endpoint is unreachable: {e}") from e
    if actual != expected_chain_id:
        raise ChainIdMismatch(f"RPC reports chain {actual}, CHAIN_ID is {expected_chain_id}")


async def build_runtime(settings: Settings, store: TaskStore | None = None) -> Runtime:
    """Build every pipeline component and check the chain id."""
    store = store or await build_task_store(settings)

    chain = ChainAdapter(
        create_web3(settings.rpc_url),
        settings.contract_address,
        signer_key=settings.signer_key,
        gas_buffer=settings.gas_buffer,
        transaction_timeout=settings.transaction_timeout_seconds,
    )
    await verify_chain(chain, settings.chain_id)

    timeouts = settings.stage_timeouts
    registry = ProviderRegistry.from_keys(
        openai_key=settings.openai_key,
        stability_key=settings.stability_key,
        huggingface_key=settings.huggingface_key,
        timeout=timeouts[Stage.ART],
    )
    ipfs = IpfsClient(
        settings.ipfs_jwt,
        endpoint=settings.ipfs_endpoint,
        gateway_domain=settings.ipfs_gateway,
    )
    executor = StageExecutor(
        store,
        registry,
        timeouts,
        RetryPolicy(
            max_attempts=settings.max_stage_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        ),
    )
    orchestrator = PipelineOrchestrator(
        store,
        executor,
        ipfs,
        chain,
        deadline_seconds=settings.task_deadline_seconds,
        max_concurrent=settings.max_concurrent_tasks,
    )
    watcher = EventWatcher(
        store,
        chain,
        settings.chain_id,
        orchestrator=orchestrator,
        default_provider=settings.default_provider,
        chunk_blocks=settings.backfill_chunk_blocks,
        start_block=settings.start_block,
        poll_interval=settings.poll_interval_seconds,
    )

    logger.info(
        "runtime.ready",
        chain_id=settings.chain_id,
        contract_address=chain.contract_address,
        providers=[name.value for name in registry.enabled_names()],
        max_concurrent=settings.max_concurrent_tasks,
    )
    return Runtime(settings, store, chain, registry, ipfs, executor, orchestrator, watcher)
