"""CLI command for scanning a block range for MintRequested events.

Usage:
    python -m pixelninja.cli backfill [OPTIONS]

Examples:
    # Resume from last_ack_block up to the chain tip, generating every new task
    python -m pixelninja.cli backfill

    # Specific block range
    python -m pixelninja.cli backfill --from-block 12345000 --to-block 12346000

    # Dry run (list events, create nothing)
    python -m pixelninja.cli backfill --from-block 12345000 --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixelninja.core.config import Settings, configure_logging
from pixelninja.services.blockchain.chain import ChainAdapter, MintRequested, create_web3
from pixelninja.services.exceptions import ConfigurationError, ServiceError
from pixelninja.services.pipeline.runtime import build_runtime, verify_chain

logger = structlog.get_logger()

DRY_RUN_PREVIEW = 10


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m pixelninja.cli backfill",
        description="Scan past blocks for MintRequested events and generate their NFTs",
    )

    parser.add_argument(
        "--from-block",
        type=int,
        help="Starting block number (uses last_ack_block if not provided)",
    )

    parser.add_argument(
        "--to-block",
        type=int,
        help="Ending block number (default: current chain tip)",
    )

    parser.add_argument(
        "--chunk-size",
        type=int,
        help="Number of blocks per eth_getLogs request (default: BACKFILL_CHUNK_BLOCKS)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List events without creating tasks",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def scan_events(
    chain: ChainAdapter, from_block: int, to_block: int, chunk_size: int
) -> list[MintRequested]:
    """Collect every MintRequested event in ``[from_block, to_block]``."""
    events: list[MintRequested] = []
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        events.extend(await chain.scan_range(start, end))
        start = end + 1
    return events


async def dry_run(settings: Settings, args: Namespace) -> int:
    from_block = args.from_block if args.from_block is not None else settings.start_block
    if from_block is None:
        logger.error("backfill.error", message="--dry-run needs --from-block or START_BLOCK")
        return 1

    chain = ChainAdapter(create_web3(settings.rpc_url), settings.contract_address)
    await verify_chain(chain, settings.chain_id)

    to_block = args.to_block if args.to_block is not None else await chain.get_current_block()
    events = await scan_events(
        chain, from_block, to_block, args.chunk_size or settings.backfill_chunk_blocks
    )

    if not events:
        logger.info("backfill.dry_run_results", message="No events found in range")
    for event in events[:DRY_RUN_PREVIEW]:
        logger.info(
            "backfill.dry_run_event",
            block_number=event.block_number,
            tx_hash=event.tx_hash,
            token_id=event.token_id,
            buyer=event.buyer,
            breed=event.breed,
        )
    if len(events) > DRY_RUN_PREVIEW:
        logger.info(
            "backfill.dry_run_truncated",
            message=f"... and {len(events) - DRY_RUN_PREVIEW} more events",
        )

    logger.info("backfill.dry_run_complete", event_count=len(events), message="No changes made")
    return 0


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info(
        "backfill.start",
        contract=settings.contract_address,
        from_block=args.from_block,
        to_block=args.to_block,
        dry_run=args.dry_run,
    )

    try:
        if args.dry_run:
            return await dry_run(settings, args)

        runtime = await build_runtime(settings)
        if args.chunk_size:
            runtime.watcher.chunk_blocks = args.chunk_size

        last_block = await runtime.watcher.backfill(to_block=args.to_block, from_block=args.from_block)
        logger.info(
            "backfill.scanned",
            last_block=last_block,
            tasks_started=runtime.orchestrator.active_count,
        )

        # Every task finishes within its deadline plus one commit
        await runtime.orchestrator.drain(
            timeout=settings.task_deadline_seconds + settings.transaction_timeout_seconds + 30
        )

        metrics = await runtime.store.metrics()
        logger.info(
            "backfill.complete",
            completed=metrics.completed,
            failed=metrics.failed,
            timed_out=metrics.timed_out,
        )
        return 0

    except KeyboardInterrupt:
        logger.warning("backfill.interrupted", message="Backfill interrupted by user")
        return 2

    except (ConfigurationError, ServiceError) as e:
        logger.error("backfill.error", error=str(e), error_type=type(e).__name__)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
