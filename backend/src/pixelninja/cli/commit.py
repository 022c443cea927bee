"""CLI command for re-submitting setTokenURI after a failed commit.

A task that failed in TOKENURI keeps its uploaded tokenUri. This command writes
it on-chain; the task record itself is terminal and stays as it is.

Usage:
    python -m pixelninja.cli commit TASK_ID
    python -m pixelninja.cli commit --token-id 42 --uri ipfs://bafy...
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixelninja.core.config import Settings, configure_logging
from pixelninja.models.task import TaskStatus
from pixelninja.services.blockchain.chain import ChainAdapter, create_web3
from pixelninja.services.exceptions import ConfigurationError, ServiceError, TaskNotFound
from pixelninja.services.pipeline.runtime import build_task_store, verify_chain

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m pixelninja.cli commit",
        description="Point a token at its uploaded metadata with setTokenURI",
    )

    parser.add_argument("task_id", nargs="?", help="FAILED task whose tokenUri should be committed")
    parser.add_argument("--token-id", type=int, help="Token to update (with --uri)")
    parser.add_argument("--uri", help="Token URI to set, e.g. ipfs://<cid> (with --token-id)")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Send even if the contract already reports this tokenURI",
    )

    args = parser.parse_args(argv)
    if args.task_id is None and (args.token_id is None or not args.uri):
        parser.error("either TASK_ID or both --token-id and --uri are required")
    if args.task_id is not None and (args.token_id is not None or args.uri):
        parser.error("TASK_ID cannot be combined with --token-id/--uri")
    return args


async def resolve_target(settings: Settings, task_id: str) -> tuple[int, str]:
    """Token id and preserved tokenUri of a failed task.

    Raises:
        ConfigurationError: No persistent store, or the task cannot be committed
    """
    if not settings.database_url:
        raise ConfigurationError("DATABASE_URL is required to look up tasks")

    store = await build_task_store(settings)
    try:
        task = await store.get(task_id)
    except TaskNotFound as e:
        raise ConfigurationError(f"Task {task_id} not found") from e

    if task.status != TaskStatus.FAILED:
        raise ConfigurationError(f"Task {task_id} is {task.status.value}, only FAILED tasks are committed")
    if task.artifact.token_uri is None:
        raise ConfigurationError(f"Task {task_id} failed before its metadata was uploaded")
    return task.token_id, task.artifact.token_uri


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (committed or already set), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    try:
        if args.task_id is not None:
            token_id, token_uri = await resolve_target(settings, args.task_id)
        else:
            token_id, token_uri = args.token_id, args.uri

        chain = ChainAdapter(
            create_web3(settings.rpc_url),
            settings.contract_address,
            signer_key=settings.signer_key,
            gas_buffer=settings.gas_buffer,
            transaction_timeout=settings.transaction_timeout_seconds,
        )
        await verify_chain(chain, settings.chain_id)

        if not args.force and await chain.read_token_uri(token_id) == token_uri:
            logger.info("commit.already_applied", token_id=token_id, token_uri=token_uri)
            return 0

        tx_hash = await chain.set_token_uri(token_id, token_uri)
        logger.info("commit.complete", token_id=token_id, token_uri=token_uri, tx_hash=tx_hash)
        return 0

    except (ConfigurationError, ServiceError) as e:
        logger.error("commit.error", error=str(e), error_type=type(e).__name__)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
