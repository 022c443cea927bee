"""Chain adapter: RPC reads, MintRequested log scanning and setTokenURI submission.

web3.py is synchronous, so every RPC call runs in a worker thread via
``asyncio.to_thread`` and the event loop keeps serving other tasks meanwhile.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from eth_abi import decode as abi_decode
from eth_account import Account
from eth_utils.abi import event_signature_to_log_topic
from pydantic import BaseModel, ConfigDict
from web3 import Web3
from web3.exceptions import TimeExhausted

from pixelninja.abi import get_contract_abi
from pixelninja.services.exceptions import (
    ChainUnavailable,
    CommitUnconfirmed,
    ConfigurationError,
    TransactionReverted,
)
from pixelninja.services.retry import backoff_delay

logger = structlog.get_logger()

# event MintRequested(uint256 indexed tokenId, address indexed buyer, string breed)
MINT_REQUESTED_SIGNATURE = "MintRequested(uint256,address,string)"
MINT_REQUESTED_TOPIC = event_signature_to_log_topic(MINT_REQUESTED_SIGNATURE)


class MintRequested(BaseModel):
    """Decoded MintRequested log."""

    model_config = ConfigDict(frozen=True)

    token_id: int
    buyer: str
    breed: str
    block_number: int
    tx_hash: str
    log_index: int = 0


def _hex(value: Any) -> str:
    return value if isinstance(value, str) else Web3.to_hex(value)


def _bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return Web3.to_bytes(hexstr=value)
    return bytes(value)


def decode_mint_requested(log: Any) -> MintRequested:
    """Decode a raw MintRequested log.

    Layout:
    - topics[0]: event signature hash
    - topics[1]: indexed tokenId (uint256)
    - topics[2]: indexed buyer (address, left-padded to 32 bytes)
    - data: ABI-encoded ``string breed``
    """
    topics = log["topics"]
    token_id = int.from_bytes(_bytes(topics[1]), "big")
    buyer = Web3.to_checksum_address("0x" + _bytes(topics[2])[-20:].hex())
    (breed,) = abi_decode(["string"], _bytes(log["data"]))

    return MintRequested(
        token_id=token_id,
        buyer=buyer,
        breed=breed,
        block_number=log["blockNumber"],
        tx_hash=_hex(log["transactionHash"]),
        log_index=log.get("logIndex", 0),
    )


def create_web3(rpc_url: str, timeout: float = 30.0) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


class ChainAdapter:
    """Reads from and writes to the Pixel Ninja NFT contract."""

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        signer_key: str = "",
        gas_buffer: float = 1.2,
        transaction_timeout: int = 180,
    ):
        """Initialize chain adapter.

        Args:
            w3: Web3 instance
            contract_address: NFT contract address
            signer_key: Private key allowed to call setTokenURI (0x-prefixed hex);
                empty means read-only
            gas_buffer: Multiplier applied to gas and priority fee estimates
            transaction_timeout: Max wait time for one confirmation in seconds
        """
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=get_contract_abi())
        self.gas_buffer = gas_buffer
        self.transaction_timeout = transaction_timeout

        self._signer_key = signer_key
        self.signer_address = Account.from_key(signer_key).address if signer_key else None

        # setTokenURI writes go out one at a time, in arrival order
        self._signer_lock = asyncio.Lock()

    async def _rpc(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.warning("chain.rpc_failed", operation=operation, error=str(e))
            raise ChainUnavailable(f"{operation} failed: {e}") from e

    async def get_chain_id(self) -> int:
        return await self._rpc("eth_chainId", lambda: self.w3.eth.chain_id)

    async def get_current_block(self) -> int:
        return await self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number)

    async def scan_range(self, from_block: int, to_block: int) -> list[MintRequested]:
        """Fetch MintRequested events in ``[from_block, to_block]``.

        Returns:
            Events ordered by (block_number, log_index)

        Raises:
            ChainUnavailable: RPC failed
        """
        if to_block < from_block:
            return []

        logs = await self._rpc(
            "eth_getLogs",
            lambda: self.w3.eth.get_logs(
                {
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "address": self.contract_address,
                    "topics": [MINT_REQUESTED_TOPIC],
                }
            ),
        )

        events = []
        for log in logs:
            try:
                events.append(decode_mint_requested(log))
            except Exception as e:
                logger.error(
                    "chain.log_decode_failed",
                    error=str(e),
                    block_number=log.get("blockNumber"),
                    tx_hash=_hex(log.get("transactionHash", b"")),
                )
        events.sort(key=lambda event: (event.block_number, event.log_index))

        logger.debug(
            "chain.scan_range", from_block=from_block, to_block=to_block, count=len(events)
        )
        return events

    async def set_token_uri(self, token_id: int, token_uri: str) -> str:
        """Submit setTokenURI and wait for one confirmation.

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            ChainUnavailable: Failed before the transaction was sent (safe to retry)
            CommitUnconfirmed: Sent but not confirmed in time (must not be re-sent)
            TransactionReverted: Reverted in simulation or on-chain
        """
        if not self._signer_key:
            raise ConfigurationError("SIGNER_KEY is not configured")

        # The worker thread cannot be cancelled, so the signer stays held until it
        # returns even when the caller gives up waiting
        await self._signer_lock.acquire()
        try:
            send = asyncio.ensure_future(
                asyncio.to_thread(self._send_set_token_uri, token_id, token_uri)
            )
        except BaseException:
            self._signer_lock.release()
            raise
        send.add_done_callback(self._release_signer)
        return await asyncio.shield(send)

    def _release_signer(self, send: asyncio.Future) -> None:
        self._signer_lock.release()
        # Retrieved here so a send nobody awaits any more is not reported as unhandled
        if not send.cancelled() and send.exception() is not None:
            logger.debug("chain.set_token_uri_finished", error=str(send.exception()))

    def _send_set_token_uri(self, token_id: int, token_uri: str) -> str:
        call = self.contract.functions.setTokenURI(token_id, token_uri)

        try:
            estimated_gas = call.estimate_gas({"from": self.signer_address})
            gas_limit = int(estimated_gas * self.gas_buffer)

            # EIP-1559 fee parameters
            max_priority_fee = int(self.w3.eth.max_priority_fee * self.gas_buffer)
            latest_block = self.w3.eth.get_block("latest")
            base_fee = latest_block.get("baseFeePerGas", 0)  # type: ignore[arg-type]
            max_fee_per_gas = int(base_fee * 2 + max_priority_fee)

            nonce = self.w3.eth.get_transaction_count(self.signer_address, "pending")  # type: ignore[arg-type]
            transaction = call.build_transaction(
                {
                    "from": self.signer_address,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "maxFeePerGas": max_fee_per_gas,
                    "maxPriorityFeePerGas": max_priority_fee,
                    "chainId": self.w3.eth.chain_id,
                }  # type: ignore[arg-type]
            )
            signed_txn = self.w3.eth.account.sign_transaction(
                transaction, private_key=self._signer_key
            )
        except Exception as e:
            if "execution reverted" in str(e).lower():
                logger.error("chain.set_token_uri_simulation_reverted", token_id=token_id, error=str(e))
                raise TransactionReverted(f"setTokenURI({token_id}) would revert: {e}") from e
            logger.error("chain.set_token_uri_prepare_failed", token_id=token_id, error=str(e))
            raise ChainUnavailable(f"Could not prepare setTokenURI({token_id}): {e}") from e

        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        except Exception as e:
            logger.error("chain.transaction_submission_failed", token_id=token_id, error=str(e))
            raise ChainUnavailable(f"Transaction submission failed: {e}") from e

        tx_hash_hex = _hex(tx_hash)
        logger.info(
            "chain.transaction_submitted",
            tx_hash=tx_hash_hex,
            token_id=token_id,
            nonce=nonce,
            gas_limit=gas_limit,
        )

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.transaction_timeout
            )
        except TimeExhausted as e:
            logger.warning(
                "chain.transaction_timeout", tx_hash=tx_hash_hex, timeout=self.transaction_timeout
            )
            raise CommitUnconfirmed(
                f"Transaction confirmation timeout: {tx_hash_hex}", tx_hash=tx_hash_hex
            ) from e
        except Exception as e:
            logger.warning("chain.receipt_unavailable", tx_hash=tx_hash_hex, error=str(e))
            raise CommitUnconfirmed(
                f"Receipt unavailable for {tx_hash_hex}: {e}", tx_hash=tx_hash_hex
            ) from e

        if receipt["status"] == 0:
            logger.error(
                "chain.transaction_reverted",
                tx_hash=tx_hash_hex,
                block_number=receipt["blockNumber"],
                gas_used=receipt["gasUsed"],
            )
            raise TransactionReverted(f"Transaction reverted: {tx_hash_hex}", tx_hash=tx_hash_hex)

        logger.info(
            "chain.transaction_confirmed",
            tx_hash=tx_hash_hex,
            token_id=token_id,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        return tx_hash_hex

    # Diagnostic reads; failures are reported as None, never raised
    async def read_token_uri(self, token_id: int) -> str | None:
        return await self._read("tokenURI", lambda: self.contract.functions.tokenURI(token_id).call())

    async def read_owner_of(self, token_id: int) -> str | None:
        return await self._read("ownerOf", lambda: self.contract.functions.ownerOf(token_id).call())

    async def read_price(self) -> int | None:
        return await self._read("price", lambda: self.contract.functions.price().call())

    async def _read(self, name: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.info("chain.read_failed", function=name, error=str(e))
            return None

    async def subscribe_mint_requested(
        self,
        on_event: Callable[[MintRequested], Awaitable[None]],
        from_block: int,
        on_ack: Callable[[int], Awaitable[None]] | None = None,
        on_reconnect: Callable[[], Awaitable[int]] | None = None,
        poll_interval: float = 5.0,
        max_backoff: float = 60.0,
        stop: asyncio.Event | None = None,
        chunk_blocks: int = 2000,
    ) -> None:
        """Follow new MintRequested events until ``stop`` is set.

        Polls eth_getLogs from the last acknowledged block to the chain tip. RPC
        failures back off with jitter; once the RPC answers again ``on_reconnect``
        runs (the watcher's backfill) and its return value becomes the new cursor.

        Args:
            on_event: Called once per event, in block order
            from_block: Last acknowledged block; polling starts after it
            on_ack: Called with the new cursor after each scanned chunk
            on_reconnect: Called after an outage; returns the last acknowledged block
            poll_interval: Seconds between polls
            max_backoff: Upper bound on the delay between failed polls
            stop: Event that ends the subscription
            chunk_blocks: Most blocks covered by one eth_getLogs request
        """
        stop = stop or asyncio.Event()
        cursor = from_block
        failures = 0

        while not stop.is_set():
            try:
                if failures and on_reconnect is not None:
                    cursor = await on_reconnect()
                    logger.info("chain.subscription_resumed", cursor=cursor, failures=failures)
                failures = 0

                tip = await self.get_current_block()
                while cursor < tip:
                    end = min(cursor + chunk_blocks, tip)
                    for event in await self.scan_range(cursor + 1, end):
                        await on_event(event)
                    cursor = end
                    if on_ack is not None:
                        await on_ack(cursor)
            except ChainUnavailable as e:
                failures += 1
                delay = backoff_delay(failures, poll_interval, max_backoff)
                logger.warning(
                    "chain.subscription_dropped",
                    error=str(e),
                    failures=failures,
                    retry_in=round(delay, 2),
                )
                await _sleep_until(stop, delay)
                continue

            await _sleep_until(stop, poll_interval)


async def _sleep_until(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
