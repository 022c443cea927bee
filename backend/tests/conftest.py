"""pytest fixtures for Pixel Ninja backend tests.

Provides:
- store / sql_store: In-memory and SQLite-backed Task Stores
- fake collaborators: FakeChain, FakeIpfs and FakeProvider stand in for the RPC node,
  the pinning service and the image APIs
- pipeline: Factory wiring a StageExecutor and PipelineOrchestrator around the fakes
"""

import asyncio
import os
import threading
import time
from types import SimpleNamespace
from typing import Any, Callable
from unittest.mock import MagicMock

# Settings validation is relaxed in test environments
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from pixelninja.core.database import create_tables, setup_db_session  # noqa: E402
from pixelninja.models.provider_request import (  # noqa: E402
    DallERequest,
    HuggingFaceRequest,
    ProviderName,
    StabilityRequest,
    default_provider_request,
)
from pixelninja.models.task import Stage, Task  # noqa: E402
from pixelninja.services.blockchain.chain import ChainAdapter, MintRequested  # noqa: E402
from pixelninja.services.exceptions import ChainUnavailable  # noqa: E402
from pixelninja.services.image_generation.providers import (  # noqa: E402
    ImageProvider,
    ProviderRegistry,
)
from pixelninja.services.ipfs.client import to_uri  # noqa: E402
from pixelninja.services.pipeline.executor import StageExecutor  # noqa: E402
from pixelninja.services.pipeline.orchestrator import PipelineOrchestrator  # noqa: E402
from pixelninja.services.retry import RetryPolicy  # noqa: E402
from pixelninja.services.task_store import InMemoryTaskStore, SqlTaskStore  # noqa: E402
from pixelninja.uow import create_uow_factory  # noqa: E402

CHAIN_ID = 8453
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
BUYER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"
SIGNER_KEY = "0x1234567890abcdef1234567890abcdef1234567890abcdef1234567890abcdef"
TX_HASH = bytes.fromhex("ab" * 32)


async def _no_sleep(_: float) -> None:
    await asyncio.sleep(0)


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    """Retry policy with the real attempt counting and no waiting."""
    return RetryPolicy(max_attempts=max_attempts, base_delay=0, max_delay=0, sleep=_no_sleep)


def make_task(token_id: int = 42, breed: str = "Bengal", provider: str = "dalle", **kwargs) -> Task:
    return Task.new(
        token_id=token_id,
        buyer=BUYER,
        breed=breed,
        chain_id=CHAIN_ID,
        contract_address=CONTRACT_ADDRESS,
        provider_request=default_provider_request(provider),
        **kwargs,
    )


def make_event(token_id: int, block_number: int, breed: str = "Bengal", log_index: int = 0) -> MintRequested:
    return MintRequested(
        token_id=token_id,
        buyer=BUYER,
        breed=breed,
        block_number=block_number,
        tx_hash=f"0x{block_number:064x}",
        log_index=log_index,
    )


class FakeProvider(ImageProvider):
    """Image provider whose outcomes are scripted per call.

    Each call pops the next outcome: an Exception is raised, bytes are returned.
    With no outcomes left the provider returns PNG_BYTES. ``gate`` (if set) is
    awaited before answering; ``hang=True`` never answers.
    """

    _REQUEST_TYPES = {
        ProviderName.DALLE: DallERequest,
        ProviderName.STABILITY: StabilityRequest,
        ProviderName.HUGGINGFACE: HuggingFaceRequest,
    }

    def __init__(
        self,
        name: ProviderName,
        outcomes: list[Any] | None = None,
        hang: bool = False,
        gate: asyncio.Event | None = None,
        api_key: str = "test-key",
    ):
        super().__init__(api_key)
        self.name = name
        self.request_type = self._REQUEST_TYPES[name]
        self.outcomes = list(outcomes or [])
        self.hang = hang
        self.gate = gate
        self.calls: list[tuple[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def generate(self, prompt, request):
        self.calls.append((prompt, request))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.gate is not None:
                await self.gate.wait()
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            return PNG_BYTES
        finally:
            self.active -= 1


class FakeIpfs:
    """Pinning service returning sequential CIDs."""

    def __init__(self, json_outcomes: list[Any] | None = None):
        self.files: list[tuple[bytes, str, str | None]] = []
        self.documents: list[dict] = []
        self.json_outcomes = list(json_outcomes or [])

    async def upload_bytes(self, data: bytes, content_type: str, name: str | None = None) -> str:
        self.files.append((data, content_type, name))
        return f"bafyimage{len(self.files)}"

    async def upload_json(self, document: dict, name: str | None = None) -> str:
        if self.json_outcomes:
            outcome = self.json_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        self.documents.append(document)
        return f"bafymeta{len(self.documents)}"

    def to_uri(self, cid: str) -> str:
        return to_uri(cid)


class FakeChain:
    """In-memory contract: scripted MintRequested logs and a tokenURI map.

    ``subscribe_mint_requested`` is the real polling loop, driven by this fake's
    ``get_current_block`` and ``scan_range``.
    """

    subscribe_mint_requested = ChainAdapter.subscribe_mint_requested

    def __init__(self, tip: int = 0, chain_id: int = CHAIN_ID):
        self.contract_address = CONTRACT_ADDRESS
        self.chain_id = chain_id
        self.tip = tip
        self.events: list[MintRequested] = []
        self.token_uris: dict[int, str] = {}
        self.owners: dict[int, str] = {}
        self.price = 10**15
        self.set_calls: list[tuple[int, str]] = []
        self.set_outcomes: list[Any] = []
        self.scan_calls: list[tuple[int, int]] = []
        self.block_calls = 0
        self.failing_block_calls: set[int] = set()
        self.on_failure: Callable[[], None] | None = None

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_current_block(self) -> int:
        self.block_calls += 1
        if self.block_calls in self.failing_block_calls:
            if self.on_failure is not None:
                self.on_failure()
            raise ChainUnavailable("eth_blockNumber failed: connection refused")
        return self.tip

    async def scan_range(self, from_block: int, to_block: int) -> list[MintRequested]:
        self.scan_calls.append((from_block, to_block))
        found = [event for event in self.events if from_block <= event.block_number <= to_block]
        return sorted(found, key=lambda event: (event.block_number, event.log_index))

    async def set_token_uri(self, token_id: int, token_uri: str) -> str:
        self.set_calls.append((token_id, token_uri))
        if self.set_outcomes:
            outcome = self.set_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        self.token_uris[token_id] = token_uri
        return f"0x{len(self.set_calls):064x}"

    async def read_token_uri(self, token_id: int) -> str | None:
        return self.token_uris.get(token_id)

    async def read_owner_of(self, token_id: int) -> str | None:
        return self.owners.get(token_id)

    async def read_price(self) -> int | None:
        return self.price


def mock_web3() -> MagicMock:
    """Web3 stand-in answering every call a setTokenURI submission makes."""
    w3 = MagicMock()
    w3.eth.chain_id = CHAIN_ID
    w3.eth.block_number = 1234
    w3.eth.max_priority_fee = 10**9
    w3.eth.get_block.return_value = {"baseFeePerGas": 2 * 10**9}
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"signed")
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {
        "status": 1,
        "blockNumber": 1235,
        "gasUsed": 48_000,
    }

    functions = w3.eth.contract.return_value.functions
    functions.setTokenURI.return_value.estimate_gas.return_value = 50_000
    functions.setTokenURI.return_value.build_transaction.side_effect = lambda params: {**params, "data": "0x"}
    functions.tokenURI.return_value.call.return_value = ""
    return w3


class SlowSend:
    """send_raw_transaction replacement that blocks its worker thread.

    Each call sleeps for the next entry of ``delays`` (the last one repeats) and
    records how many sends were in flight at once.
    """

    def __init__(self, *delays: float):
        self.delays = list(delays)
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, raw_transaction: bytes) -> bytes:
        with self._lock:
            delay = self.delays[min(self.calls, len(self.delays) - 1)]
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(delay)
        finally:
            with self._lock:
                self.active -= 1
        return TX_HASH


TEST_TIMEOUTS = {Stage.ART: 1.0, Stage.METADATA: 1.0, Stage.IPFS: 1.0, Stage.TOKENURI: 1.0}


class Pipeline:
    def __init__(self, store, registry, ipfs, chain, executor, orchestrator):
        self.store = store
        self.registry = registry
        self.ipfs = ipfs
        self.chain = chain
        self.executor = executor
        self.orchestrator = orchestrator

    def provider(self, name: ProviderName) -> FakeProvider:
        return self.registry.get(name)  # type: ignore[return-value]


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SqlTaskStore on a throwaway SQLite file."""
    session_factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}")
    engine = session_factory.kw["bind"]
    await create_tables(engine)
    yield SqlTaskStore(create_uow_factory(session_factory))
    await engine.dispose()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def ipfs() -> FakeIpfs:
    return FakeIpfs()


@pytest.fixture
def pipeline(store, chain, ipfs):
    """Factory: ``pipeline(providers=..., deadline=..., max_concurrent=...)``.

    ``chain_adapter`` replaces the FakeChain, e.g. with a ChainAdapter over a mocked Web3.
    """

    def build(
        providers: list[FakeProvider] | None = None,
        deadline: float = 5.0,
        max_concurrent: int = 4,
        timeouts: dict[Stage, float] | None = None,
        max_attempts: int = 3,
        chain_adapter: Any = None,
    ) -> Pipeline:
        commit_chain = chain_adapter or chain
        registry = ProviderRegistry(
            providers
            if providers is not None
            else [FakeProvider(name) for name in ProviderName]
        )
        executor = StageExecutor(
            store, registry, timeouts or dict(TEST_TIMEOUTS), fast_retry(max_attempts)
        )
        orchestrator = PipelineOrchestrator(
            store,
            executor,
            ipfs,  # type: ignore[arg-type]
            commit_chain,  # type: ignore[arg-type]
            deadline_seconds=deadline,
            max_concurrent=max_concurrent,
        )
        return Pipeline(store, registry, ipfs, commit_chain, executor, orchestrator)

    return build
