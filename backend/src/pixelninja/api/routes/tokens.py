"""Token-level API endpoints.

- POST /api/tokens/{token_id}/provider - Register the image provider options for a token
- GET /api/tokens/{token_id} - On-chain diagnostics plus the token's task summary
- GET /api/providers - Configured image providers and their options
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Path, status
from pydantic import ValidationError

from pixelninja.api.dependencies import get_chain, get_ipfs, get_registry, get_task_store
from pixelninja.api.routes.tasks import TaskStatusResponse
from pixelninja.models.provider_request import parse_provider_request
from pixelninja.services.blockchain.chain import ChainAdapter
from pixelninja.services.exceptions import TaskNotFound
from pixelninja.services.image_generation.providers import ProviderRegistry
from pixelninja.services.ipfs.client import IpfsClient
from pixelninja.services.task_store import TaskStore

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["tokens"])

# Extras are appended to the breed template, which stays well under the prompt limit
MAX_PROMPT_EXTRAS = 500


@router.post("/tokens/{token_id}/provider")
async def set_provider_preference(
    token_id: int = Path(..., ge=0),
    body: dict[str, Any] = Body(...),
    store: TaskStore = Depends(get_task_store),
) -> dict[str, Any]:
    """Register which provider (and options) should render a token.

    Accepts the front-end's providerRequest object. Unknown keys are dropped;
    an unknown provider or an unsupported option value is rejected.

    Only tasks created after this call use the preference; a task that already
    exists is never rewritten.

    Raises:
        HTTPException: 422 if the provider request is invalid
    """
    try:
        request = parse_provider_request(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
        )

    if request.prompt_extras and len(request.prompt_extras) > MAX_PROMPT_EXTRAS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"promptExtras exceeds {MAX_PROMPT_EXTRAS} characters",
        )

    await store.set_provider_preference(token_id, request)
    logger.info("tokens.provider_preference_set", token_id=token_id, provider=request.provider)

    return {
        "tokenId": token_id,
        "providerRequest": request.model_dump(mode="json", by_alias=True, exclude_none=True),
    }


@router.get("/tokens/{token_id}")
async def get_token(
    token_id: int = Path(..., ge=0),
    store: TaskStore = Depends(get_task_store),
    chain: Optional[ChainAdapter] = Depends(get_chain),
    ipfs: Optional[IpfsClient] = Depends(get_ipfs),
) -> dict[str, Any]:
    """Owner, tokenURI and mint price as the contract reports them, plus the task.

    Chain reads are best-effort; an unreadable value is returned as null.
    metadataUrl is a browser-friendly gateway link to the pinned metadata.
    """
    owner = token_uri = price = None
    contract_address = None
    if chain is not None:
        contract_address = chain.contract_address
        owner = await chain.read_owner_of(token_id)
        token_uri = await chain.read_token_uri(token_id)
        price = await chain.read_price()

    metadata_url = None
    try:
        task = await store.find_by_token(token_id, contract_address=contract_address)
        task_view = TaskStatusResponse.from_task(task).to_json()
        if ipfs is not None and task.artifact.metadata_cid:
            metadata_url = ipfs.get_gateway_url(task.artifact.metadata_cid)
    except TaskNotFound:
        task_view = None

    return {
        "tokenId": token_id,
        "owner": owner,
        "tokenUri": token_uri,
        "priceWei": str(price) if price is not None else None,
        "metadataUrl": metadata_url,
        "task": task_view,
    }


@router.get("/providers")
async def list_providers(
    registry: Optional[ProviderRegistry] = Depends(get_registry),
) -> dict[str, Any]:
    """Image providers, whether each has a credential, and the options it accepts."""
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Providers are not configured"
        )
    return registry.describe()
