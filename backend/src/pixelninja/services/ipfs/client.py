"""IPFS upload client using the Pinata pinning API."""

import json
from typing import Any

import httpx
import structlog

from pixelninja.services.exceptions import (
    IpfsAuthError,
    IpfsQuota,
    IpfsTransient,
    IpfsValidationError,
)

logger = structlog.get_logger()

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def to_uri(cid: str) -> str:
    """Format a CID as ``ipfs://<cid>``."""
    return f"ipfs://{cid}"


class IpfsClient:
    """Pins raw bytes and JSON documents, returning their CIDs."""

    def __init__(
        self,
        jwt_token: str,
        endpoint: str = "https://api.pinata.cloud",
        gateway_domain: str = "gateway.pinata.cloud",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize IPFS client.

        Args:
            jwt_token: Pinning service JWT (from IPFS_JWT env var)
            endpoint: Pinning API base URL (from IPFS_ENDPOINT env var)
            gateway_domain: Gateway domain for URL generation
            timeout: HTTP timeout per request in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = endpoint.rstrip("/")
        self.gateway_domain = gateway_domain
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {jwt_token}"}
        self._transport = transport

    async def upload_bytes(self, data: bytes, content_type: str, name: str | None = None) -> str:
        """Pin a file.

        Args:
            data: File contents (e.g. PNG image bytes)
            content_type: MIME type of ``data``
            name: Filename shown in the pinning dashboard

        Returns:
            IPFS CID (CIDv1)

        Raises:
            IpfsTransient: Network timeout, rate limit (429), service errors (5xx)
            IpfsQuota: Quota or payload limits (402, 403, 413)
            IpfsAuthError: Invalid credentials (401)
            IpfsValidationError: Bad request (400)
        """
        filename = name or f"upload.{_EXTENSIONS.get(content_type, 'bin')}"
        return await self._pin(
            "/pinning/pinFileToIPFS",
            files={"file": (filename, data, content_type)},
            data={
                "pinataOptions": '{"cidVersion": 1}',
                "pinataMetadata": json.dumps({"name": filename}),
            },
        )

    async def upload_json(self, document: dict[str, Any], name: str | None = None) -> str:
        """Pin a JSON document.

        Returns:
            IPFS CID (CIDv1)

        Raises:
            Same as upload_bytes
        """
        payload: dict[str, Any] = {
            "pinataContent": document,
            "pinataOptions": {"cidVersion": 1},
        }
        if name:
            payload["pinataMetadata"] = {"name": name}
        return await self._pin("/pinning/pinJSONToIPFS", json=payload)

    def to_uri(self, cid: str) -> str:
        return to_uri(cid)

    def get_gateway_url(self, cid: str) -> str:
        """Convert CID to gateway URL for browser access."""
        return f"https://{self.gateway_domain}/ipfs/{cid}"

    async def _pin(self, path: str, **kwargs: Any) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}{path}", headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            raise IpfsTransient(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise IpfsTransient(f"Network error: {e}") from e

        # Error classification
        status = response.status_code
        if status == 429:
            raise IpfsTransient(f"Rate limit exceeded: {response.text}")
        elif status >= 500:
            raise IpfsTransient(f"Service unavailable ({status}): {response.text}")
        elif status == 401:
            raise IpfsAuthError(
                "Unauthorized: Invalid API key. Check IPFS_JWT configuration in .env file."
            )
        elif status in (402, 403, 413):
            raise IpfsQuota(f"Pinning refused ({status}): quota or payload limit reached")
        elif status == 400:
            raise IpfsValidationError(f"Bad request: {response.text}")
        elif status >= 400:
            raise IpfsValidationError(f"Unexpected response ({status}): {response.text}")

        try:
            cid = response.json()["IpfsHash"]
        except (KeyError, ValueError) as e:
            raise IpfsTransient(f"Pinning response had no IpfsHash: {response.text[:200]}") from e

        logger.debug("ipfs.pinned", path=path, cid=cid)
        return cid
