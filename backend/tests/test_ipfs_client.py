"""Tests for the Pinata-backed IPFS client."""

import json

import httpx
import pytest

from pixelninja.services.exceptions import (
    IpfsAuthError,
    IpfsQuota,
    IpfsTransient,
    IpfsValidationError,
)
from pixelninja.services.ipfs.client import IpfsClient, to_uri

CID = "bafkreigh2akiscaildcqabsyg3dfr6chu3fgpregiymsck7e7aqa4s52zy"


def client_for(handler) -> IpfsClient:
    return IpfsClient(
        "jwt-token",
        endpoint="https://pin.example/",
        gateway_domain="gateway.example",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
class TestIpfsClient:
    async def test_upload_json(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"IpfsHash": CID, "PinSize": 321})

        cid = await client_for(handler).upload_json({"name": "Pixel Ninja #1"}, name="1.json")

        assert cid == CID
        request = seen[0]
        assert str(request.url) == "https://pin.example/pinning/pinJSONToIPFS"
        assert request.headers["Authorization"] == "Bearer jwt-token"
        assert json.loads(request.content) == {
            "pinataContent": {"name": "Pixel Ninja #1"},
            "pinataOptions": {"cidVersion": 1},
            "pinataMetadata": {"name": "1.json"},
        }

    async def test_upload_bytes_is_multipart(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"IpfsHash": CID})

        cid = await client_for(handler).upload_bytes(b"\x89PNG", "image/png")

        assert cid == CID
        request = seen[0]
        assert request.url.path == "/pinning/pinFileToIPFS"
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.content
        assert b'filename="upload.png"' in body
        assert b'{"cidVersion": 1}' in body

    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (429, IpfsTransient),
            (500, IpfsTransient),
            (503, IpfsTransient),
            (401, IpfsAuthError),
            (402, IpfsQuota),
            (403, IpfsQuota),
            (413, IpfsQuota),
            (400, IpfsValidationError),
            (404, IpfsValidationError),
        ],
    )
    async def test_error_classification(self, status_code, expected):
        client = client_for(lambda request: httpx.Response(status_code, text="nope"))

        with pytest.raises(expected):
            await client.upload_json({"name": "x"})

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("connect timed out")

        with pytest.raises(IpfsTransient, match="timeout"):
            await client_for(handler).upload_json({"name": "x"})

    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(IpfsTransient, match="Network error"):
            await client_for(handler).upload_bytes(b"data", "image/png")

    async def test_missing_hash_is_transient(self):
        client = client_for(lambda request: httpx.Response(200, json={"status": "queued"}))

        with pytest.raises(IpfsTransient):
            await client.upload_json({"name": "x"})


def test_uri_and_gateway_url():
    client = client_for(lambda request: httpx.Response(200))

    assert to_uri(CID) == f"ipfs://{CID}"
    assert client.to_uri(CID) == f"ipfs://{CID}"
    assert client.get_gateway_url(CID) == f"https://gateway.example/ipfs/{CID}"
