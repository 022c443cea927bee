"""Tests for the image provider clients and the provider registry."""

import base64
import json

import httpx
import pytest

from pixelninja.models.provider_request import ProviderName, parse_provider_request
from pixelninja.services.exceptions import (
    ProviderInvalidRequest,
    ProviderRateLimited,
    ProviderTransient,
    ProviderUnavailable,
)
from pixelninja.services.image_generation.prompts import DEFAULT_NEGATIVE
from pixelninja.services.image_generation.providers import (
    DallEProvider,
    HuggingFaceProvider,
    ProviderRegistry,
    StabilityProvider,
)

IMAGE = b"\x89PNG\r\n\x1a\nimage-bytes"
PROMPT = "32x32 pixel art sprite of a Bengal ninja cat"


class Recorder:
    """httpx.MockTransport handler that records requests and replays one response."""

    def __init__(self, response: httpx.Response | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def images_response(*data: dict) -> httpx.Response:
    """Body of a successful OpenAI images.generate call."""
    return httpx.Response(200, json={"created": 1700000000, "data": list(data)})


@pytest.mark.asyncio
class TestDallEProvider:
    async def test_decodes_base64_image(self):
        recorder = Recorder(images_response({"b64_json": b64(IMAGE)}))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        image = await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

        assert image == IMAGE
        request = recorder.requests[0]
        assert request.url.path == "/v1/images/generations"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = recorder.body()
        assert body["model"] == "dall-e-3"
        assert body["prompt"] == PROMPT
        assert body["quality"] == "hd"
        assert body["style"] == "vivid"
        assert body["response_format"] == "b64_json"
        # Retries belong to the stage executor
        assert len(recorder.requests) == 1

    async def test_dalle2_omits_dalle3_options(self):
        recorder = Recorder(images_response({"b64_json": b64(IMAGE)}))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        await provider.generate(PROMPT, parse_provider_request({"provider": "dalle", "model": "dall-e-2"}))

        body = recorder.body()
        assert body["model"] == "dall-e-2"
        assert "quality" not in body
        assert "style" not in body

    @pytest.mark.parametrize(
        "status_code,body,expected",
        [
            (429, "slow down", ProviderRateLimited),
            (503, "overloaded", ProviderUnavailable),
            (502, "bad gateway", ProviderUnavailable),
            (500, "internal error", ProviderTransient),
            (400, "Your request was rejected by our content policy", ProviderInvalidRequest),
            (401, "invalid api key", ProviderInvalidRequest),
        ],
    )
    async def test_error_classification(self, status_code, body, expected):
        recorder = Recorder(httpx.Response(status_code, text=body))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        with pytest.raises(expected):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

        assert len(recorder.requests) == 1

    async def test_content_policy_message(self):
        recorder = Recorder(httpx.Response(400, text='{"error": {"code": "content_policy_violation"}}'))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        with pytest.raises(ProviderInvalidRequest, match="content policy"):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

    async def test_timeout_is_transient(self):
        recorder = Recorder(error=httpx.ReadTimeout("read timed out"))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        with pytest.raises(ProviderTransient, match="timed out"):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

    async def test_connection_error_is_transient(self):
        recorder = Recorder(error=httpx.ConnectError("connection refused"))
        provider = DallEProvider("sk-test", transport=recorder.transport)

        with pytest.raises(ProviderTransient, match="network error"):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

    async def test_unreadable_body_is_transient(self):
        recorder = Recorder(images_response())
        provider = DallEProvider("sk-test", transport=recorder.transport)

        with pytest.raises(ProviderTransient):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

    async def test_missing_key_never_calls_out(self):
        recorder = Recorder(httpx.Response(200, json={}))
        provider = DallEProvider("", transport=recorder.transport)

        with pytest.raises(ProviderUnavailable):
            await provider.generate(PROMPT, parse_provider_request({"provider": "dalle"}))

        assert recorder.requests == []


@pytest.mark.asyncio
class TestStabilityProvider:
    async def test_payload_and_decoding(self):
        recorder = Recorder(httpx.Response(200, json={"artifacts": [{"base64": b64(IMAGE)}]}))
        provider = StabilityProvider("sk-stab", transport=recorder.transport)
        request = parse_provider_request(
            {"provider": "stability", "stylePreset": "anime", "negativePrompt": "text, watermark"}
        )

        image = await provider.generate(PROMPT, request)

        assert image == IMAGE
        assert recorder.requests[0].url.path.endswith("/stable-diffusion-xl-1024-v1-0/text-to-image")
        body = recorder.body()
        assert body["style_preset"] == "anime"
        assert body["text_prompts"] == [
            {"text": PROMPT, "weight": 1},
            {"text": "text, watermark", "weight": -1},
        ]

    async def test_default_negative_prompt(self):
        recorder = Recorder(httpx.Response(200, json={"artifacts": [{"base64": b64(IMAGE)}]}))
        provider = StabilityProvider("sk-stab", transport=recorder.transport)

        await provider.generate(PROMPT, parse_provider_request({"provider": "stability"}))

        assert recorder.body()["text_prompts"][1]["text"] == DEFAULT_NEGATIVE
        assert recorder.body()["style_preset"] == "pixel-art"


@pytest.mark.asyncio
class TestHuggingFaceProvider:
    async def test_returns_raw_bytes(self):
        recorder = Recorder(httpx.Response(200, content=IMAGE, headers={"content-type": "image/png"}))
        provider = HuggingFaceProvider("hf-test", transport=recorder.transport)
        request = parse_provider_request({"provider": "huggingface", "model": "prompthero/openjourney"})

        image = await provider.generate(PROMPT, request)

        assert image == IMAGE
        assert recorder.requests[0].url.path == "/models/prompthero/openjourney"
        assert recorder.body()["inputs"] == PROMPT

    async def test_loading_model_is_unavailable(self):
        recorder = Recorder(httpx.Response(200, json={"error": "Model is currently loading"}))
        provider = HuggingFaceProvider("hf-test", transport=recorder.transport)

        with pytest.raises(ProviderUnavailable):
            await provider.generate(PROMPT, parse_provider_request({"provider": "huggingface"}))


class TestProviderRegistry:
    def test_fallback_sequence_starts_with_requested(self):
        registry = ProviderRegistry.from_keys(openai_key="a", stability_key="b", huggingface_key="c")

        assert registry.fallback_sequence("huggingface") == [
            ProviderName.HUGGINGFACE,
            ProviderName.DALLE,
            ProviderName.STABILITY,
        ]
        assert registry.fallback_sequence(ProviderName.DALLE) == [
            ProviderName.DALLE,
            ProviderName.STABILITY,
            ProviderName.HUGGINGFACE,
        ]

    def test_enabled_names_follow_configured_keys(self):
        registry = ProviderRegistry.from_keys(stability_key="b")

        assert registry.enabled_names() == [ProviderName.STABILITY]
        assert registry.is_enabled("stability")
        assert not registry.is_enabled("dalle")

    def test_describe_lists_models_and_options(self):
        registry = ProviderRegistry.from_keys(openai_key="a")

        described = registry.describe()

        assert described["dalle"]["enabled"] is True
        assert described["stability"]["enabled"] is False
        assert described["dalle"]["models"] == ["dall-e-3", "dall-e-2"]
        assert described["dalle"]["options"]["quality"] == ["hd", "standard"]
        assert "pixel-art" in described["stability"]["options"]["stylePreset"]
        assert "provider" not in described["huggingface"]["options"]
