"""Image provider clients and the registry that selects between them.

Each provider turns a prompt plus its typed request options into raw image bytes,
classifying every failure into the ProviderError kinds the stage executor acts on.
"""

import base64
from abc import ABC, abstractmethod
from typing import Any, get_args

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from pixelninja.models.provider_request import (
    FALLBACK_ORDER,
    DallERequest,
    HuggingFaceRequest,
    ProviderName,
    ProviderRequest,
    StabilityRequest,
)
from pixelninja.services.exceptions import (
    ProviderInvalidRequest,
    ProviderRateLimited,
    ProviderTransient,
    ProviderUnavailable,
)
from pixelninja.services.image_generation.prompts import build_negative_prompt

logger = structlog.get_logger()

_CONTENT_POLICY_MARKERS = ("content policy", "content_policy", "nsfw", "safety")


def classify_response(provider: ProviderName, response: httpx.Response) -> Exception | None:
    """Map a non-success HTTP response to a provider error.

    Classification rules:
        - 429 → ProviderRateLimited
        - 502, 503 → ProviderUnavailable
        - other 5xx → ProviderTransient
        - content policy wording → ProviderInvalidRequest
        - any other 4xx → ProviderInvalidRequest

    Returns:
        Exception to raise, or None for a 2xx response
    """
    status = response.status_code
    if status < 400:
        return None

    label = f"{provider.value} returned {status}"
    if status == 429:
        return ProviderRateLimited(f"{label}: rate limit exceeded")
    if status in (502, 503):
        return ProviderUnavailable(f"{label}: service unavailable")
    if status >= 500:
        return ProviderTransient(f"{label}: {response.text[:200]}")

    body = response.text.lower()
    if any(marker in body for marker in _CONTENT_POLICY_MARKERS):
        return ProviderInvalidRequest(f"{label}: content policy violation")
    return ProviderInvalidRequest(f"{label}: {response.text[:200]}")


class ImageProvider(ABC):
    """Capability set shared by all providers: generate, describe_options, supported_models."""

    name: ProviderName
    request_type: type

    def __init__(
        self,
        api_key: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider client.

        Args:
            api_key: Provider credential; an empty key disables the provider
            timeout: HTTP timeout per request in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def supported_models(self) -> list[str]:
        return list(get_args(self.request_type.model_fields["model"].annotation))

    def describe_options(self) -> dict[str, list[str]]:
        """Allowed values of every enumerated option, keyed by its wire name."""
        options: dict[str, list[str]] = {}
        for field_name, field in self.request_type.model_fields.items():
            if field_name == "provider":
                continue
            allowed = get_args(field.annotation)
            if allowed and all(isinstance(value, str) for value in allowed):
                options[field.alias or field_name] = list(allowed)
        return options

    @abstractmethod
    async def generate(self, prompt: str, request: ProviderRequest) -> bytes:
        """Generate one image.

        Args:
            prompt: Validated base prompt
            request: Typed options for this provider

        Returns:
            Raw image bytes

        Raises:
            ProviderRateLimited, ProviderTransient, ProviderUnavailable, ProviderInvalidRequest
        """

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if not self.enabled:
            raise ProviderUnavailable(f"{self.name.value} is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransient(f"{self.name.value} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderTransient(f"{self.name.value} network error: {e}") from e

        error = classify_response(self.name, response)
        if error is not None:
            logger.warning(
                "provider.request_failed",
                provider=self.name.value,
                status_code=response.status_code,
                error_type=type(error).__name__,
            )
            raise error
        return response


class DallEProvider(ImageProvider):
    """OpenAI image generation (DALL-E 2 and 3) through the official SDK."""

    name = ProviderName.DALLE
    request_type = DallERequest

    def _client(self) -> AsyncOpenAI:
        # The executor owns retries, so the SDK makes exactly one request
        http_client = (
            httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            if self._transport is not None
            else None
        )
        return AsyncOpenAI(
            api_key=self.api_key, timeout=self.timeout, max_retries=0, http_client=http_client
        )

    async def generate(self, prompt: str, request: ProviderRequest) -> bytes:
        if not self.enabled:
            raise ProviderUnavailable(f"{self.name.value} is not configured")

        options: dict[str, Any] = {}
        # quality and style exist on dall-e-3 only
        if request.model == "dall-e-3":
            options = {"quality": request.quality, "style": request.style}

        try:
            async with self._client() as client:
                result = await client.images.generate(
                    model=request.model,
                    prompt=prompt,
                    n=1,
                    size="1024x1024",
                    response_format="b64_json",
                    **options,
                )
        except openai.RateLimitError as e:
            logger.warning(
                "provider.request_failed",
                provider=self.name.value,
                status_code=e.status_code,
                error_type=ProviderRateLimited.__name__,
            )
            raise ProviderRateLimited(f"{self.name.value} returned 429: rate limit exceeded") from e
        except openai.APIStatusError as e:
            error = classify_response(self.name, e.response)
            logger.warning(
                "provider.request_failed",
                provider=self.name.value,
                status_code=e.status_code,
                error_type=type(error).__name__,
            )
            raise error from e
        except openai.APITimeoutError as e:
            raise ProviderTransient(f"{self.name.value} request timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise ProviderTransient(f"{self.name.value} network error: {e}") from e

        try:
            return base64.b64decode(result.data[0].b64_json)
        except (TypeError, IndexError, ValueError) as e:
            raise ProviderTransient(f"dalle returned an unreadable body: {e}") from e


class StabilityProvider(ImageProvider):
    """Stability AI text-to-image."""

    name = ProviderName.STABILITY
    request_type = StabilityRequest
    base_url = "https://api.stability.ai/v1/generation"

    async def generate(self, prompt: str, request: ProviderRequest) -> bytes:
        payload = {
            "text_prompts": [
                {"text": prompt, "weight": 1},
                {"text": build_negative_prompt(request.negative_prompt), "weight": -1},
            ],
            "cfg_scale": 9.5,
            "steps": 40,
            "width": 1024,
            "height": 1024,
            "samples": 1,
            "style_preset": request.style_preset,
        }
        response = await self._post(
            f"{self.base_url}/{request.model}/text-to-image",
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
            json=payload,
        )
        try:
            return base64.b64decode(response.json()["artifacts"][0]["base64"])
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderTransient(f"stability returned an unreadable body: {e}") from e


class HuggingFaceProvider(ImageProvider):
    """HuggingFace hosted inference; the response body is the image itself."""

    name = ProviderName.HUGGINGFACE
    request_type = HuggingFaceRequest
    base_url = "https://api-inference.huggingface.co/models"

    async def generate(self, prompt: str, request: ProviderRequest) -> bytes:
        payload = {
            "inputs": prompt,
            "parameters": {
                "guidance_scale": 8.5,
                "num_inference_steps": 50,
                "negative_prompt": build_negative_prompt(request.negative_prompt),
            },
        }
        response = await self._post(
            f"{self.base_url}/{request.model}",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=payload,
        )
        # A cold model answers 200 with a JSON status instead of an image
        if response.headers.get("content-type", "").startswith("application/json"):
            raise ProviderUnavailable("huggingface model is still loading")
        return response.content


class ProviderRegistry:
    """Lookup of configured providers plus the fallback sequence."""

    def __init__(self, providers: list[ImageProvider]):
        self._providers = {provider.name: provider for provider in providers}

    @classmethod
    def from_keys(
        cls,
        openai_key: str = "",
        stability_key: str = "",
        huggingface_key: str = "",
        timeout: float = 120.0,
    ) -> "ProviderRegistry":
        return cls(
            [
                DallEProvider(openai_key, timeout=timeout),
                StabilityProvider(stability_key, timeout=timeout),
                HuggingFaceProvider(huggingface_key, timeout=timeout),
            ]
        )

    def get(self, name: ProviderName | str) -> ImageProvider | None:
        return self._providers.get(ProviderName(name))

    def is_enabled(self, name: ProviderName | str) -> bool:
        provider = self.get(name)
        return provider is not None and provider.enabled

    def enabled_names(self) -> list[ProviderName]:
        return [name for name in FALLBACK_ORDER if self.is_enabled(name)]

    def fallback_sequence(self, requested: ProviderName | str) -> list[ProviderName]:
        """Requested provider first, then the fixed order, each provider once."""
        sequence = [ProviderName(requested)]
        for name in FALLBACK_ORDER:
            if name not in sequence:
                sequence.append(name)
        return sequence

    def describe(self) -> dict[str, dict[str, Any]]:
        return {
            name.value: {
                "enabled": provider.enabled,
                "models": provider.supported_models(),
                "options": provider.describe_options(),
            }
            for name, provider in self._providers.items()
        }
