"""ProviderRequest - tagged union of per-provider image options.

Each variant accepts only the options its provider understands. Unknown keys are
dropped at parse time; known keys with unsupported values are rejected.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ProviderName(str, Enum):
    """Image generation providers."""

    DALLE = "dalle"
    STABILITY = "stability"
    HUGGINGFACE = "huggingface"


# Fixed fallback sequence after the requested provider
FALLBACK_ORDER: tuple[ProviderName, ...] = (
    ProviderName.DALLE,
    ProviderName.STABILITY,
    ProviderName.HUGGINGFACE,
)


class _BaseRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    prompt_extras: Optional[str] = Field(default=None, max_length=500, alias="promptExtras")
    negative_prompt: Optional[str] = Field(default=None, max_length=500, alias="negativePrompt")


class DallERequest(_BaseRequest):
    provider: Literal["dalle"] = "dalle"
    model: Literal["dall-e-3", "dall-e-2"] = "dall-e-3"
    quality: Literal["hd", "standard"] = "hd"
    style: Literal["vivid", "natural"] = "vivid"


class StabilityRequest(_BaseRequest):
    provider: Literal["stability"] = "stability"
    model: Literal["stable-diffusion-xl-1024-v1-0"] = "stable-diffusion-xl-1024-v1-0"
    style_preset: Literal["pixel-art", "anime", "3d-model", "photographic", "digital-art"] = Field(
        default="pixel-art", alias="stylePreset"
    )


class HuggingFaceRequest(_BaseRequest):
    provider: Literal["huggingface"] = "huggingface"
    model: Literal[
        "stabilityai/stable-diffusion-xl-base-1.0",
        "prompthero/openjourney",
        "runwayml/stable-diffusion-v1-5",
    ] = "stabilityai/stable-diffusion-xl-base-1.0"


ProviderRequest = Annotated[
    Union[DallERequest, StabilityRequest, HuggingFaceRequest],
    Field(discriminator="provider"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(ProviderRequest)


def parse_provider_request(data: Any) -> ProviderRequest:
    """Validate a loose options bag into a typed provider request.

    Args:
        data: Mapping with a ``provider`` key plus provider options
            (camelCase or snake_case keys accepted)

    Returns:
        DallERequest, StabilityRequest or HuggingFaceRequest

    Raises:
        pydantic.ValidationError: Unknown provider or unsupported option value
    """
    if isinstance(data, BaseModel):
        return data  # type: ignore[return-value]
    return _adapter.validate_python(data)


def default_provider_request(provider: str | ProviderName) -> ProviderRequest:
    """Provider request with every option at its default."""
    return parse_provider_request({"provider": ProviderName(provider).value})


def request_for_provider(provider: ProviderName, base: ProviderRequest) -> ProviderRequest:
    """Re-target a request at another provider for fallback.

    Provider-specific options do not carry over; the shared prompt fields do.
    """
    if base.provider == provider.value:
        return base
    return parse_provider_request(
        {
            "provider": provider.value,
            "prompt_extras": base.prompt_extras,
            "negative_prompt": base.negative_prompt,
        }
    )
