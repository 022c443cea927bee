"""Prompt construction for image generation.

Builds the breed-templated base prompt shared by every provider and validates
the result before it is sent upstream.
"""

from pixelninja.services.exceptions import UnknownBreed

MAX_PROMPT_LENGTH = 1000

DEFAULT_NEGATIVE = (
    "text, letters, numbers, words, captions, labels, watermarks, signatures, blurry, low quality"
)

# Breed -> descriptive phrase inserted into the base prompt
BREED_TEMPLATES: dict[str, str] = {
    "Tabby": "striped orange tabby ninja cat with a confident grin",
    "Siamese": "sleek cream Siamese ninja cat with dark pointed ears and blue eyes",
    "Calico": "patched tricolor calico ninja cat with a playful stance",
    "Maine Coon": "large fluffy Maine Coon ninja cat with powerful paws and a lion mane",
    "Bengal": "spotted wild Bengal ninja cat, agile and ready to pounce",
    "Bombay": "sleek black Bombay ninja cat with glowing amber eyes in the shadows",
    "Persian": "fluffy round Persian ninja cat with ornate robes",
    "Sphynx": "hairless wrinkled Sphynx ninja cat with an alien, mystic aura",
    "Nyan": "rainbow pixelated Nyan ninja cat leaving a sparkling trail",
    "Shadow": "phantom Shadow ninja cat made of void mist and dark smoke",
}

KNOWN_BREEDS: frozenset[str] = frozenset(BREED_TEMPLATES)

_PROMPT_PREFIX = "32x32 pixel art sprite of a "
_PROMPT_SUFFIX = ", retro game style, limited color palette, chunky pixels, no anti-aliasing"


def normalize_breed(breed: str) -> str:
    """Map a breed string to its canonical spelling.

    Raises:
        UnknownBreed: If the breed is not in the known set
    """
    candidate = breed.strip()
    for known in BREED_TEMPLATES:
        if known.lower() == candidate.lower():
            return known
    raise UnknownBreed(f"Unknown breed: {breed!r}")


def breed_template(breed: str) -> str:
    return _PROMPT_PREFIX + BREED_TEMPLATES[normalize_breed(breed)] + _PROMPT_SUFFIX


def build_prompt(breed: str, prompt_extras: str | None = None) -> str:
    """Base prompt: ``template(breed)``, plus ``", " + extras`` when extras are given."""
    prompt = breed_template(breed)
    if prompt_extras and prompt_extras.strip():
        prompt = f"{prompt}, {prompt_extras.strip()}"
    return validate_prompt(prompt)


def build_negative_prompt(negative_prompt: str | None = None) -> str:
    if negative_prompt and negative_prompt.strip():
        return negative_prompt.strip()
    return DEFAULT_NEGATIVE


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        ValueError: If prompt is empty or exceeds 1000 characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt
