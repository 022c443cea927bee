"""Deterministic ERC-721 metadata for Pixel Ninja tokens.

Traits, combat stats and rarity are derived from sha256 hashes of
``<tokenId>-<breed>-<traitType>``, so the same token and breed always produce
the same document.
"""

import hashlib
import math
from typing import Any, NamedTuple

from pixelninja.services.image_generation.prompts import normalize_breed


class Trait(NamedTuple):
    value: str
    rarity: str
    weight: float  # higher = more common


WEAPONS = (
    Trait("Katana", "Common", 25),
    Trait("Shuriken", "Uncommon", 15),
    Trait("Nunchucks", "Rare", 10),
    Trait("Kunai", "Epic", 7),
    Trait("Sai", "Legendary", 3),
    Trait("Bo Staff", "Mythic", 2),
)

STANCES = (
    Trait("Attack", "Common", 30),
    Trait("Defense", "Common", 25),
    Trait("Stealth", "Uncommon", 15),
    Trait("Agility", "Rare", 12),
    Trait("Focus", "Epic", 8),
    Trait("Shadow", "Legendary", 5),
)

ELEMENTS = (
    Trait("Fire", "Uncommon", 18),
    Trait("Water", "Uncommon", 18),
    Trait("Earth", "Uncommon", 16),
    Trait("Wind", "Rare", 13),
    Trait("Shadow", "Epic", 6),
    Trait("Lightning", "Legendary", 4),
)

RANKS = (
    Trait("Novice", "Common", 35),
    Trait("Adept", "Uncommon", 25),
    Trait("Skilled", "Rare", 15),
    Trait("Elite", "Epic", 10),
    Trait("Master", "Legendary", 5),
    Trait("Legendary", "Mythic", 1),
)

ACCESSORIES = (
    Trait("None", "Common", 40),
    Trait("Bandana", "Common", 30),
    Trait("Mask", "Uncommon", 20),
    Trait("Scarf", "Uncommon", 18),
    Trait("Gauntlets", "Rare", 12),
    Trait("Cape", "Epic", 8),
    Trait("Ancient Amulet", "Legendary", 3),
)

TRAIT_TABLES: dict[str, tuple[Trait, ...]] = {
    "Weapon": WEAPONS,
    "Stance": STANCES,
    "Element": ELEMENTS,
    "Rank": RANKS,
    "Accessory": ACCESSORIES,
}

RARITY_SCORES = {
    "Common": 25,
    "Uncommon": 45,
    "Rare": 65,
    "Epic": 80,
    "Legendary": 90,
    "Mythic": 98,
}

# (agility, stealth, power, intelligence) bonus per trait value
_STAT_BOOSTS: dict[tuple[str, str], tuple[int, int, int, int]] = {
    ("Weapon", "Katana"): (0, 0, 15, 0),
    ("Weapon", "Shuriken"): (15, 0, 0, 0),
    ("Weapon", "Nunchucks"): (5, 0, 10, 0),
    ("Weapon", "Kunai"): (0, 15, 0, 0),
    ("Weapon", "Sai"): (0, 0, 5, 10),
    ("Weapon", "Bo Staff"): (0, 0, 5, 10),
    ("Stance", "Attack"): (0, 0, 15, 0),
    ("Stance", "Defense"): (0, 0, 5, 10),
    ("Stance", "Stealth"): (0, 15, 0, 0),
    ("Stance", "Agility"): (15, 0, 0, 0),
    ("Stance", "Focus"): (0, 0, 0, 15),
    ("Stance", "Shadow"): (0, 10, 0, 5),
    ("Element", "Fire"): (0, 0, 15, 0),
    ("Element", "Water"): (5, 0, 0, 10),
    ("Element", "Earth"): (0, 5, 10, 0),
    ("Element", "Wind"): (15, 0, 0, 0),
    ("Element", "Shadow"): (0, 15, 0, 0),
    ("Element", "Lightning"): (10, 0, 5, 0),
}

_RANK_BOOSTS = {"Novice": 0, "Adept": 3, "Skilled": 5, "Elite": 8, "Master": 12, "Legendary": 15}

STAT_NAMES = ("agility", "stealth", "power", "intelligence")


def _hash(*parts: Any) -> str:
    return hashlib.sha256("-".join(str(p) for p in parts).encode()).hexdigest()


def select_trait(table: tuple[Trait, ...], token_id: int, breed: str, trait_type: str) -> Trait:
    """Weighted pick driven by the token/breed/trait hash; squared weights sharpen rarity."""
    position = int(_hash(token_id, breed, trait_type.lower())[:8], 16) / 2**32
    total = sum(trait.weight**2 for trait in table)
    target = position * total
    cumulative = 0.0
    for trait in table:
        cumulative += trait.weight**2
        if target <= cumulative:
            return trait
    return table[0]


def generate_traits(token_id: int, breed: str) -> dict[str, Trait]:
    return {
        trait_type: select_trait(table, token_id, breed, trait_type)
        for trait_type, table in TRAIT_TABLES.items()
    }


def combat_stats(token_id: int, traits: dict[str, Trait]) -> dict[str, int]:
    """Base 50-79 per stat from the token hash, plus trait and rank boosts, capped at 100."""
    digest = _hash(token_id, "stats")
    stats = [50 + int(digest[i * 2 : i * 2 + 2], 16) % 30 for i in range(len(STAT_NAMES))]

    for trait_type, trait in traits.items():
        boost = _STAT_BOOSTS.get((trait_type, trait.value))
        if boost:
            stats = [stat + extra for stat, extra in zip(stats, boost)]

    rank_boost = _RANK_BOOSTS.get(traits["Rank"].value, 0)
    return {name: min(100, stat + rank_boost) for name, stat in zip(STAT_NAMES, stats)}


def rarity_score(traits: dict[str, Trait]) -> int:
    """Rounded mean of per-trait rarity scores (unlisted rarities count as 50)."""
    scores = [RARITY_SCORES.get(trait.rarity, 50) for trait in traits.values()]
    return math.floor(sum(scores) / len(scores) + 0.5)


def rarity_tier(score: int) -> str:
    if score >= 90:
        return "Legendary"
    if score >= 80:
        return "Epic"
    if score >= 70:
        return "Rare"
    if score >= 60:
        return "Uncommon"
    return "Common"


def build_metadata(token_id: int, breed: str, image_uri: str) -> dict[str, Any]:
    """Assemble the metadata document for a token.

    Args:
        token_id: On-chain token ID
        breed: Breed from the MintRequested event
        image_uri: ``ipfs://<imageCid>`` of the uploaded image

    Returns:
        ERC-721 metadata with ``ninja_data`` (combat stats and rarity)

    Raises:
        UnknownBreed: If the breed is not in the known set
    """
    breed = normalize_breed(breed)
    traits = generate_traits(token_id, breed)
    score = rarity_score(traits)
    tier = rarity_tier(score)

    attributes = [{"trait_type": "Breed", "value": breed}]
    attributes += [
        {"trait_type": trait_type, "value": trait.value, "rarity": trait.rarity}
        for trait_type, trait in traits.items()
    ]

    return {
        "name": f"Pixel Ninja {breed} #{token_id}",
        "description": (
            f"AI-generated pixel ninja cat. A {tier} {breed} ninja "
            f"with {traits['Weapon'].value} skills."
        ),
        "image": image_uri,
        "attributes": attributes,
        "ninja_data": {
            "combat_stats": combat_stats(token_id, traits),
            "rarity": {"score": score, "tier": tier},
        },
    }
