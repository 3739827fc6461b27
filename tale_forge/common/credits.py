"""Credit pricing.

1 credit per chapter (text and illustration bundled). Audio narration is an
add-on priced at 1 credit per 100 words, rounded up, and needs an audio
entitlement. Pricing is a pure function of its inputs; only the gate helpers
at the bottom read the store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tale_forge.common.errors import ServiceUnavailableError, ValidationError

logger = logging.getLogger(__name__)

MIN_CHAPTERS = 1
MAX_CHAPTERS = 10
MIN_WORDS_PER_CHAPTER = 100
MAX_WORDS_PER_CHAPTER = 400
WORDS_PER_AUDIO_CREDIT = 100
READING_WPM = 200

PREMADE_TEMPLATE_COSTS = {
    "magical-adventure": 5,
    "space-explorer": 4,
    "pirate-treasure": 6,
    "animal-rescue": 3,
    "time-travel": 5,
    "underwater-kingdom": 4,
}


@dataclass(frozen=True)
class StorySpecs:
    chapters: int
    words_per_chapter: int

    @property
    def total_words(self) -> int:
        return self.chapters * self.words_per_chapter


@dataclass
class CreditCalculation:
    total: int
    breakdown: List[str] = field(default_factory=list)


@dataclass
class AudioCost:
    available: bool
    cost: int
    requires_subscription: bool


@dataclass
class SpecValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Affordability:
    can_afford: bool
    balance: int
    cost: int
    exempt: bool = False  # admins are never charged

    def as_dict(self) -> Dict[str, Any]:
        return {"can_afford": self.can_afford, "balance": self.balance, "cost": self.cost}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def validate_story_specs(specs: StorySpecs) -> SpecValidation:
    errors: List[str] = []
    if specs.chapters < MIN_CHAPTERS:
        errors.append(f"Must have at least {MIN_CHAPTERS} chapter")
    if specs.chapters > MAX_CHAPTERS:
        errors.append(f"Maximum {MAX_CHAPTERS} chapters allowed")
    if specs.words_per_chapter < MIN_WORDS_PER_CHAPTER:
        errors.append(f"Minimum {MIN_WORDS_PER_CHAPTER} words per chapter")
    if specs.words_per_chapter > MAX_WORDS_PER_CHAPTER:
        errors.append(f"Maximum {MAX_WORDS_PER_CHAPTER} words per chapter")
    return SpecValidation(valid=not errors, errors=errors)


def calculate_story_credits(specs: StorySpecs) -> CreditCalculation:
    total = specs.chapters
    return CreditCalculation(
        total=total,
        breakdown=[
            f"{_plural(specs.chapters, 'chapter')} = {_plural(total, 'credit')}",
            "Includes story text and images",
        ],
    )


def calculate_audio_cost(specs: StorySpecs) -> AudioCost:
    return AudioCost(
        available=True,
        cost=math.ceil(specs.total_words / WORDS_PER_AUDIO_CREDIT),
        requires_subscription=True,
    )


def audio_cost_for_text(text: str) -> int:
    words = len((text or "").split())
    return max(1, math.ceil(words / WORDS_PER_AUDIO_CREDIT))


def calculate_total_cost(
    specs: StorySpecs, *, include_audio: bool = False, audio_entitled: bool = False
) -> CreditCalculation:
    """Validate specs and price the whole story, audio included if asked.

    Raises ValidationError listing every violated rule.
    """
    check = validate_story_specs(specs)
    errors = list(check.errors)
    if include_audio and not audio_entitled:
        errors.append("Audio narration requires an active subscription")
    if errors:
        raise ValidationError("Invalid story settings", details={"errors": errors})

    story = calculate_story_credits(specs)
    if not include_audio:
        return story
    audio = calculate_audio_cost(specs)
    return CreditCalculation(
        total=story.total + audio.cost,
        breakdown=story.breakdown
        + [f"Audio narration ({specs.total_words} words) = {_plural(audio.cost, 'credit')}"],
    )


def estimate_reading_time(specs: StorySpecs) -> str:
    minutes = math.ceil(specs.total_words / READING_WPM)
    if minutes == 1:
        return "1 min read"
    if minutes < 60:
        return f"{minutes} min read"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{hours} hour read"
    return f"{hours}h {rest}m read"


def get_smart_defaults() -> StorySpecs:
    return StorySpecs(chapters=5, words_per_chapter=200)


def get_premade_template_costs() -> Dict[str, int]:
    return dict(PREMADE_TEMPLATE_COSTS)


# -----------------------------
# Affordability gate
# -----------------------------
def check_affordability(balance: int, cost: int, *, is_admin: bool = False) -> Affordability:
    return Affordability(
        can_afford=is_admin or balance >= cost, balance=balance, cost=cost, exempt=is_admin
    )


async def gate(store: Any, user_id: str, cost: int) -> Affordability:
    """Fetch the balance and compare. Fails closed on any fetch error."""
    if cost <= 0:
        return Affordability(can_afford=True, balance=0, cost=0)
    try:
        credits = await store.get_credits(user_id)
    except Exception as exc:
        logger.warning("Balance lookup failed for %s, treating as unaffordable: %s", user_id, exc)
        return Affordability(can_afford=False, balance=0, cost=cost)
    balance: Optional[int] = credits.current_balance if credits else 0
    return check_affordability(balance or 0, cost, is_admin=bool(credits and credits.is_admin))


async def audio_entitled(store: Any, user_id: str) -> bool:
    """Whether the user may buy narration. Unlike ``gate`` a failed lookup is an error."""
    try:
        credits = await store.get_credits(user_id)
    except Exception as exc:
        logger.warning("Entitlement lookup failed for %s: %s", user_id, exc)
        raise ServiceUnavailableError("Could not verify audio entitlement") from exc
    return bool(credits and (credits.audio_enabled or credits.is_admin))
