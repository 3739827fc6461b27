from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------
# Story content
# -----------------------------
@dataclass
class Character:
    name: str
    description: str = ""
    role: str = ""
    traits: List[str] = field(default_factory=list)


@dataclass
class StoryChoice:
    id: str
    segment_id: str
    text: str
    next_segment_id: Optional[str] = None


@dataclass
class StorySegment:
    id: str
    story_id: str
    content: str
    position: int
    choices: List[StoryChoice] = field(default_factory=list)
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    audio_url: Optional[str] = None
    provider: Optional[str] = None
    is_end: bool = False  # closing segment, carries no choices
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Story:
    id: str
    user_id: str
    title: str
    description: str = ""
    genre: str = "fantasy"
    target_age: str = "7-9"
    status: str = "draft"  # draft | published | archived | completed
    setting: str = ""
    characters: List[Character] = field(default_factory=list)
    chapters: int = 5
    words_per_chapter: int = 200
    include_audio: bool = False
    segments: List[StorySegment] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)

    @property
    def latest_segment(self) -> Optional[StorySegment]:
        if not self.segments:
            return None
        return max(self.segments, key=lambda s: s.position)

    @property
    def next_position(self) -> int:
        latest = self.latest_segment
        return latest.position + 1 if latest else 1

    def to_dict(self, *, with_segments: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if with_segments:
            data["segments"] = sorted(data["segments"], key=lambda s: s["position"])
        else:
            data.pop("segments")
        return data


# -----------------------------
# Credits
# -----------------------------
@dataclass
class UserCredits:
    user_id: str
    current_balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    is_admin: bool = False
    audio_enabled: bool = False


@dataclass
class CreditTransaction:
    id: str
    user_id: str
    transaction_type: str  # spend | grant | purchase
    amount: int
    balance_after: int
    description: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: str = field(default_factory=utc_now)


# -----------------------------
# Identity
# -----------------------------
@dataclass
class AuthUser:
    id: str
    email: str = ""


# -----------------------------
# Generation
# -----------------------------
@dataclass
class GeneratedSegment:
    content: str
    choices: List[str]
    provider: str
    used_fallback_choices: bool = False


@dataclass
class SegmentWrite:
    """Everything the persistence writer commits as one unit."""

    user_id: str
    story_id: str
    position: int
    content: str
    choices: List[str]
    provider: str
    charge: int = 0
    charge_description: str = ""
    new_story: Optional[Story] = None  # set for the first segment only
    chosen_choice_id: Optional[str] = None
    completes_story: bool = False
    is_end: bool = False


@dataclass
class PersistedSegment:
    segment: StorySegment
    balance: Optional[int] = None
    transaction: Optional[CreditTransaction] = None


@dataclass
class MediaWrite:
    user_id: str
    story_id: str
    position: int
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    audio_url: Optional[str] = None
    charge: int = 0
    charge_description: str = ""


STORY_STATUSES = ("draft", "published", "archived", "completed")
STORY_UPDATE_FIELDS = ("title", "description", "genre", "target_age", "status")
GENRES = (
    "adventure",
    "fantasy",
    "educational",
    "bedtime",
    "humorous",
    "mystery",
    "sci-fi",
)
SAFE_WORDS_BLOCKLIST = {
    "violence": ["kill", "murder", "blood", "weapon", "gun", "knife", "gore"],
    "adult": ["alcohol", "drugs", "sex", "nude", "nudity", "bra", "bikini"],
}
