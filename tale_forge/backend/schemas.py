# tale_forge/backend/schemas.py
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tale_forge.common.models import GENRES, STORY_STATUSES
from tale_forge.common.utils import normalize_target_age


def _known_genre(v: str) -> str:
    genre = v.strip().lower()
    if genre not in GENRES:
        raise ValueError(f"genre must be one of: {', '.join(GENRES)}")
    return genre


# -------------------------------
# Requests
# -------------------------------
class CharacterReq(BaseModel):
    name: str = Field(min_length=1, max_length=60)
    description: str = Field(default="", max_length=300)
    role: str = Field(default="", max_length=60)
    traits: List[str] = Field(default_factory=list, max_length=10)
    model_config = ConfigDict(extra="forbid")


class NewSegmentReq(BaseModel):
    """First segment of a new story. Chapter/word limits are checked by the calculator."""

    mode: Literal["new"]
    title: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=1000)
    genre: str = Field(default="fantasy", min_length=1, max_length=40)
    target_age: str = Field(default="7-9", max_length=10)
    setting: str = Field(default="", max_length=300)
    characters: List[CharacterReq] = Field(default_factory=list, max_length=8)
    chapters: int = 5
    words_per_chapter: int = 200
    include_audio: bool = False
    model_config = ConfigDict(extra="forbid")

    @field_validator("genre")
    @classmethod
    def _genre(cls, v: str) -> str:
        return _known_genre(v)

    @field_validator("target_age")
    @classmethod
    def _age(cls, v: str) -> str:
        return normalize_target_age(v)


class ContinueSegmentReq(BaseModel):
    mode: Literal["continue"]
    story_id: str = Field(min_length=1, max_length=64)
    choice_index: int = Field(ge=0)
    model_config = ConfigDict(extra="forbid")


SegmentReq = Union[NewSegmentReq, ContinueSegmentReq]


class StoryUpdateReq(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=1000)
    genre: Optional[str] = Field(default=None, max_length=40)
    target_age: Optional[str] = Field(default=None, max_length=10)
    status: Optional[str] = None
    model_config = ConfigDict(extra="forbid")

    @field_validator("genre")
    @classmethod
    def _genre(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _known_genre(v)

    @field_validator("target_age")
    @classmethod
    def _age(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else normalize_target_age(v)

    @field_validator("status")
    @classmethod
    def _status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in STORY_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(STORY_STATUSES)}")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EstimateReq(BaseModel):
    chapters: int = 5
    words_per_chapter: int = 200
    include_audio: bool = False
    model_config = ConfigDict(extra="forbid")


class ImageReq(BaseModel):
    style: Optional[str] = Field(default=None, max_length=60)
    size: Optional[str] = Field(default=None, pattern=r"^(auto|\d{2,4}x\d{2,4})$")
    model_config = ConfigDict(extra="forbid")


class GrantReq(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(ge=1, le=100_000)
    description: str = Field(default="Admin grant", max_length=200)
    model_config = ConfigDict(extra="forbid")


class CheckoutReq(BaseModel):
    price_key: str = Field(min_length=1, max_length=20)
    success_url: str = Field(min_length=1, max_length=500)
    cancel_url: str = Field(min_length=1, max_length=500)
    model_config = ConfigDict(extra="forbid")


class PortalReq(BaseModel):
    return_url: str = Field(min_length=1, max_length=500)
    model_config = ConfigDict(extra="forbid")


# -------------------------------
# Responses
# -------------------------------
class SegmentOut(BaseModel):
    id: str
    position: int
    content: str
    choices: List[str]
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    is_end: bool = False


class SegmentResp(BaseModel):
    success: bool = True
    story_id: str
    segment: SegmentOut
    cost: int
    balance: Optional[int] = None
