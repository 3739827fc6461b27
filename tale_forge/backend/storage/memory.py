"""In-memory store for local development and tests (USE_LOCAL_DB=1).

Each write validates the whole unit before touching any state, under one
lock, so a failed write leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from typing import Any, Dict, List, Optional, Tuple

from tale_forge.common.errors import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from tale_forge.common.models import (
    STORY_UPDATE_FIELDS,
    AuthUser,
    CreditTransaction,
    MediaWrite,
    PersistedSegment,
    SegmentWrite,
    Story,
    StoryChoice,
    StorySegment,
    UserCredits,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._stories: Dict[str, Story] = {}
        self._credits: Dict[str, UserCredits] = {}
        self._ledger: List[CreditTransaction] = []
        self._customers: Dict[str, str] = {}
        self._tokens: Dict[str, AuthUser] = {}

    # --- local identity ------------------------------------------------------
    def register_user(
        self,
        token: str,
        user_id: str,
        *,
        email: str = "",
        balance: int = 0,
        is_admin: bool = False,
        audio_enabled: bool = False,
    ) -> AuthUser:
        user = AuthUser(id=user_id, email=email)
        self._tokens[token] = user
        self._credits[user_id] = UserCredits(
            user_id=user_id,
            current_balance=balance,
            total_earned=balance,
            is_admin=is_admin,
            audio_enabled=audio_enabled,
        )
        return user

    def user_for_token(self, token: str) -> Optional[AuthUser]:
        return self._tokens.get(token)

    # --- reads ---------------------------------------------------------------
    async def get_story(self, user_id: str, story_id: str) -> Optional[Story]:
        story = self._stories.get(story_id)
        if not story or story.user_id != user_id:
            return None
        return copy.deepcopy(story)

    async def list_stories(self, user_id: str) -> List[Story]:
        stories = [copy.deepcopy(s) for s in self._stories.values() if s.user_id == user_id]
        stories.sort(key=lambda s: s.created_at, reverse=True)
        return stories

    async def get_credits(self, user_id: str) -> Optional[UserCredits]:
        credits = self._credits.get(user_id)
        return copy.deepcopy(credits) if credits else None

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> List[CreditTransaction]:
        rows = [copy.deepcopy(t) for t in self._ledger if t.user_id == user_id]
        rows.reverse()
        return rows[:limit]

    async def get_customer_id(self, user_id: str) -> Optional[str]:
        return self._customers.get(user_id)

    # --- writes --------------------------------------------------------------
    async def delete_story(self, user_id: str, story_id: str) -> bool:
        async with self._lock:
            story = self._stories.get(story_id)
            if not story or story.user_id != user_id:
                return False
            story.segments.clear()
            del self._stories[story_id]
            return True

    async def update_story(self, user_id: str, story_id: str, changes: Dict[str, Any]) -> Story:
        unknown = set(changes) - set(STORY_UPDATE_FIELDS)
        if unknown:
            raise ValidationError("Fields cannot be updated", details={"fields": sorted(unknown)})
        async with self._lock:
            story = self._stories.get(story_id)
            if not story or story.user_id != user_id:
                raise NotFoundError("Story not found")
            for key, value in changes.items():
                setattr(story, key, value)
            return copy.deepcopy(story)

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        async with self._lock:
            self._customers[user_id] = customer_id

    def _check_charge(self, user_id: str, charge: int) -> Tuple[UserCredits, int]:
        credits = self._credits.get(user_id) or UserCredits(user_id=user_id)
        new_balance = credits.current_balance - charge
        if charge and new_balance < 0:
            raise InsufficientCreditsError(
                "Not enough credits",
                details={"balance": credits.current_balance, "cost": charge},
            )
        return credits, new_balance

    def _apply_charge(
        self, credits: UserCredits, new_balance: int, charge: int, description: str, story_id: str
    ) -> Optional[CreditTransaction]:
        if not charge:
            return None
        credits.current_balance = new_balance
        credits.total_spent += charge
        self._credits[credits.user_id] = credits
        tx = CreditTransaction(
            id=_new_id(),
            user_id=credits.user_id,
            transaction_type="spend",
            amount=-charge,
            balance_after=new_balance,
            description=description,
            reference_id=story_id,
            reference_type="story",
        )
        self._ledger.append(tx)
        return copy.deepcopy(tx)

    async def persist_segment(self, write: SegmentWrite) -> PersistedSegment:
        async with self._lock:
            if write.new_story is not None:
                if write.story_id in self._stories:
                    raise ConflictError("Story already exists")
                story = copy.deepcopy(write.new_story)
            else:
                story = self._stories.get(write.story_id)
                if not story or story.user_id != write.user_id:
                    raise NotFoundError("Story not found")
            if any(s.is_end for s in story.segments):
                raise ConflictError("Story has already ended")
            if any(s.position == write.position for s in story.segments):
                raise ConflictError(
                    "A segment already exists at this position",
                    details={"position": write.position},
                )
            chosen: Optional[StoryChoice] = None
            if write.chosen_choice_id:
                chosen = next(
                    (c for s in story.segments for c in s.choices if c.id == write.chosen_choice_id),
                    None,
                )
                if chosen is None:
                    raise ValidationError("Chosen choice does not belong to this story")
            credits, new_balance = self._check_charge(write.user_id, write.charge)

            segment_id = _new_id()
            segment = StorySegment(
                id=segment_id,
                story_id=story.id,
                content=write.content,
                position=write.position,
                provider=write.provider,
                is_end=write.is_end,
                choices=[
                    StoryChoice(id=_new_id(), segment_id=segment_id, text=text)
                    for text in write.choices
                ],
            )
            if write.new_story is not None:
                self._stories[story.id] = story
            story.segments.append(segment)
            if chosen is not None:
                chosen.next_segment_id = segment_id
            if write.completes_story:
                story.status = "completed"
            tx = self._apply_charge(
                credits, new_balance, write.charge, write.charge_description, story.id
            )
            return PersistedSegment(
                segment=copy.deepcopy(segment),
                balance=self._credits[write.user_id].current_balance
                if write.user_id in self._credits
                else None,
                transaction=tx,
            )

    async def persist_media(self, write: MediaWrite) -> PersistedSegment:
        async with self._lock:
            story = self._stories.get(write.story_id)
            if not story or story.user_id != write.user_id:
                raise NotFoundError("Story not found")
            segment = next((s for s in story.segments if s.position == write.position), None)
            if segment is None:
                raise NotFoundError("Segment not found")
            # narration already stored by a concurrent request: keep it, charge nothing
            audio_exists = write.audio_url is not None and segment.audio_url is not None
            charge = 0 if audio_exists else write.charge
            credits, new_balance = self._check_charge(write.user_id, charge)

            if write.image_url is not None:
                segment.image_url = write.image_url
                segment.image_prompt = write.image_prompt
            if write.audio_url is not None and not audio_exists:
                segment.audio_url = write.audio_url
            tx = self._apply_charge(
                credits, new_balance, charge, write.charge_description, story.id
            )
            return PersistedSegment(
                segment=copy.deepcopy(segment),
                balance=credits.current_balance,
                transaction=tx,
            )

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        *,
        description: str,
        transaction_type: str = "grant",
        reference_id: Optional[str] = None,
    ) -> UserCredits:
        if amount <= 0:
            raise ValidationError("Grant amount must be positive")
        async with self._lock:
            credits = self._credits.get(user_id) or UserCredits(user_id=user_id)
            credits.current_balance += amount
            credits.total_earned += amount
            self._credits[user_id] = credits
            self._ledger.append(
                CreditTransaction(
                    id=_new_id(),
                    user_id=user_id,
                    transaction_type=transaction_type,
                    amount=amount,
                    balance_after=credits.current_balance,
                    description=description,
                    reference_id=reference_id,
                    reference_type=transaction_type if reference_id else None,
                )
            )
            return copy.deepcopy(credits)
