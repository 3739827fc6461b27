from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from tale_forge.common.models import (
    CreditTransaction,
    MediaWrite,
    PersistedSegment,
    SegmentWrite,
    Story,
    UserCredits,
)


class StoryStore(Protocol):
    """Persistence seam. Implementations: SupabaseStore, InMemoryStore.

    ``persist_segment`` and ``persist_media`` are all-or-nothing: either every
    row they describe (segment, choices, balance change, ledger entry) becomes
    visible, or none does.
    """

    async def get_story(self, user_id: str, story_id: str) -> Optional[Story]: ...

    async def list_stories(self, user_id: str) -> List[Story]: ...

    async def delete_story(self, user_id: str, story_id: str) -> bool: ...

    async def update_story(self, user_id: str, story_id: str, changes: Dict[str, Any]) -> Story: ...

    async def get_credits(self, user_id: str) -> Optional[UserCredits]: ...

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> List[CreditTransaction]: ...

    async def persist_segment(self, write: SegmentWrite) -> PersistedSegment: ...

    async def persist_media(self, write: MediaWrite) -> PersistedSegment:
        """Record media urls. An audio write on a segment that already has audio
        keeps the stored url and charges nothing."""
        ...

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        *,
        description: str,
        transaction_type: str = "grant",
        reference_id: Optional[str] = None,
    ) -> UserCredits: ...

    async def get_customer_id(self, user_id: str) -> Optional[str]: ...

    async def set_customer_id(self, user_id: str, customer_id: str) -> None: ...
