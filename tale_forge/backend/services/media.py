from __future__ import annotations

import logging
from typing import Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from tale_forge.backend.adapters.core_adapter import ImageGenerator, image_prompt_for_segment
from tale_forge.backend.services.tts import synthesize_tts
from tale_forge.backend.storage.files import MediaStorage
from tale_forge.backend.storage.store import StoryStore
from tale_forge.common.config import Settings
from tale_forge.common.credits import audio_cost_for_text, audio_entitled, gate
from tale_forge.common.errors import (
    InsufficientCreditsError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from tale_forge.common.models import (
    AuthUser,
    MediaWrite,
    PersistedSegment,
    Story,
    StorySegment,
)

logger = logging.getLogger(__name__)


class MediaService:
    """Illustrate or narrate one stored segment.

    Images are part of the chapter credit. Narration costs one credit per
    started hundred words unless the story prepaid audio at creation.
    """

    def __init__(
        self,
        settings: Settings,
        store: StoryStore,
        storage: MediaStorage,
        images: Optional[ImageGenerator] = None,
    ):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.images = images

    async def _segment(self, user: AuthUser, story_id: str, position: int) -> Tuple[Story, StorySegment]:
        story = await self.store.get_story(user.id, story_id)
        if story is None:
            raise NotFoundError("Story not found")
        segment = next((s for s in story.segments if s.position == position), None)
        if segment is None:
            raise NotFoundError("Segment not found")
        return story, segment

    async def illustrate(
        self,
        user: AuthUser,
        story_id: str,
        position: int,
        *,
        style: Optional[str] = None,
        size: Optional[str] = None,
    ) -> PersistedSegment:
        if self.images is None:
            raise ServiceUnavailableError("Image generation is not configured")
        story, segment = await self._segment(user, story_id, position)
        prompt = image_prompt_for_segment(segment.content, genre=story.genre, style=style or "")
        data = await self.images.generate(prompt, size=size or self.settings.image_size)
        url = await run_in_threadpool(self.storage.save_image_bytes, story.id, position, data)
        return await self.store.persist_media(
            MediaWrite(
                user_id=user.id,
                story_id=story.id,
                position=position,
                image_url=url,
                image_prompt=prompt,
            )
        )

    async def narrate(self, user: AuthUser, story_id: str, position: int) -> PersistedSegment:
        story, segment = await self._segment(user, story_id, position)
        if segment.audio_url:
            return PersistedSegment(segment=segment)

        if not story.include_audio and not await audio_entitled(self.store, user.id):
            raise ValidationError("Audio narration requires an active subscription")
        cost = 0 if story.include_audio else audio_cost_for_text(segment.content)
        affordability = await gate(self.store, user.id, cost)
        if not affordability.can_afford:
            raise InsufficientCreditsError("Not enough credits", details=affordability.as_dict())
        if affordability.exempt:
            cost = 0

        audio = await synthesize_tts(
            segment.content,
            api_key=self.settings.openai_api_key,
            model=self.settings.tts_model,
            voice=self.settings.tts_voice,
            base_url=self.settings.openai_base_url,
        )
        url = await run_in_threadpool(self.storage.save_audio_bytes, story.id, position, audio)
        persisted = await self.store.persist_media(
            MediaWrite(
                user_id=user.id,
                story_id=story.id,
                position=position,
                audio_url=url,
                charge=cost,
                charge_description=f"Audio narration: {story.title} (chapter {position})",
            )
        )
        charged = -persisted.transaction.amount if persisted.transaction else 0
        logger.info("Narrated %s/%s for %s, charged %s", story.id, position, user.id, charged)
        return persisted
