"""Story segment generation.

One request moves through::

    RECEIVED -> VALIDATED -> COST_CALCULATED -> AFFORDABILITY_CHECKED
             -> GENERATING -> PERSISTED -> RESPONDED

ending in REJECTED when it is refused before any provider call, or FAILED when
generation or persistence breaks. Nothing is charged unless PERSISTED is
reached, because the charge is part of the persistence write.

A new story prepays every planned chapter (plus narration when asked for),
so continuations cost nothing. A story can be closed early with a free ending
segment that carries no choices; nothing can follow it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, List, Optional, Union

from tale_forge.backend.adapters.core_adapter import ProviderOrchestrator
from tale_forge.backend.adapters.prompt_builder import StoryContext
from tale_forge.backend.schemas import ContinueSegmentReq, NewSegmentReq
from tale_forge.backend.storage.store import StoryStore
from tale_forge.common.credits import (
    Affordability,
    StorySpecs,
    audio_entitled,
    calculate_total_cost,
    gate,
)
from tale_forge.common.errors import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    TaleForgeError,
    ValidationError,
)
from tale_forge.common.models import (
    AuthUser,
    Character,
    SegmentWrite,
    Story,
    StorySegment,
)
from tale_forge.common.utils import kid_safe_text, truncate_text

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    COST_CALCULATED = "cost_calculated"
    AFFORDABILITY_CHECKED = "affordability_checked"
    GENERATING = "generating"
    PERSISTED = "persisted"
    RESPONDED = "responded"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class PipelineTrace:
    states: List[PipelineState] = field(default_factory=list)

    @property
    def state(self) -> Optional[PipelineState]:
        return self.states[-1] if self.states else None

    def advance(self, state: PipelineState) -> None:
        self.states.append(state)
        logger.debug("pipeline -> %s", state.value)


@dataclass
class SegmentResult:
    story_id: str
    segment: StorySegment
    cost: int
    balance: Optional[int]
    provider: str
    used_fallback_choices: bool = False


SegmentRequest = Union[NewSegmentReq, ContinueSegmentReq]


class GenerationPipeline:
    def __init__(self, store: StoryStore, orchestrator: ProviderOrchestrator):
        self.store = store
        self.orchestrator = orchestrator

    async def run(
        self, user: AuthUser, req: SegmentRequest, *, trace: Optional[PipelineTrace] = None
    ) -> SegmentResult:
        trace = trace or PipelineTrace()
        trace.advance(PipelineState.RECEIVED)
        if isinstance(req, NewSegmentReq):
            return await self._traced(user, trace, self._new_story(user, req, trace))
        return await self._traced(user, trace, self._continue_story(user, req, trace))

    async def _traced(
        self, user: AuthUser, trace: PipelineTrace, work: Awaitable[SegmentResult]
    ) -> SegmentResult:
        try:
            result = await work
        except TaleForgeError as exc:
            generating = PipelineState.GENERATING in trace.states
            trace.advance(PipelineState.FAILED if generating else PipelineState.REJECTED)
            logger.info("Segment request for %s ended in %s: %s", user.id, trace.state.value, exc)
            raise
        except Exception:
            trace.advance(PipelineState.FAILED)
            raise
        trace.advance(PipelineState.RESPONDED)
        return result

    # --- new story -----------------------------------------------------------
    async def _new_story(
        self, user: AuthUser, req: NewSegmentReq, trace: PipelineTrace
    ) -> SegmentResult:
        characters = [
            Character(name=c.name, description=c.description, role=c.role, traits=list(c.traits))
            for c in req.characters
        ]
        ok, err = kid_safe_text(
            req.title,
            req.description,
            req.setting,
            *[f"{c.name} {c.description} {c.role} {' '.join(c.traits)}" for c in characters],
        )
        if not ok:
            raise ValidationError(err)
        trace.advance(PipelineState.VALIDATED)

        entitled = await audio_entitled(self.store, user.id) if req.include_audio else False
        specs = StorySpecs(chapters=req.chapters, words_per_chapter=req.words_per_chapter)
        calc = calculate_total_cost(specs, include_audio=req.include_audio, audio_entitled=entitled)
        trace.advance(PipelineState.COST_CALCULATED)

        affordability = await self._check_affordable(user.id, calc.total)
        charge = 0 if affordability.exempt else calc.total
        trace.advance(PipelineState.AFFORDABILITY_CHECKED)

        story = Story(
            id=str(uuid.uuid4()),
            user_id=user.id,
            title=req.title.strip(),
            description=req.description.strip(),
            genre=req.genre.strip().lower(),
            target_age=req.target_age,
            setting=req.setting.strip(),
            characters=characters,
            chapters=req.chapters,
            words_per_chapter=req.words_per_chapter,
            include_audio=req.include_audio,
        )
        trace.advance(PipelineState.GENERATING)
        generated = await self.orchestrator.generate(
            StoryContext(
                title=story.title,
                genre=story.genre,
                target_age=story.target_age,
                description=story.description,
                setting=story.setting,
                characters=characters,
                words_per_chapter=story.words_per_chapter,
                chapter_number=1,
                total_chapters=story.chapters,
            )
        )
        persisted = await self.store.persist_segment(
            SegmentWrite(
                user_id=user.id,
                story_id=story.id,
                position=1,
                content=generated.content,
                choices=generated.choices,
                provider=generated.provider,
                charge=charge,
                charge_description=f"Story creation: {truncate_text(story.title, 60)}",
                new_story=story,
                completes_story=story.chapters == 1,
            )
        )
        trace.advance(PipelineState.PERSISTED)
        logger.info("Story %s created for %s, charged %s", story.id, user.id, charge)
        return SegmentResult(
            story_id=story.id,
            segment=persisted.segment,
            cost=charge,
            balance=persisted.balance,
            provider=generated.provider,
            used_fallback_choices=generated.used_fallback_choices,
        )

    async def _check_affordable(self, user_id: str, cost: int) -> Affordability:
        affordability = await gate(self.store, user_id, cost)
        if not affordability.can_afford:
            raise InsufficientCreditsError("Not enough credits", details=affordability.as_dict())
        return affordability

    # --- continuation --------------------------------------------------------
    async def _continue_story(
        self, user: AuthUser, req: ContinueSegmentReq, trace: PipelineTrace
    ) -> SegmentResult:
        story = await self.store.get_story(user.id, req.story_id)
        if story is None:
            raise NotFoundError("Story not found")
        latest = story.latest_segment
        if latest is None:
            raise NotFoundError("Story has no segments")
        if latest.is_end:
            raise ConflictError("Story has already ended")
        if story.status == "completed" or story.next_position > story.chapters:
            raise ConflictError("Story is already complete", details={"chapters": story.chapters})
        if req.choice_index >= len(latest.choices):
            raise ValidationError(
                "Choice index out of range", details={"choices": len(latest.choices)}
            )
        choice = latest.choices[req.choice_index]
        trace.advance(PipelineState.VALIDATED)

        cost = 0
        trace.advance(PipelineState.COST_CALCULATED)
        await self._check_affordable(user.id, cost)
        trace.advance(PipelineState.AFFORDABILITY_CHECKED)

        position = story.next_position
        trace.advance(PipelineState.GENERATING)
        generated = await self.orchestrator.generate(
            StoryContext(
                title=story.title,
                genre=story.genre,
                target_age=story.target_age,
                description=story.description,
                setting=story.setting,
                characters=story.characters,
                words_per_chapter=story.words_per_chapter,
                chapter_number=position,
                total_chapters=story.chapters,
                previous_text=latest.content,
                chosen_choice=choice.text,
            )
        )
        persisted = await self.store.persist_segment(
            SegmentWrite(
                user_id=user.id,
                story_id=story.id,
                position=position,
                content=generated.content,
                choices=generated.choices,
                provider=generated.provider,
                chosen_choice_id=choice.id,
                completes_story=position >= story.chapters,
            )
        )
        trace.advance(PipelineState.PERSISTED)
        return SegmentResult(
            story_id=story.id,
            segment=persisted.segment,
            cost=cost,
            balance=persisted.balance,
            provider=generated.provider,
            used_fallback_choices=generated.used_fallback_choices,
        )

    # --- ending --------------------------------------------------------------
    async def end_story(
        self, user: AuthUser, story_id: str, *, trace: Optional[PipelineTrace] = None
    ) -> SegmentResult:
        """Write a closing segment with no choices. Endings are free."""
        trace = trace or PipelineTrace()
        trace.advance(PipelineState.RECEIVED)
        return await self._traced(user, trace, self._end_story(user, story_id, trace))

    async def _end_story(self, user: AuthUser, story_id: str, trace: PipelineTrace) -> SegmentResult:
        story = await self.store.get_story(user.id, story_id)
        if story is None:
            raise NotFoundError("Story not found")
        if story.latest_segment is None:
            raise NotFoundError("Story has no segments")
        if any(s.is_end for s in story.segments):
            raise ConflictError("Story has already ended")
        trace.advance(PipelineState.VALIDATED)

        cost = 0
        trace.advance(PipelineState.COST_CALCULATED)
        await self._check_affordable(user.id, cost)
        trace.advance(PipelineState.AFFORDABILITY_CHECKED)

        position = story.next_position
        trace.advance(PipelineState.GENERATING)
        generated = await self.orchestrator.generate_ending(
            StoryContext(
                title=story.title,
                genre=story.genre,
                target_age=story.target_age,
                description=story.description,
                setting=story.setting,
                characters=story.characters,
                words_per_chapter=story.words_per_chapter,
                chapter_number=position,
                total_chapters=story.chapters,
            ),
            [s.content for s in story.segments],
        )
        persisted = await self.store.persist_segment(
            SegmentWrite(
                user_id=user.id,
                story_id=story.id,
                position=position,
                content=generated.content,
                choices=[],
                provider=generated.provider,
                is_end=True,
                completes_story=True,
            )
        )
        trace.advance(PipelineState.PERSISTED)
        logger.info("Story %s ended for %s", story.id, user.id)
        return SegmentResult(
            story_id=story.id,
            segment=persisted.segment,
            cost=cost,
            balance=persisted.balance,
            provider=generated.provider,
        )
