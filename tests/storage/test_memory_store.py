"""Tests for the in-memory store's all-or-nothing writes."""

import pytest

from tale_forge.common.errors import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from tale_forge.common.models import MediaWrite, SegmentWrite, Story

CHOICES = ["Open the red door", "Climb the tall tree", "Ask the owl for help"]


def _first(story_id: str = "s1", charge: int = 3, **overrides) -> SegmentWrite:
    values = dict(
        user_id="u1",
        story_id=story_id,
        position=1,
        content="Once upon a time.",
        choices=CHOICES,
        provider="openai",
        charge=charge,
        charge_description="Story creation",
        new_story=Story(id=story_id, user_id="u1", title="Kite", chapters=3),
    )
    values.update(overrides)
    return SegmentWrite(**values)


def _next(position: int = 2, **overrides) -> SegmentWrite:
    values = dict(
        user_id="u1",
        story_id="s1",
        position=position,
        content="Then the wind blew.",
        choices=CHOICES,
        provider="ovh",
    )
    values.update(overrides)
    return SegmentWrite(**values)


class TestPersistSegment:
    @pytest.mark.asyncio
    async def test_first_segment_with_charge(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        persisted = await store.persist_segment(_first())

        assert persisted.balance == 7
        assert persisted.transaction.amount == -3
        assert persisted.transaction.balance_after == 7
        assert persisted.transaction.reference_id == "s1"
        assert [c.text for c in persisted.segment.choices] == CHOICES
        assert all(c.segment_id == persisted.segment.id for c in persisted.segment.choices)

        credits = await store.get_credits("u1")
        assert (credits.current_balance, credits.total_spent) == (7, 3)

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_nothing(self, store) -> None:
        store.register_user("t", "u1", balance=2)
        with pytest.raises(InsufficientCreditsError):
            await store.persist_segment(_first())
        assert await store.get_story("u1", "s1") is None
        assert await store.list_transactions("u1") == []
        assert (await store.get_credits("u1")).current_balance == 2

    @pytest.mark.asyncio
    async def test_duplicate_position_conflicts(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        await store.persist_segment(_next())
        with pytest.raises(ConflictError):
            await store.persist_segment(_next())
        story = await store.get_story("u1", "s1")
        assert [s.position for s in story.segments] == [1, 2]

    @pytest.mark.asyncio
    async def test_links_chosen_choice(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        first = await store.persist_segment(_first())
        choice = first.segment.choices[2]
        second = await store.persist_segment(_next(chosen_choice_id=choice.id))
        story = await store.get_story("u1", "s1")
        assert story.segments[0].choices[2].next_segment_id == second.segment.id

    @pytest.mark.asyncio
    async def test_unknown_choice_rejected(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        with pytest.raises(ValidationError):
            await store.persist_segment(_next(chosen_choice_id="nope"))
        assert len((await store.get_story("u1", "s1")).segments) == 1

    @pytest.mark.asyncio
    async def test_marks_completed(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        await store.persist_segment(_next(completes_story=True))
        assert (await store.get_story("u1", "s1")).status == "completed"

    @pytest.mark.asyncio
    async def test_nothing_after_ending(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        ending = await store.persist_segment(
            _next(choices=[], is_end=True, completes_story=True, content="The End.")
        )
        assert ending.segment.is_end is True
        assert ending.segment.choices == []
        with pytest.raises(ConflictError):
            await store.persist_segment(_next(position=3))
        story = await store.get_story("u1", "s1")
        assert (story.status, len(story.segments)) == ("completed", 2)

    @pytest.mark.asyncio
    async def test_other_users_story(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        with pytest.raises(NotFoundError):
            await store.persist_segment(_next(user_id="u2"))

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        story = await store.get_story("u1", "s1")
        story.segments.clear()
        assert len((await store.get_story("u1", "s1")).segments) == 1


class TestStories:
    @pytest.mark.asyncio
    async def test_list_and_delete(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first("s1", charge=0))
        await store.persist_segment(_first("s2", charge=0))
        assert {s.id for s in await store.list_stories("u1")} == {"s1", "s2"}
        assert await store.list_stories("u2") == []

        assert await store.delete_story("u2", "s1") is False
        assert await store.delete_story("u1", "s1") is True
        assert await store.get_story("u1", "s1") is None
        assert await store.delete_story("u1", "s1") is False

    @pytest.mark.asyncio
    async def test_update_fields(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first(charge=0))
        story = await store.update_story("u1", "s1", {"title": "Blue Kite", "status": "published"})
        assert (story.title, story.status) == ("Blue Kite", "published")
        assert (await store.get_story("u1", "s1")).title == "Blue Kite"

    @pytest.mark.asyncio
    async def test_update_rejects_other_user_and_unknown_fields(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first(charge=0))
        with pytest.raises(NotFoundError):
            await store.update_story("u2", "s1", {"title": "Mine"})
        with pytest.raises(ValidationError):
            await store.update_story("u1", "s1", {"chapters": 99})
        assert (await store.get_story("u1", "s1")).chapters == 3


class TestMedia:
    @pytest.mark.asyncio
    async def test_attach_audio_with_charge(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        persisted = await store.persist_media(
            MediaWrite(user_id="u1", story_id="s1", position=1, audio_url="/media/s1/seg_1.mp3", charge=1)
        )
        assert persisted.segment.audio_url == "/media/s1/seg_1.mp3"
        assert persisted.balance == 6
        assert [t.amount for t in await store.list_transactions("u1")] == [-1, -3]

    @pytest.mark.asyncio
    async def test_second_audio_write_is_free(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        audio = MediaWrite(user_id="u1", story_id="s1", position=1, audio_url="/media/s1/seg_1.mp3", charge=1)
        await store.persist_media(audio)
        again = await store.persist_media(
            MediaWrite(user_id="u1", story_id="s1", position=1, audio_url="/elsewhere.mp3", charge=1)
        )
        assert again.transaction is None
        assert again.balance == 6
        assert again.segment.audio_url == "/media/s1/seg_1.mp3"
        assert [t.amount for t in await store.list_transactions("u1")] == [-1, -3]

    @pytest.mark.asyncio
    async def test_missing_segment(self, store) -> None:
        store.register_user("t", "u1", balance=10)
        await store.persist_segment(_first())
        with pytest.raises(NotFoundError):
            await store.persist_media(MediaWrite(user_id="u1", story_id="s1", position=9, image_url="x"))


class TestCredits:
    @pytest.mark.asyncio
    async def test_grant(self, store) -> None:
        credits = await store.grant_credits("u9", 25, description="Welcome bonus")
        assert (credits.current_balance, credits.total_earned) == (25, 25)
        ledger = await store.list_transactions("u9")
        assert ledger[0].transaction_type == "grant"
        assert ledger[0].amount == 25

    @pytest.mark.asyncio
    async def test_grant_must_be_positive(self, store) -> None:
        with pytest.raises(ValidationError):
            await store.grant_credits("u9", 0, description="nothing")

    @pytest.mark.asyncio
    async def test_transactions_newest_first(self, store) -> None:
        await store.grant_credits("u1", 5, description="first")
        await store.grant_credits("u1", 7, description="second")
        assert [t.description for t in await store.list_transactions("u1")] == ["second", "first"]
        assert len(await store.list_transactions("u1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_customer_mapping(self, store) -> None:
        assert await store.get_customer_id("u1") is None
        await store.set_customer_id("u1", "cus_123")
        assert await store.get_customer_id("u1") == "cus_123"
