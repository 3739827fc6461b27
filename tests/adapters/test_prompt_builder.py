import pytest

from tale_forge.backend.adapters.prompt_builder import (
    ENDING_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    StoryContext,
    build_ending_messages,
    build_messages,
    build_user_prompt,
    calculate_max_tokens,
    ending_max_tokens,
)
from tale_forge.common.models import Character


def _ctx(**overrides) -> StoryContext:
    values = dict(title="The Lost Kite", genre="adventure", target_age="7-9", total_chapters=5)
    values.update(overrides)
    return StoryContext(**values)


@pytest.mark.parametrize(
    "age, tokens",
    [("4-6", 500), ("5", 500), ("7-9", 600), ("10-12", 700), ("unknown", 600)],
)
def test_max_tokens(age: str, tokens: int) -> None:
    assert calculate_max_tokens(age) == tokens


def test_messages_shape() -> None:
    messages = build_messages(_ctx())
    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[0]["content"] == SYSTEM_PROMPT


def test_first_chapter_prompt() -> None:
    prompt = build_user_prompt(
        _ctx(characters=[Character(name="Leo", description="a curious boy", traits=["brave"])])
    )
    assert "chapter 1 of 5" in prompt
    assert "Ages 7-9 (80-120 words)" in prompt
    assert "Leo: a curious boy [traits: brave]" in prompt
    assert '"story_text"' in prompt
    assert "Previous story segment" not in prompt


def test_continuation_prompt() -> None:
    prompt = build_user_prompt(
        _ctx(chapter_number=2, previous_text="Leo saw the kite fly away.", chosen_choice="Chase the kite")
    )
    assert "Previous story segment: Leo saw the kite fly away." in prompt
    assert "User chose: Chase the kite" in prompt


def test_final_chapter_note() -> None:
    assert "final chapter" in build_user_prompt(_ctx(chapter_number=5))
    assert "final chapter" not in build_user_prompt(_ctx(chapter_number=4))


def test_unknown_genre_uses_default_guidance() -> None:
    prompt = build_user_prompt(_ctx(genre="cooking"))
    assert "character development, positive values" in prompt


@pytest.mark.parametrize("words, tokens", [(None, 195), (20, 65), (200, 260), (1000, 260)])
def test_ending_max_tokens(words, tokens: int) -> None:
    assert ending_max_tokens(words) == tokens


def test_ending_prompt() -> None:
    messages = build_ending_messages(
        _ctx(words_per_chapter=100), ["Leo lost his kite.", "", "The owl pointed north."]
    )
    assert messages[0] == {"role": "system", "content": ENDING_SYSTEM_PROMPT}
    prompt = messages[1]["content"]
    assert "Leo lost his kite.\n\nThe owl pointed north." in prompt
    assert "about 130 words" in prompt
    assert "THE END" in prompt
    assert "JSON" in prompt
    assert "story_text" not in prompt
