"""Tests for tale_forge.backend.adapters.choice_parser."""

import json

from tale_forge.backend.adapters.choice_parser import (
    GENERIC_CHOICES,
    ParsedSegment,
    Unparseable,
    clean_choice,
    parse_segment,
)

CHOICES = ["Open the red door", "Climb the tall tree", "Ask the owl for help"]


# ---------------------------------------------------------------------------
# JSON replies
# ---------------------------------------------------------------------------

class TestJson:
    def test_plain_object(self) -> None:
        raw = json.dumps({"story_text": "The forest was quiet.", "choices": CHOICES})
        result = parse_segment(raw)
        assert result == ParsedSegment(body="The forest was quiet.", choices=CHOICES)

    def test_fenced_block_with_prose(self) -> None:
        raw = "Here you go!\n```json\n" + json.dumps({"text": "A cat sat.", "choices": CHOICES}) + "\n```"
        result = parse_segment(raw)
        assert isinstance(result, ParsedSegment)
        assert result.body == "A cat sat."

    def test_extra_choices_dropped(self) -> None:
        raw = json.dumps({"story": "Body.", "choices": CHOICES + ["Go back home now"]})
        assert parse_segment(raw).choices == CHOICES

    def test_choice_objects(self) -> None:
        raw = json.dumps({"story_text": "Body.", "choices": [{"text": c} for c in CHOICES]})
        assert parse_segment(raw).choices == CHOICES

    def test_too_few_choices_keeps_body(self) -> None:
        raw = json.dumps({"story_text": "Only body.", "choices": ["Run", "Open the door"]})
        result = parse_segment(raw)
        assert isinstance(result, Unparseable)
        assert result.body == "Only body."

    def test_truncated_in_choices_keeps_story_text(self) -> None:
        raw = (
            '{"story_text": "Pip the fox found a tiny glowing door under the old oak tree.", '
            '"choices": ["Knock on the'
        )
        result = parse_segment(raw)
        assert isinstance(result, Unparseable)
        assert result.body == "Pip the fox found a tiny glowing door under the old oak tree."

    def test_truncated_in_story_text(self) -> None:
        result = parse_segment('{"story_text": "Once upon a time, there was a')
        assert isinstance(result, Unparseable)
        assert result.body == "Once upon a time, there was a"

    def test_truncated_text_escapes_decoded(self) -> None:
        result = parse_segment('```json\n{"story_text": "Mia said \\"hello\\".\\nThen she\\')
        assert result.body == 'Mia said "hello".\nThen she'

    def test_broken_json_without_body(self) -> None:
        result = parse_segment('{"choices": ["Open the red door", "Climb')
        assert result == Unparseable(raw='{"choices": ["Open the red door", "Climb', body="")


# ---------------------------------------------------------------------------
# Plain-text replies
# ---------------------------------------------------------------------------

class TestText:
    def test_header_block(self) -> None:
        raw = "Mia looked at the map.\n\nWhat happens next?\n1. Open the red door\n2. Climb the tall tree\n3. Ask the owl for help"
        result = parse_segment(raw)
        assert result == ParsedSegment(body="Mia looked at the map.", choices=CHOICES)

    def test_trailing_markers_without_header(self) -> None:
        raw = "Mia looked at the map.\n- Open the red door\n- Climb the tall tree\n- Ask the owl for help"
        assert parse_segment(raw).choices == CHOICES

    def test_narrative_line_starting_with_options_is_body(self) -> None:
        raw = "Options were few, but Mia smiled.\nA. Open the red door\nB. Climb the tall tree\nC. Ask the owl for help"
        result = parse_segment(raw)
        assert isinstance(result, ParsedSegment)
        assert result.body == "Options were few, but Mia smiled."

    def test_prose_only_is_unparseable_with_body(self) -> None:
        result = parse_segment("Mia walked home and had soup.")
        assert isinstance(result, Unparseable)
        assert result.body == "Mia walked home and had soup."


def test_empty_reply() -> None:
    assert parse_segment("") == Unparseable(raw="")
    assert parse_segment("   ") == Unparseable(raw="   ")


def test_clean_choice() -> None:
    assert clean_choice('1. "Open the red door"') == "Open the red door"
    assert clean_choice("B) Climb the tall tree") == "Climb the tall tree"


def test_generic_choices() -> None:
    assert GENERIC_CHOICES == [
        "Continue the adventure",
        "Explore a different path",
        "Try something unexpected",
    ]
