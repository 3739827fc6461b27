from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tale_forge.common.models import Character
from tale_forge.common.utils import age_tier, generate_age_group_label, word_range_for_age

JSON_STRUCTURE_OVERHEAD = 200

TIER_TOKEN_LIMITS = {"toddler": 300, "young": 300, "middle": 400, "older": 500}

TIER_TONE = {
    "toddler": (
        "very simple concepts, basic emotions like happy/sad, simple problems with clear solutions",
        "simple everyday words, very short sentences, repetitive phrases",
    ),
    "young": (
        "simple concepts, friendship and kindness, gentle problems with clear solutions",
        "simple everyday words, short sentences, familiar concepts",
    ),
    "middle": (
        "moderate concepts, friendship themes, basic problem-solving, simple moral lessons",
        "age-appropriate vocabulary, varied sentence structure, descriptive but accessible language",
    ),
    "older": (
        "more advanced themes, character growth, complex problem-solving, deeper moral lessons",
        "richer vocabulary, complex sentence structures, metaphors and descriptive language",
    ),
}

# genre -> (young guidance, older guidance)
GENRE_GUIDANCE: Dict[str, tuple] = {
    "adventure": (
        "Focus on safe, exciting discoveries and simple problem-solving. Include themes of courage and friendship.",
        "Include exciting challenges, exploration, and character growth. Balance action with learning moments.",
    ),
    "fantasy": (
        "Include gentle magic, friendly magical creatures, and wonder. Keep magic safe and positive.",
        "Incorporate magical elements, mythical creatures, and enchanting environments. Balance fantasy with relatable emotions.",
    ),
    "educational": (
        "Weave in simple learning concepts naturally. Focus on basic skills, colors, numbers, or letters.",
        "Incorporate age-appropriate educational elements like science, history, or problem-solving in an engaging way.",
    ),
    "bedtime": (
        "Create a calming, peaceful atmosphere. Use gentle language and soothing imagery. End with a sense of comfort and security.",
        "Create a calming, peaceful atmosphere. Use gentle language and soothing imagery. End with a sense of comfort and security.",
    ),
    "humorous": (
        "Include gentle humor, silly situations, and playful characters. Keep comedy light and age-appropriate.",
        "Use age-appropriate humor, funny situations, and amusing character interactions. Include wordplay if suitable.",
    ),
    "mystery": (
        "Create simple, non-scary mysteries. Focus on curiosity and gentle problem-solving.",
        "Include age-appropriate mysteries with clues and logical problem-solving. Keep suspense engaging but not frightening.",
    ),
    "sci-fi": (
        "Introduce simple technology concepts and space themes in an accessible way.",
        "Incorporate age-appropriate science fiction elements, technology, and futuristic concepts with educational value.",
    ),
}
DEFAULT_GUIDANCE = (
    "Keep the story simple, positive, and engaging with clear moral lessons.",
    "Include character development, positive values, and age-appropriate challenges.",
)

SYSTEM_PROMPT = (
    "You are an expert children's story writer. You create engaging, age-appropriate "
    "stories with positive messages.\n\n"
    "CRITICAL REQUIREMENTS:\n"
    "- Always respond with valid JSON in the exact format requested\n"
    "- Write story segments that lead naturally to the 3 choices you provide\n"
    "- Make sure choices directly relate to what happens in your story segment\n"
    "- Keep choices short (4-8 words) and easy for children to understand\n"
    "- Each choice must offer a different story direction"
)

REPLY_FORMAT = (
    "IMPORTANT: Respond with valid JSON in this exact format:\n"
    "{\n"
    '  "story_text": "Your story segment here",\n'
    '  "choices": ["Choice 1 (5-10 words)", "Choice 2 (5-10 words)", "Choice 3 (5-10 words)"]\n'
    "}"
)


@dataclass
class StoryContext:
    """What the prompt needs to know about the story so far."""

    title: str
    genre: str
    target_age: str
    description: str = ""
    setting: str = ""
    characters: List[Character] = field(default_factory=list)
    words_per_chapter: Optional[int] = None
    chapter_number: int = 1
    total_chapters: int = 1
    previous_text: Optional[str] = None
    chosen_choice: Optional[str] = None


def calculate_max_tokens(target_age: str) -> int:
    return TIER_TOKEN_LIMITS[age_tier(target_age)] + JSON_STRUCTURE_OVERHEAD


def _genre_guidance(genre: str, tier: str) -> str:
    young, older = GENRE_GUIDANCE.get((genre or "").strip().lower(), DEFAULT_GUIDANCE)
    return young if tier in {"toddler", "young"} else older


def _characters_text(characters: List[Character]) -> str:
    if not characters:
        return "a brave main character"
    parts = []
    for c in characters:
        line = c.name
        if c.description:
            line += f": {c.description}"
        if c.role:
            line += f" ({c.role})"
        if c.traits:
            line += f" [traits: {', '.join(c.traits)}]"
        parts.append(line)
    return ", ".join(parts)


def _word_target(ctx: StoryContext) -> str:
    words = word_range_for_age(ctx.target_age) or "80-120"
    if ctx.words_per_chapter:
        return f"about {ctx.words_per_chapter} words (reader band: {words} words per page)"
    return f"{words} words"


def build_user_prompt(ctx: StoryContext) -> str:
    tier = age_tier(ctx.target_age)
    complexity, vocabulary = TIER_TONE[tier]
    theme = ctx.title or ctx.description or "an adventure"
    setting = ctx.setting or "a magical place"

    prompt = (
        f"Write chapter {ctx.chapter_number} of {ctx.total_chapters} of an engaging children's "
        f"story for {generate_age_group_label(ctx.target_age)}. The story should be "
        f"{ctx.genre}-themed and focus on {theme} in {setting}. "
        f"Include the main characters: {_characters_text(ctx.characters)}.\n\n"
        "WRITING REQUIREMENTS:\n"
        f"- Length: {_word_target(ctx)}\n"
        f"- Complexity: {complexity}\n"
        f"- Language: {vocabulary}\n"
        "- End with an engaging moment that leads to choices\n"
        "- Make it age-appropriate and educational\n\n"
        f"{_genre_guidance(ctx.genre, tier)}"
    )
    if ctx.description and ctx.description != theme:
        prompt += f"\n\nStory summary: {ctx.description}"
    if ctx.previous_text:
        prompt += f"\n\nPrevious story segment: {ctx.previous_text}"
        if ctx.chosen_choice:
            prompt += f"\n\nUser chose: {ctx.chosen_choice}"
    if ctx.chapter_number >= ctx.total_chapters:
        prompt += (
            "\n\nThis is the final chapter: bring the story to a warm, satisfying ending. "
            "Still offer 3 choices describing how the reader might remember the adventure."
        )
    return f"{prompt}\n\n{REPLY_FORMAT}"


def build_messages(ctx: StoryContext) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_prompt(ctx)},
    ]


# --- endings -----------------------------------------------------------------
ENDING_SYSTEM_PROMPT = (
    "You are an expert children's story writer who creates engaging, age-appropriate "
    "stories with positive, meaningful endings."
)


def ending_max_tokens(words_per_chapter: Optional[int]) -> int:
    words = min((words_per_chapter or 120) + 30, 200)
    return min(max(math.ceil(words * 1.3), 50), 400)


def build_ending_messages(ctx: StoryContext, story_so_far: List[str]) -> List[Dict[str, str]]:
    """Prompt for a closing segment: plain prose, no choices."""
    tier = age_tier(ctx.target_age)
    complexity, vocabulary = TIER_TONE[tier]
    words = min((ctx.words_per_chapter or 120) + 30, 200)
    full_story = "\n\n".join(text for text in story_so_far if text)
    prompt = (
        f"Write the ending of the children's story \"{ctx.title}\" for "
        f"{generate_age_group_label(ctx.target_age)}. Genre: {ctx.genre or 'adventure'}. "
        f"Setting: {ctx.setting or 'a magical place'}. "
        f"Characters: {_characters_text(ctx.characters)}.\n\n"
        f"The story so far:\n{full_story}\n\n"
        "ENDING REQUIREMENTS:\n"
        f"- Length: about {words} words\n"
        f"- Complexity: {complexity}\n"
        f"- Language: {vocabulary}\n"
        "- Resolve every open storyline and leave the characters happy and safe\n"
        "- Finish with a clear, warm THE END moment\n"
        "- Do not introduce new challenges or characters\n"
        "- Do not include a title, choices, or JSON; reply with the story text only"
    )
    return [
        {"role": "system", "content": ENDING_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
