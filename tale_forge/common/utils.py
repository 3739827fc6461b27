from __future__ import annotations

import re
from typing import Optional, Tuple

from tale_forge.common.models import SAFE_WORDS_BLOCKLIST

# exact age band -> target words per segment
AGE_BAND_WORDS = {
    "3-4": "20-40",
    "4-6": "50-90",
    "7-9": "80-120",
    "10-12": "150-180",
    "7-12": "80-150",
    "5-10": "60-140",
}

# (upper age bound, word range, tier)
AGE_TIERS = (
    (4, "20-40", "toddler"),
    (6, "50-90", "young"),
    (9, "80-120", "middle"),
    (float("inf"), "120-180", "older"),
)

_RANGE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)\s*$")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def _tier_for_age(age: float) -> Tuple[str, str]:
    for bound, words, tier in AGE_TIERS:
        if age <= bound:
            return words, tier
    return AGE_TIERS[-1][1], AGE_TIERS[-1][2]


def parse_age(age_group: str) -> Optional[float]:
    """Representative age for a band: midpoint of "start-end", else a bare integer."""
    text = (age_group or "").strip()
    match = _RANGE_RE.match(text)
    if match:
        return (float(match.group(1)) + float(match.group(2))) / 2
    match = _LEADING_INT_RE.match(text)
    if match:
        return float(match.group(1))
    return None


def word_range_for_age(age_group: str) -> Optional[str]:
    if age_group in AGE_BAND_WORDS:
        return AGE_BAND_WORDS[age_group]
    age = parse_age(age_group)
    if age is None:
        return None
    return _tier_for_age(age)[0]


def age_tier(age_group: str) -> str:
    """One of toddler / young / middle / older; unknown formats land in middle."""
    age = parse_age(age_group)
    if age is None:
        return "middle"
    return _tier_for_age(age)[1]


def generate_age_group_label(age_group: str) -> str:
    if age_group in AGE_BAND_WORDS:
        return f"Ages {age_group} ({AGE_BAND_WORDS[age_group]} words)"

    text = (age_group or "").strip()
    if _RANGE_RE.match(text):
        return f"Ages {age_group} ({word_range_for_age(text)} words)"

    match = _LEADING_INT_RE.match(text)
    if match:
        age = int(match.group(1))
        return f"Age {age} ({_tier_for_age(age)[0]} words)"

    return age_group


def normalize_target_age(value: str) -> str:
    """Canonical "start-end" or single integer form; raises ValueError otherwise."""
    text = (value or "").strip()
    match = _RANGE_RE.match(text)
    if match:
        start, end = match.group(1), match.group(2)
        if "." in start or "." in end:
            raise ValueError("Age range must use whole years")
        lo, hi = int(start), int(end)
        if lo > hi:
            raise ValueError("Age range start must not exceed its end")
        if lo < 1 or hi > 18:
            raise ValueError("Ages must be between 1 and 18")
        return f"{lo}-{hi}"
    if text.isdigit():
        age = int(text)
        if age < 1 or age > 18:
            raise ValueError("Ages must be between 1 and 18")
        return str(age)
    raise ValueError("Target age must look like '7-9' or '8'")


def kid_safe_text(*texts: Optional[str]) -> Tuple[bool, str]:
    hits = []
    combined = " ".join(t for t in texts if isinstance(t, str))
    for _, words in SAFE_WORDS_BLOCKLIST.items():
        for w in words:
            term = (w or "").strip()
            if not term:
                continue
            parts = [re.escape(p) for p in term.split() if p.strip()]
            if not parts:
                continue
            pattern = r"\b" + r"\s+".join(parts) + r"\b"
            if re.search(pattern, combined, flags=re.IGNORECASE):
                hits.append(term.lower())
    if hits:
        return (
            False,
            f"Your story includes content not suitable for kids: {', '.join(sorted(set(hits)))}. Please rephrase.",
        )
    return True, ""


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
