"""Split a provider reply into narrative text and exactly three choices.

Accepted reply grammar, tried in order:

1. JSON object ``{"story_text": str, "choices": [str, str, str, ...]}``.
   The object may be wrapped in prose or a fenced code block; ``text``,
   ``story``, ``content`` and ``segment`` are accepted for the body.
2. Plain text. The body is everything before the choice block. The choice
   block is either introduced by a header line such as ``Choices:``,
   ``Options:`` or ``What happens next?``, or is the run of trailing lines that
   start with a list marker (``1.``, ``2)``, ``A.``, ``-``, ``*``, ``•``).

Choices are trimmed, stripped of list markers and surrounding quotes, and
kept if 5 to 100 characters long. Fewer than three usable choices, or an
empty body, gives ``Unparseable``; extra choices beyond three are dropped.

JSON that does not load (usually a reply cut off at ``max_tokens``) is
``Unparseable`` with whatever body string made it through, so the caller can
still pair it with the generic choices.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

GENERIC_CHOICES = [
    "Continue the adventure",
    "Explore a different path",
    "Try something unexpected",
]
CHOICE_COUNT = 3
MIN_CHOICE_LEN = 5
MAX_CHOICE_LEN = 100

_BODY_KEYS = ("story_text", "text", "story", "content", "segment")
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_HEADER_RE = re.compile(
    r"^\s*(?:\*\*|#+\s*)?(choices|options|what happens next)\b[^.!\n]{0,30}[:?](?:\*\*)?\s*$",
    re.IGNORECASE,
)
_MARKER_RE = re.compile(r"^\s*(?:\d+\s*[.):]|[A-Ca-c]\s*[.):]|[-*•+])\s*")
_QUOTES = "\"'`“”‘’"
# body string of a JSON reply, closing quote optional (cut off by max_tokens)
_PARTIAL_BODY_RE = re.compile(
    r'"(?:story_text|text|story|content|segment)"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL
)


@dataclass
class ParsedSegment:
    body: str
    choices: List[str]


@dataclass
class Unparseable:
    raw: str
    body: str = ""


ParseResult = Union[ParsedSegment, Unparseable]


def clean_choice(text: str) -> str:
    cleaned = _MARKER_RE.sub("", text.strip(), count=1).strip()
    cleaned = cleaned.strip("*").strip()
    if len(cleaned) >= 2 and cleaned[0] in _QUOTES and cleaned[-1] in _QUOTES:
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _usable(choices: List[Any]) -> List[str]:
    out = []
    for c in choices:
        if not isinstance(c, str):
            if isinstance(c, dict):
                c = c.get("text") or c.get("choice") or ""
            else:
                continue
        text = clean_choice(c)
        if MIN_CHOICE_LEN <= len(text) <= MAX_CHOICE_LEN:
            out.append(text)
    return out


def _json_candidates(raw: str) -> List[str]:
    candidates = [m.group(1) for m in _FENCE_RE.finditer(raw)]
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])
    return candidates


def _load_json(raw: str) -> Optional[Dict[str, Any]]:
    for candidate in _json_candidates(raw):
        try:
            data = json.loads(candidate, strict=False)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _from_json(data: Dict[str, Any], raw: str) -> ParseResult:
    body = ""
    for key in _BODY_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            body = value.strip()
            break
    choices = data.get("choices") or data.get("options") or []
    if isinstance(choices, str):
        choices = choices.splitlines()
    usable = _usable(choices) if isinstance(choices, list) else []
    if body and len(usable) >= CHOICE_COUNT:
        return ParsedSegment(body=body, choices=usable[:CHOICE_COUNT])
    return Unparseable(raw=raw, body=body)


def _from_text(raw: str) -> ParseResult:
    lines = raw.strip().splitlines()

    header_at = None
    for i, line in enumerate(lines):
        if _HEADER_RE.match(line):
            header_at = i
    if header_at is not None:
        body_lines = lines[:header_at]
        choice_lines = [l for l in lines[header_at + 1 :] if l.strip()]
    else:
        i = len(lines)
        while i > 0 and (not lines[i - 1].strip() or _MARKER_RE.match(lines[i - 1])):
            i -= 1
        body_lines = lines[:i]
        choice_lines = [l for l in lines[i:] if l.strip()]

    body = "\n".join(body_lines).strip()
    usable = _usable(choice_lines)
    if body and len(usable) >= CHOICE_COUNT:
        return ParsedSegment(body=body, choices=usable[:CHOICE_COUNT])
    return Unparseable(raw=raw, body=body)


def _partial_body(text: str) -> str:
    match = _PARTIAL_BODY_RE.search(text)
    if not match:
        return ""
    value = match.group(1)
    if value.endswith("\\") and not value.endswith("\\\\"):
        value = value[:-1]
    try:
        return json.loads(f'"{value}"', strict=False).strip()
    except ValueError:
        return value.strip()


def parse_segment(raw: str) -> ParseResult:
    text = (raw or "").strip()
    if not text:
        return Unparseable(raw=raw or "")
    data = _load_json(text)
    if data is not None:
        return _from_json(data, raw)
    # broken or truncated JSON: keep whatever story text made it through
    body = _partial_body(text)
    if body or text.startswith("{"):
        return Unparseable(raw=raw, body=body)
    return _from_text(text)
