"""Heuristic detection of questions at the end of assistant replies.

Classification is approximate: an ordered list of regex predicates is applied
to the tail of the reply and the first match wins. It will misfire on some
replies (e.g. a bulleted summary followed by "Anything else?" reads as a
multiple-choice question); callers treat the result as a best-effort hint.
"""

from __future__ import annotations

import re
from typing import Callable, List, Optional, Sequence, Tuple

from ..domain.session_models import DetectedQuestion, QuestionType

DEFAULT_TAIL_LINES = 10

_NUMBERED = re.compile(r"^\s*\d+[.)]\s+(?P<text>\S.*)$")
_LETTERED = re.compile(r"^\s*[A-Za-z][.)]\s+(?P<text>\S.*)$")
_BULLETED = re.compile(r"^\s*[-*•]\s+(?P<text>\S.*)$")
_OPTION_PATTERNS = (_NUMBERED, _LETTERED, _BULLETED)

_CHOICE_PHRASES = re.compile(
    r"\b(choose one|choose from|select an option|select one|pick one|which of the following)\b",
    re.IGNORECASE,
)
_CONFIRMATION_PHRASES = re.compile(
    r"(\bare you sure\b|\bconfirm|\bproceed\b|\bcontinue\b|\bis (this|that) (ok|okay|correct|right)\b)",
    re.IGNORECASE,
)
_YES_NO_PHRASES = re.compile(
    r"(\byes\s*/\s*no\b|\by\s*/\s*n\b|\b(yes|no)\b.*\?|\bdo you (want|wish|need)\b|\bwould you like\b"
    r"|\bshould (i|we)\b|\bare you ready\b)",
    re.IGNORECASE,
)


def _tail(text: str, size: int) -> List[str]:
    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    return lines[-size:] if size > 0 else lines


def _option_text(line: str) -> Optional[str]:
    for pattern in _OPTION_PATTERNS:
        match = pattern.match(line)
        if match:
            return match.group("text").strip()
    return None


def extract_options(lines: Sequence[str]) -> List[str]:
    """Return list-item texts in order with their numbering/bullet stripped."""
    options: List[str] = []
    for line in lines:
        option = _option_text(line)
        if option:
            options.append(option)
    return options


def _is_multiple_choice(lines: Sequence[str], joined: str) -> bool:
    return bool(extract_options(lines)) or bool(_CHOICE_PHRASES.search(joined))


def _is_confirmation(lines: Sequence[str], joined: str) -> bool:
    return bool(_CONFIRMATION_PHRASES.search(joined))


def _is_yes_no(lines: Sequence[str], joined: str) -> bool:
    return bool(_YES_NO_PHRASES.search(joined))


def _is_free_text(lines: Sequence[str], joined: str) -> bool:
    return "?" in joined


# Evaluated in order; the first predicate that matches decides the type.
RULES: Tuple[Tuple[QuestionType, Callable[[Sequence[str], str], bool]], ...] = (
    (QuestionType.MULTIPLE_CHOICE, _is_multiple_choice),
    (QuestionType.CONFIRMATION, _is_confirmation),
    (QuestionType.YES_NO, _is_yes_no),
    (QuestionType.FREE_TEXT, _is_free_text),
)


def question_text(lines: Sequence[str]) -> str:
    for line in reversed(lines):
        if "?" in line:
            return line.strip()
    for line in reversed(lines):
        if line.strip():
            return line.strip()
    return ""


def classify(lines: Sequence[str]) -> Optional[QuestionType]:
    joined = "\n".join(lines)
    for question_type, predicate in RULES:
        if predicate(lines, joined):
            return question_type
    return None


def detect(text: str, tail_lines: int = DEFAULT_TAIL_LINES) -> Optional[DetectedQuestion]:
    """Return the question posed at the end of ``text``, if any.

    Pure and deterministic: identical input always yields an equal result.
    """
    if not text or "?" not in text:
        return None
    lines = _tail(text, tail_lines)
    question_type = classify(lines)
    if question_type is None:
        return None
    options = extract_options(lines) if question_type == QuestionType.MULTIPLE_CHOICE else None
    return DetectedQuestion(
        question=question_text(lines),
        question_type=question_type,
        options=options,
    )


class QuestionDetector:
    """Callable wrapper carrying the configured tail window."""

    def __init__(self, tail_lines: int = DEFAULT_TAIL_LINES) -> None:
        self.tail_lines = tail_lines

    def __call__(self, text: str) -> Optional[DetectedQuestion]:
        return detect(text, self.tail_lines)
