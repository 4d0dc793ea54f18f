# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Completion candidate scoring, filtering and ranking.

Each candidate is scored along four dimensions, all in [0, 1]:

- relevance: does it fit the syntactic position at the cursor
- code quality: balanced brackets and quotes, consistent indentation, no
  placeholders
- length: is its size typical for the position (a member name after ``.``,
  a declaration after ``const``, a body after ``{``)
- language pattern: does it look like idiomatic code for the language

The overall score is a weighted sum. Scoring is pure: the same inputs always
produce the same scores.
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from predicte.completion.languages import normalize_language
from predicte.completion.protocol import Candidate, ScoreDetails
from predicte.completion.sanitizer import meaningful_chars

logger = logging.getLogger(__name__)

RELEVANCE_WEIGHT = 0.35
CODE_QUALITY_WEIGHT = 0.30
LENGTH_WEIGHT = 0.20
LANGUAGE_PATTERN_WEIGHT = 0.15

MIN_CODE_QUALITY = 0.3
MIN_RELEVANCE = 0.2
MIN_LANGUAGE_PATTERN = 0.2
MIN_MEANINGFUL_CHARS = 3

NEUTRAL_SCORE = 0.5
TERMINATED_STATEMENT_SCORE = 0.8

_IDENTIFIER = re.compile(r"^[a-zA-Z_$][a-zA-Z0-9_$]*$")
_IDENTIFIER_START = re.compile(r"^[a-zA-Z_$]")
_CALL = re.compile(r"^[a-zA-Z_$][a-zA-Z0-9_$]*\s*\(")
_PLACEHOLDER = re.compile(r"\b(TODO|FIXME|XXX)\b")
_DECLARATION = re.compile(r"\b(const|let|var|val|auto)\s+([\w$]+\s*(:[^=]*)?=\s*)?$")
_FUNCTION_START = re.compile(r"(\b(function|def|fn|func)\s*[\w$]*\s*|=>\s*)$")
_BLOCK_OPENER = re.compile(r"[{:]\s*\n[ \t]*$")

_BRACKETS = (("{", "}"), ("(", ")"), ("[", "]"))
_ALLOWED_INDENT_STEPS = (0, 2, 4, 8)

# (pattern, score) pairs; the first match wins
_LANGUAGE_PATTERNS = {
    "typescript": [
        (_IDENTIFIER, 0.9),
        (_CALL, 0.95),
        (re.compile(r"^:\s*[a-zA-Z]"), 0.85),
        (re.compile(r"^=>"), 0.9),
    ],
    "javascript": [
        (_IDENTIFIER, 0.9),
        (_CALL, 0.95),
        (re.compile(r"^=>"), 0.9),
    ],
    "python": [
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$"), 0.9),
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.]*\s*\("), 0.95),
        (re.compile(r"^(if|elif|else|for|while|def|class|with|try|except|finally)\b[^\n]*:"), 0.85),
    ],
    "java": [
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$"), 0.9),
        (re.compile(r"^[a-zA-Z]"), 0.85),
    ],
    "go": [
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$"), 0.9),
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.]*\s*\("), 0.95),
        (re.compile(r"^[a-zA-Z_][\w, ]*\s*:="), 0.9),
    ],
    "rust": [
        (re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$"), 0.9),
        (re.compile(r"^[a-zA-Z_][\w:]*!?\s*\("), 0.95),
        (re.compile(r"^let\s+(mut\s+)?\w+"), 0.9),
        (re.compile(r"^[a-zA-Z_]\w*::"), 0.85),
    ],
}
_LANGUAGE_PATTERNS["csharp"] = _LANGUAGE_PATTERNS["java"]

_STATEMENT_TERMINATORS = {
    "typescript": (";", "}"),
    "javascript": (";", "}"),
    "java": (";", "}"),
    "csharp": (";", "}"),
    "c": (";", "}"),
    "cpp": (";", "}"),
    "php": (";", "}"),
    "rust": (";", "}"),
    "go": ("}", ")"),
}


def _last_significant_char(prefix: str) -> str:
    return prefix.rstrip()[-1:]


def _current_line(prefix: str) -> str:
    return prefix.rsplit("\n", 1)[-1]


def calculate_relevance_score(candidate: str, prefix: str, suffix: str) -> float:
    stripped = candidate.strip()
    last_char = _last_significant_char(prefix)

    if last_char == ".":
        score = 0.9 if _IDENTIFIER.match(stripped) else 0.5
    elif last_char in ("(", ","):
        score = 0.85 if _IDENTIFIER_START.match(stripped) else 0.4
    else:
        score = 0.7

    following = suffix.strip()
    if following and candidate.rstrip().endswith(following[0]):
        score += 0.1

    typed = _current_line(prefix).strip()
    if len(typed) >= MIN_MEANINGFUL_CHARS and stripped.startswith(typed):
        score -= 0.3

    return min(1.0, max(0.0, score))


def _indentation_consistent(candidate: str) -> bool:
    widths = [
        len(line.expandtabs(4)) - len(line.expandtabs(4).lstrip())
        for line in candidate.split("\n")
        if line.strip()
    ]
    seen = {widths[0]} if widths else set()
    for previous, current in zip(widths, widths[1:]):
        delta = current - previous
        if delta >= 0 and delta not in _ALLOWED_INDENT_STEPS:
            return False
        if delta < 0 and -delta not in _ALLOWED_INDENT_STEPS and current not in seen:
            return False
        seen.add(current)
    return True


def calculate_code_quality_score(candidate: str) -> float:
    score = 1.0

    for open_char, close_char in _BRACKETS:
        if candidate.count(open_char) > candidate.count(close_char) + 2:
            score -= 0.2

    if "\n" in candidate.strip() and not _indentation_consistent(candidate):
        score -= 0.15

    if candidate.count('"') % 2 or candidate.count("`") % 2:
        score -= 0.1

    if _PLACEHOLDER.search(candidate):
        score -= 0.1

    return max(0.0, score)


def expected_length_band(prefix: str) -> Tuple[int, int]:
    """Typical (min, max) completion length for the syntactic position."""
    last_char = _last_significant_char(prefix)
    if last_char == ".":
        return 1, 30
    if last_char in ("(", ","):
        return 1, 50
    if _DECLARATION.search(_current_line(prefix)):
        return 5, 100
    if _FUNCTION_START.search(prefix) or _BLOCK_OPENER.search(prefix):
        return 5, 150
    return 2, 50


def calculate_length_score(candidate: str, prefix: str) -> float:
    length = len(candidate.strip())
    low, high = expected_length_band(prefix)
    if length < low:
        return length / low
    if length <= high:
        return 1.0
    return max(0.0, 1.0 - (length - high) / high)


def calculate_language_pattern_score(candidate: str, language: Optional[str]) -> float:
    if not language:
        return NEUTRAL_SCORE

    normalized = normalize_language(language)
    stripped = candidate.strip()

    for pattern, score in _LANGUAGE_PATTERNS.get(normalized, ()):
        if pattern.match(stripped):
            return score

    terminators = _STATEMENT_TERMINATORS.get(normalized)
    if terminators and stripped.endswith(terminators):
        return TERMINATED_STATEMENT_SCORE
    return NEUTRAL_SCORE


def score_completion(
    candidate: str, prefix: str, suffix: str, language: Optional[str] = None
) -> ScoreDetails:
    """Score a candidate along all dimensions.

    Args:
        candidate: Completion text
        prefix: Text before the cursor
        suffix: Text after the cursor
        language: Editor language id

    Returns:
        ScoreDetails with every dimension in [0, 1]
    """
    return ScoreDetails(
        relevance=calculate_relevance_score(candidate, prefix, suffix),
        code_quality=calculate_code_quality_score(candidate),
        length=calculate_length_score(candidate, prefix),
        language_pattern=calculate_language_pattern_score(candidate, language),
    )


def weighted_score(details: ScoreDetails) -> float:
    return (
        details.relevance * RELEVANCE_WEIGHT
        + details.code_quality * CODE_QUALITY_WEIGHT
        + details.length * LENGTH_WEIGHT
        + details.language_pattern * LANGUAGE_PATTERN_WEIGHT
    )


def score_candidate(
    text: str, index: int, prefix: str, suffix: str, language: Optional[str] = None
) -> Candidate:
    details = score_completion(text, prefix, suffix, language)
    return Candidate(text=text, index=index, details=details, score=weighted_score(details))


def is_duplicate(text: str, prefix: str, suffix: str) -> bool:
    """Check whether a candidate repeats the text right next to the cursor."""
    needle = text.strip()
    if not needle:
        return True
    return suffix.lstrip().startswith(needle) or prefix.rstrip().endswith(needle)


def passes_filters(candidate: Candidate, prefix: str, suffix: str) -> bool:
    if len(meaningful_chars(candidate.text)) < MIN_MEANINGFUL_CHARS:
        return False
    details = candidate.details
    if (
        details.code_quality < MIN_CODE_QUALITY
        or details.relevance < MIN_RELEVANCE
        or details.language_pattern < MIN_LANGUAGE_PATTERN
    ):
        return False
    return not is_duplicate(candidate.text, prefix, suffix)


def filter_candidates(
    candidates: Iterable[Candidate], prefix: str, suffix: str
) -> List[Candidate]:
    """Drop candidates that are too short, below a score floor, or duplicate
    the code around the cursor."""
    return [c for c in candidates if passes_filters(c, prefix, suffix)]


def rank_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Sort by weighted score, highest first; ties keep batch order."""
    return sorted(candidates, key=lambda c: (-c.score, c.index))


def select_best_completion(
    texts: Sequence[Optional[str]],
    prefix: str,
    suffix: str,
    language: Optional[str] = None,
    filtering: bool = True,
) -> Optional[Candidate]:
    """Pick the best candidate from a batch.

    Args:
        texts: Candidate texts in batch order; None marks a failed candidate
        prefix: Text before the cursor
        suffix: Text after the cursor
        language: Editor language id
        filtering: Apply the quality and duplicate filters

    Returns:
        The winning Candidate, or None if no candidate survives
    """
    candidates: List[Candidate] = []
    for index, text in enumerate(texts):
        if not text:
            continue
        try:
            candidates.append(score_candidate(text, index, prefix, suffix, language))
        except Exception as e:
            logger.warning(f"Failed to score candidate {index}: {e}")

    if filtering:
        candidates = filter_candidates(candidates, prefix, suffix)
    if not candidates:
        logger.debug("No completion candidate survived filtering")
        return None

    best = rank_candidates(candidates)[0]
    logger.debug(f"Selected candidate {best.index} of {len(texts)} (score {best.score:.3f})")
    return best
