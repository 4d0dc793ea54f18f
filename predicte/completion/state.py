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

"""Active completion state.

Tracks the one suggestion currently shown in the editor so it can be
accepted piecewise (word, line, full) and kept in sync while the user edits
the document. The state is a tagged variant: either ``NO_COMPLETION`` or an
immutable ``ActiveCompletion``, replaced wholesale on every change.
"""

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from predicte.completion.protocol import AcceptGranularity, Range

logger = logging.getLogger(__name__)

_WORD_BOUNDARY = re.compile(r"[\s.,;:!?()\[\]{}]")


@dataclass(frozen=True)
class NoActiveCompletion:
    """No suggestion is shown."""

    def __bool__(self) -> bool:
        return False


NO_COMPLETION = NoActiveCompletion()


@dataclass(frozen=True)
class ActiveCompletion:
    """A suggestion shown at ``anchor`` in the document ``base_snapshot``.

    Attributes:
        original_text: Full suggestion as first shown
        remaining_text: Part not yet accepted or typed
        anchor: Offset where the remaining text would be inserted
        base_snapshot: Document text the anchor refers to
        accepted_granularity: Most recent partial acceptance
        document_id: Document the suggestion belongs to
        created_at: Clock reading when the suggestion was installed
    """

    original_text: str
    remaining_text: str
    anchor: int
    base_snapshot: str
    accepted_granularity: AcceptGranularity = AcceptGranularity.NONE
    document_id: Optional[str] = None
    created_at: float = 0.0

    @property
    def range(self) -> Range:
        return Range(self.anchor, self.anchor + len(self.remaining_text))


CompletionState = Union[NoActiveCompletion, ActiveCompletion]


@dataclass(frozen=True)
class AcceptResult:
    """Outcome of accepting part of the suggestion.

    Attributes:
        inserted_text: Text the host inserts at ``anchor``
        anchor: Insertion offset
        remaining_text: Suggestion left after the insertion, empty when done
    """

    inserted_text: str
    anchor: int
    remaining_text: str

    @property
    def complete(self) -> bool:
        return not self.remaining_text


def find_word_boundary(text: str) -> int:
    """Length of the next word, including the boundary character after it.

    Leading whitespace is skipped first. A leading punctuation or bracket
    character forms a word on its own.
    """
    start = len(text) - len(text.lstrip(" \t"))
    if start >= len(text):
        return len(text)
    match = _WORD_BOUNDARY.search(text, start)
    if match is None:
        return len(text)
    return match.end()


def find_line_boundary(text: str) -> int:
    """Length up to and including the next newline.

    A leading newline belongs to the line that follows it.
    """
    index = text.find("\n", 1 if text.startswith("\n") else 0)
    return len(text) if index == -1 else index + 1


def _common_prefix_length(a: str, b: str) -> int:
    limit = min(len(a), len(b))
    index = 0
    while index < limit and a[index] == b[index]:
        index += 1
    return index


def _common_suffix_length(a: str, b: str, limit: int) -> int:
    index = 0
    while index < limit and a[-1 - index] == b[-1 - index]:
        index += 1
    return index


class CompletionStateManager:
    """Holds the single active completion of an editor session."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_age_s: Optional[float] = None,
    ):
        """Initialize the manager.

        Args:
            clock: Monotonic clock
            max_age_s: Suggestions older than this are treated as gone
        """
        self._clock = clock
        self._max_age_s = max_age_s
        self._state: CompletionState = NO_COMPLETION

    @property
    def state(self) -> CompletionState:
        return self._state

    @property
    def has_active_completion(self) -> bool:
        return isinstance(self._state, ActiveCompletion)

    @property
    def active_range(self) -> Optional[Range]:
        if isinstance(self._state, ActiveCompletion):
            return self._state.range
        return None

    def set_completion(
        self, text: str, anchor: int, snapshot: str, document_id: Optional[str] = None
    ) -> ActiveCompletion:
        """Install a new suggestion, replacing any previous one."""
        self._state = ActiveCompletion(
            original_text=text,
            remaining_text=text,
            anchor=anchor,
            base_snapshot=snapshot,
            document_id=document_id,
            created_at=self._clock(),
        )
        return self._state

    def clear(self) -> None:
        self._state = NO_COMPLETION

    def is_valid_for(self, document_id: Optional[str]) -> bool:
        state = self._state
        if not isinstance(state, ActiveCompletion):
            return False
        if state.document_id is not None and state.document_id != document_id:
            return False
        return not self._is_stale(state)

    def accept_partial(self, granularity: AcceptGranularity) -> Optional[AcceptResult]:
        """Accept the next word, line or the rest of the suggestion.

        Returns:
            What to insert, or None if no suggestion is active
        """
        state = self._state
        if not isinstance(state, ActiveCompletion) or granularity == AcceptGranularity.NONE:
            return None

        remaining = state.remaining_text
        if granularity == AcceptGranularity.WORD:
            boundary = find_word_boundary(remaining)
        elif granularity == AcceptGranularity.LINE:
            boundary = find_line_boundary(remaining)
        else:
            boundary = len(remaining)

        inserted = remaining[:boundary]
        left = remaining[boundary:]
        result = AcceptResult(inserted_text=inserted, anchor=state.anchor, remaining_text=left)

        if not left:
            self.clear()
        else:
            snapshot = state.base_snapshot
            self._state = replace(
                state,
                remaining_text=left,
                anchor=state.anchor + len(inserted),
                base_snapshot=snapshot[: state.anchor] + inserted + snapshot[state.anchor :],
                accepted_granularity=granularity,
            )
        logger.debug(f"Accepted {granularity.value}: {len(inserted)} chars, {len(left)} left")
        return result

    def accept_word(self) -> Optional[AcceptResult]:
        return self.accept_partial(AcceptGranularity.WORD)

    def accept_line(self) -> Optional[AcceptResult]:
        return self.accept_partial(AcceptGranularity.LINE)

    def accept_full(self) -> Optional[AcceptResult]:
        return self.accept_partial(AcceptGranularity.FULL)

    def interpolate(self, new_snapshot: str) -> Optional[str]:
        """Re-anchor the suggestion after a document edit.

        The edited span is the part of the document outside the longest
        common prefix and suffix of the old and new text.

        - edit before the anchor: the anchor shifts, text is unchanged
        - edit after the suggestion's range: nothing changes
        - insertion at the anchor matching the suggestion: consumed
        - anything else touching the range: the suggestion is dropped

        Returns:
            Remaining suggestion text, or None if it no longer applies
        """
        state = self._state
        if not isinstance(state, ActiveCompletion):
            return None
        if self._is_stale(state):
            logger.debug("Dropping stale completion")
            self.clear()
            return None

        old = state.base_snapshot
        if new_snapshot == old:
            return state.remaining_text

        anchor = state.anchor
        remaining = state.remaining_text
        delta = len(new_snapshot) - len(old)

        # Typing at the anchor is ambiguous when the typed text matches a
        # neighbouring character, so test it first
        if (
            delta > 0
            and new_snapshot[:anchor] == old[:anchor]
            and new_snapshot[anchor + delta :] == old[anchor:]
        ):
            return self._consume(state, new_snapshot, new_snapshot[anchor : anchor + delta])

        start = _common_prefix_length(old, new_snapshot)
        tail = _common_suffix_length(old, new_snapshot, min(len(old), len(new_snapshot)) - start)
        old_end = len(old) - tail

        if old_end <= anchor:
            self._state = replace(state, anchor=anchor + delta, base_snapshot=new_snapshot)
            return remaining

        if start > anchor + len(remaining):
            self._state = replace(state, base_snapshot=new_snapshot)
            return remaining

        logger.debug("Edit overlaps the active completion; clearing it")
        self.clear()
        return None

    def has_conflict(self, other: Range) -> bool:
        """Check whether ``other`` overlaps the active suggestion's range."""
        range_ = self.active_range
        return range_ is not None and range_.overlaps(other)

    def _consume(self, state: ActiveCompletion, new_snapshot: str, typed: str) -> Optional[str]:
        if not state.remaining_text.startswith(typed):
            logger.debug("Typed text diverges from the completion; clearing it")
            self.clear()
            return None
        left = state.remaining_text[len(typed) :]
        if not left:
            self.clear()
            return None
        self._state = replace(
            state,
            remaining_text=left,
            anchor=state.anchor + len(typed),
            base_snapshot=new_snapshot,
        )
        return left

    def _is_stale(self, state: ActiveCompletion) -> bool:
        if self._max_age_s is None:
            return False
        return self._clock() - state.created_at > self._max_age_s
