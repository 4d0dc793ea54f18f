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

"""Completion protocol types.

Plain data structures shared by the completion pipeline: document snapshots,
context windows, request parameters, scored candidates and the suggestion
handed back to the editor.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class CompletionTriggerKind(str, Enum):
    """How the completion request was triggered."""

    INVOKED = "invoked"  # Explicit user command
    AUTOMATIC = "automatic"  # Typing in the editor


class AcceptGranularity(str, Enum):
    """How much of a shown suggestion has been accepted."""

    NONE = "none"
    WORD = "word"
    LINE = "line"
    FULL = "full"


@dataclass(frozen=True)
class Range:
    """Half-open span of character offsets in a document."""

    start: int
    end: int

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} precedes start {self.start}")

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def contains(self, offset: int) -> bool:
        return self.start <= offset <= self.end

    def overlaps(self, other: "Range") -> bool:
        """Check overlap, treating touching ranges as overlapping."""
        return self.start <= other.end and other.start <= self.end


@dataclass(frozen=True)
class DocumentSnapshot:
    """Immutable view of an editor document at one version."""

    text: str
    language: Optional[str] = None
    uri: Optional[str] = None
    filename: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class EnrichmentBlock:
    """Auxiliary context rendered ahead of the raw prefix.

    Attributes:
        kind: One of "file", "imports", "types" or "definitions"
        text: Rendered text including its comment header and trailing newline
    """

    kind: str
    text: str


@dataclass(frozen=True)
class ContextWindow:
    """Bounded text around the cursor sent to the completion service."""

    prefix: str
    suffix: str
    language: str = "plaintext"
    enrichment: Tuple[EnrichmentBlock, ...] = ()
    filename: Optional[str] = None
    cursor_line: int = 0

    @property
    def enrichment_text(self) -> str:
        return "".join(block.text for block in self.enrichment)

    @property
    def full_prefix(self) -> str:
        """Enrichment followed by the raw prefix."""
        return self.enrichment_text + self.prefix


@dataclass(frozen=True)
class CompletionRequestParams:
    """Parameters for a single fill-in-the-middle request."""

    model: str
    max_tokens: int
    temperature: float
    stop_sequences: Tuple[str, ...] = ()
    top_p: float = 1.0


@dataclass(frozen=True)
class ScoreDetails:
    """Per-dimension candidate scores, each in [0, 1]."""

    relevance: float
    code_quality: float
    length: float
    language_pattern: float


@dataclass
class Candidate:
    """A scored completion candidate.

    Attributes:
        text: Candidate completion text
        index: Position in the original candidate batch, used for tie-breaks
        details: Per-dimension scores
        score: Weighted overall score
    """

    text: str
    index: int
    details: ScoreDetails
    score: float


@dataclass(frozen=True)
class InlineSuggestion:
    """Suggestion returned to the editor for ghost-text rendering."""

    text: str
    range: Range
    from_cache: bool = False
    score: Optional[float] = None
