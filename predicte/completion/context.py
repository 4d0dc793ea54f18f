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

"""Context window extraction.

Builds the bounded prefix/suffix pair around the cursor that is sent to the
completion service, optionally preceded by enrichment: the file name, the
document's imports, nearby type declarations and the signatures enclosing
the cursor. All limits are enforced here so that the client never has to
re-check them:

- the prefix keeps ``ceil(0.6 * context_lines)`` lines ending at the cursor,
  the suffix the remaining lines starting at it
- the prefix (enrichment included) stays within 60% of ``max_bytes`` and the
  suffix within 40%, counted in UTF-8 bytes
- truncation always removes the text furthest from the cursor first
"""

import logging
import math
import re
from typing import List, Optional, Sequence, Tuple

from predicte.completion.config import CompletionConfig
from predicte.completion.languages import PLAINTEXT, comment_line, line_comment_token
from predicte.completion.protocol import ContextWindow, EnrichmentBlock

logger = logging.getLogger(__name__)

PREFIX_RATIO = 0.6
MAX_IMPORT_SCAN_LINES = 50
MAX_TYPE_DECLARATIONS = 10
MAX_ENCLOSING_SIGNATURES = 3

IMPORT_PATTERNS = [
    re.compile(r"^\s*import\s"),
    re.compile(r"^\s*from\s+\S+\s+import\s"),
    re.compile(r"^\s*(export\s+)?(const|let|var)\s+.*=\s*require\("),
    re.compile(r"^\s*#\s*include\s"),
    re.compile(r"^\s*(pub\s+)?use\s+[\w:{}, *]+;"),
    re.compile(r"^\s*using\s+[\w.=\s]+;"),
    re.compile(r"^\s*package\s+[\w.]+"),
    re.compile(r"^\s*require(_relative)?[\s(]+['\"]"),
    re.compile(r"^\s*@import\s"),
]

SIGNATURE_PATTERNS = [
    re.compile(r"^\s*(async\s+)?def\s+\w+"),
    re.compile(r"^\s*(export\s+)?(default\s+)?(abstract\s+)?class\s+\w+"),
    re.compile(r"^\s*(export\s+)?(default\s+)?(async\s+)?function\b"),
    re.compile(r"^\s*(export\s+)?(const|let|var)\s+[\w$]+\s*=\s*(async\s+)?(\([^)]*\)|[\w$]+)\s*=>"),
    re.compile(r"^\s*(pub(\([\w:]+\))?\s+)?(async\s+)?(unsafe\s+)?fn\s+\w+"),
    re.compile(r"^\s*func\s+"),
    re.compile(r"^\s*impl\b"),
    re.compile(r"^\s*(pub\s+)?(struct|trait|enum)\s+\w+"),
    re.compile(r"^\s*(export\s+)?interface\s+\w+"),
    re.compile(
        r"^\s*((public|private|protected|internal|static|final|abstract|override|virtual|async)\s+)+"
        r"[\w<>\[\],.?]+\s+\w+\s*\("
    ),
    re.compile(r"^\s*module\s+\w+"),
]

TYPE_PATTERNS = [
    re.compile(r"^\s*(export\s+)?(declare\s+)?(interface|type|enum)\s+\w+"),
    re.compile(r"^\s*(pub(\([\w:]+\))?\s+)?(struct|enum|trait|type)\s+\w+"),
    re.compile(
        r"^\s*((public|private|protected|internal|abstract|final|sealed|static)\s+)*"
        r"(class|record|interface|enum)\s+\w+"
    ),
    re.compile(r"^\s*(export\s+)?(abstract\s+)?class\s+\w+"),
]


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _keep_tail(text: str, budget: int) -> str:
    """Keep the end of ``text`` within ``budget`` bytes, dropping whole
    leading lines first."""
    if budget <= 0:
        return ""
    if _byte_len(text) <= budget:
        return text

    lines = text.split("\n")
    kept: List[str] = []
    used = 0
    for line in reversed(lines):
        cost = _byte_len(line) + (1 if kept else 0)
        if used + cost > budget:
            break
        kept.append(line)
        used += cost

    if not kept:
        # The cursor line alone is over budget: keep its trailing bytes
        tail = lines[-1].encode("utf-8")[-budget:]
        return tail.decode("utf-8", errors="ignore")
    return "\n".join(reversed(kept))


def _keep_head(text: str, budget: int) -> str:
    """Keep the start of ``text`` within ``budget`` bytes, dropping whole
    trailing lines first."""
    if budget <= 0:
        return ""
    if _byte_len(text) <= budget:
        return text

    lines = text.split("\n")
    kept: List[str] = []
    used = 0
    for line in lines:
        cost = _byte_len(line) + (1 if kept else 0)
        if used + cost > budget:
            break
        kept.append(line)
        used += cost

    if not kept:
        head = lines[0].encode("utf-8")[:budget]
        return head.decode("utf-8", errors="ignore")
    return "\n".join(kept)


def _indent_width(line: str) -> int:
    return len(get_indentation(line).expandtabs(4))


def _matches(patterns: Sequence[re.Pattern], line: str) -> bool:
    return any(pattern.match(line) for pattern in patterns)


def extract_imports(
    lines: Sequence[str], cursor_line: int, max_scan: int = MAX_IMPORT_SCAN_LINES
) -> List[Tuple[int, str]]:
    """Collect import-like statements from the top of a document.

    Scanning stops at the cursor line, after ``max_scan`` lines, or at two
    consecutive blank lines once non-import code has been seen.

    Returns:
        (line index, line text) pairs in document order
    """
    imports: List[Tuple[int, str]] = []
    seen_code = False
    blank_run = 0

    for index in range(min(cursor_line, max_scan, len(lines))):
        line = lines[index]
        if not line.strip():
            blank_run += 1
            if seen_code and blank_run >= 2:
                break
            continue
        blank_run = 0
        if _matches(IMPORT_PATTERNS, line):
            imports.append((index, line.rstrip()))
        else:
            seen_code = True

    return imports


def extract_enclosing_signatures(
    lines: Sequence[str], cursor_line: int, max_signatures: int = MAX_ENCLOSING_SIGNATURES
) -> List[Tuple[int, str]]:
    """Find the function/class signatures enclosing the cursor line.

    Walks upwards tracking the smallest indentation seen so far; a signature
    line indented less than everything below it encloses the cursor.

    Returns:
        (line index, line text) pairs, outermost first
    """
    if cursor_line >= len(lines):
        return []

    threshold = _indent_width(lines[cursor_line])
    signatures: List[Tuple[int, str]] = []

    for index in range(cursor_line - 1, -1, -1):
        if threshold == 0 or len(signatures) >= max_signatures:
            break
        line = lines[index]
        if not line.strip():
            continue
        width = _indent_width(line)
        if width >= threshold:
            continue
        threshold = width
        if _matches(SIGNATURE_PATTERNS, line):
            signatures.append((index, line.rstrip()))

    signatures.reverse()
    return signatures


def extract_type_declarations(
    lines: Sequence[str],
    start_line: int,
    end_line: int,
    max_declarations: int = MAX_TYPE_DECLARATIONS,
) -> List[Tuple[int, str]]:
    """Collect type declaration lines in ``[start_line, end_line)``, keeping
    the ones nearest to ``end_line``."""
    found: List[Tuple[int, str]] = []
    for index in range(min(end_line, len(lines)) - 1, max(start_line, 0) - 1, -1):
        line = lines[index]
        if _matches(TYPE_PATTERNS, line):
            found.append((index, line.rstrip()))
            if len(found) >= max_declarations:
                break
    found.reverse()
    return found


class ContextExtractor:
    """Extracts bounded context windows around the cursor."""

    def __init__(
        self,
        context_lines: int = 50,
        max_bytes: int = 32000,
        enrichment_enabled: bool = True,
    ):
        if context_lines < 1:
            raise ValueError("context_lines must be at least 1")
        self.context_lines = context_lines
        self.max_bytes = max_bytes
        self.enrichment_enabled = enrichment_enabled

    @classmethod
    def from_config(cls, config: CompletionConfig) -> "ContextExtractor":
        return cls(
            context_lines=config.context_lines,
            max_bytes=config.context_max_bytes,
            enrichment_enabled=config.enhanced_context_enabled,
        )

    @property
    def prefix_lines(self) -> int:
        return max(1, math.ceil(self.context_lines * PREFIX_RATIO))

    @property
    def suffix_lines(self) -> int:
        return max(1, self.context_lines - self.prefix_lines)

    @property
    def prefix_budget(self) -> int:
        return int(self.max_bytes * PREFIX_RATIO)

    @property
    def suffix_budget(self) -> int:
        return self.max_bytes - self.prefix_budget

    def extract(
        self,
        text: str,
        cursor_offset: int,
        language: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> ContextWindow:
        """Extract the context window for a cursor position.

        Args:
            text: Full document text
            cursor_offset: Cursor position as a character offset; clamped to
                the document
            language: Editor language id
            filename: Document file name, used for the file header block

        Returns:
            ContextWindow within the configured line and byte budgets
        """
        text = text or ""
        language = language or PLAINTEXT
        offset = min(max(cursor_offset, 0), len(text))

        before = text[:offset]
        after = text[offset:]
        cursor_line = before.count("\n")

        prefix = "\n".join(before.split("\n")[-self.prefix_lines :])
        suffix = "\n".join(after.split("\n")[: self.suffix_lines])
        prefix = _keep_tail(prefix, self.prefix_budget)
        suffix = _keep_head(suffix, self.suffix_budget)

        enrichment: Tuple[EnrichmentBlock, ...] = ()
        if self.enrichment_enabled and text:
            first_prefix_line = cursor_line - prefix.count("\n")
            blocks = self._build_enrichment(
                text.split("\n"), cursor_line, first_prefix_line, language, filename
            )
            enrichment = self._fit_enrichment(blocks, self.prefix_budget - _byte_len(prefix))

        return ContextWindow(
            prefix=prefix,
            suffix=suffix,
            language=language,
            enrichment=enrichment,
            filename=filename,
            cursor_line=cursor_line,
        )

    def _build_enrichment(
        self,
        lines: List[str],
        cursor_line: int,
        first_prefix_line: int,
        language: str,
        filename: Optional[str],
    ) -> List[EnrichmentBlock]:
        blocks: List[EnrichmentBlock] = []
        if filename:
            header = comment_line(language, f"File: {filename} ({language})")
            blocks.append(EnrichmentBlock("file", header + "\n"))

        # Only lines above the raw prefix window, which already carries the rest
        imports = [
            (i, line) for i, line in extract_imports(lines, cursor_line) if i < first_prefix_line
        ]
        signatures = [
            (i, line)
            for i, line in extract_enclosing_signatures(lines, cursor_line)
            if i < first_prefix_line
        ]
        taken = {i for i, _ in imports} | {i for i, _ in signatures}
        types = [
            (i, line)
            for i, line in extract_type_declarations(
                lines, cursor_line - self.context_lines, first_prefix_line
            )
            if i not in taken
        ]

        for kind, title, entries in (
            ("imports", "Imports:", imports),
            ("types", "Types:", types),
            ("definitions", "Definitions:", signatures),
        ):
            if entries:
                body = "\n".join(line for _, line in entries)
                blocks.append(EnrichmentBlock(kind, f"{comment_line(language, title)}\n{body}\n"))
        return blocks

    @staticmethod
    def _fit_enrichment(
        blocks: List[EnrichmentBlock], budget: int
    ) -> Tuple[EnrichmentBlock, ...]:
        # Blocks are ordered most distant first; keep the closest ones that fit
        kept: List[EnrichmentBlock] = []
        used = 0
        for block in reversed(blocks):
            cost = _byte_len(block.text)
            if used + cost > budget:
                logger.debug(f"Dropped {len(blocks) - len(kept)} enrichment blocks over budget")
                break
            kept.append(block)
            used += cost
        kept.reverse()
        return tuple(kept)


def get_indentation(line: str) -> str:
    """Leading whitespace of a line."""
    return line[: len(line) - len(line.lstrip(" \t"))]


def is_inside_string(line: str, position: int) -> bool:
    """Check whether ``position`` in ``line`` falls inside a string literal.

    Handles single, double and backtick quotes and backslash escapes.
    """
    in_single = in_double = in_backtick = False
    escaped = False

    for char in line[:position]:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"' and not in_backtick and not in_single:
            in_double = not in_double
        elif char == "'" and not in_backtick and not in_double:
            in_single = not in_single
        elif char == "`" and not in_double and not in_single:
            in_backtick = not in_backtick

    return in_single or in_double or in_backtick


def is_inside_comment(line: str, position: int, language: Optional[str] = None) -> bool:
    """Check whether ``position`` in ``line`` falls inside a comment.

    Comment tokens inside string literals are ignored. Without a language,
    both ``//`` and ``#`` are treated as line comment tokens.
    """
    if language:
        token = line_comment_token(language)
        tokens = (token,) if token else ()
        block_comments = token == "//"
    else:
        tokens = ("//", "#")
        block_comments = True

    before = line[:position]
    for index in range(len(before)):
        rest = before[index:]
        if not (
            any(rest.startswith(t) for t in tokens)
            or rest.startswith("<!--")
            or (block_comments and rest.startswith("/*"))
        ):
            continue
        if is_inside_string(before, index):
            continue
        if rest.startswith("<!--"):
            return "-->" not in rest
        if block_comments and rest.startswith("/*"):
            if "*/" in rest[2:]:
                continue
            return True
        return True
    return False


def should_trigger(text: str, cursor_offset: int, language: Optional[str] = None) -> bool:
    """Decide whether automatic completion is worthwhile at the cursor.

    Returns False on a blank line, inside a string literal or inside a line
    comment.
    """
    offset = min(max(cursor_offset, 0), len(text))
    line_start = text.rfind("\n", 0, offset) + 1
    line_before = text[line_start:offset]

    if not line_before.strip():
        return False
    if is_inside_string(line_before, len(line_before)):
        return False
    if is_inside_comment(line_before, len(line_before), language):
        return False
    return True
