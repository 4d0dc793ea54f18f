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

"""Completion text clean-up.

Models occasionally wrap completions in markdown fences, prepend a language
banner, leak fill-in-the-middle control tokens or regenerate the code that
already follows the cursor. These helpers turn raw service output into text
that can be inserted at the cursor as-is.
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Control tokens of the common FIM prompt formats
FIM_TOKENS = (
    "<PRE>",
    "<SUF>",
    "<MID>",
    "<fim_prefix>",
    "<fim_suffix>",
    "<fim_middle>",
    "<｜fim▁begin｜>",
    "<｜fim▁hole｜>",
    "<｜fim▁end｜>",
    "<|fim_prefix|>",
    "<|fim_suffix|>",
    "<|fim_middle|>",
)

END_TOKENS = ("<|endoftext|>", "</s>", "<|im_end|>", "<|end|>")

LANGUAGE_BANNERS = (
    "// JavaScript code:",
    "// TypeScript code:",
    "# Python code:",
    "// Java code:",
    "// Go code:",
    "// Rust code:",
    "// C++ code:",
    "// C# code:",
    "// PHP code:",
    "# Ruby code:",
    "// Swift code:",
    "// Kotlin code:",
)

_FENCE = re.compile(r"```[\w+#-]*\n?")
_FIM_TOKEN = re.compile(
    "|".join(re.escape(token) for token in FIM_TOKENS), flags=re.IGNORECASE
)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_OPEN_TAG_AT_END = re.compile(r"<([a-zA-Z][\w-]*)$")
_ATTRIBUTE_START = [
    re.compile(r"^[a-zA-Z][\w-]*="),
    re.compile(r"^[a-zA-Z][\w-]*\s"),
    re.compile(r"^\{"),
    re.compile(r"^\."),
    re.compile(r"^#"),
]
_MEANINGLESS = [re.compile(r"^\.+$"), re.compile(r"^,$"), re.compile(r"^;+$"), re.compile(r"^:+$")]

_BRACKETS = (("(", ")"), ("[", "]"), ("{", "}"))
_TERMINATORS_ONLY = re.compile(r"^[;,\s]+$")

# Shorter overlaps are too likely to be coincidental
MIN_SUFFIX_LINE_OVERLAP = 8


def sanitize_completion(text: str) -> str:
    """Strip model artifacts from a raw completion.

    Leading whitespace is kept since it is significant at the cursor;
    trailing whitespace is dropped.
    """
    if not text:
        return ""

    sanitized = _FENCE.sub("", text)

    for banner in LANGUAGE_BANNERS:
        if sanitized.startswith(banner):
            sanitized = sanitized[len(banner) :]
            if sanitized.startswith("\n"):
                sanitized = sanitized[1:]
            break

    sanitized = _FIM_TOKEN.sub("", sanitized)

    stripped = True
    while stripped:
        stripped = False
        for token in END_TOKENS:
            if sanitized.rstrip().endswith(token):
                sanitized = sanitized.rstrip()[: -len(token)]
                stripped = True

    sanitized = _EXCESS_NEWLINES.sub("\n\n", sanitized)
    return sanitized.rstrip()


def trim_suffix_overlap(completion: str, suffix: str) -> str:
    """Remove text the model regenerated from the code after the cursor.

    Two cases are handled: the completion ends with the beginning of the
    suffix (typically a closing bracket), and the completion contains the
    first non-blank suffix line, in which case everything from there on is
    dropped.
    """
    if not completion or not suffix:
        return completion

    following = suffix.lstrip()
    if not following:
        return completion

    first_line = following.split("\n", 1)[0].strip()
    if len(first_line) >= MIN_SUFFIX_LINE_OVERLAP:
        index = completion.find(first_line)
        if index > 0:
            completion = completion[:index].rstrip()

    body = completion.rstrip()
    for size in range(min(len(body), len(following)), 0, -1):
        overlap = following[:size]
        if not body.endswith(overlap):
            continue
        trimmed = body[:-size]
        # Only drop closers the completion does not need, or plain terminators
        if _excess_closers(trimmed) < _excess_closers(body) or _TERMINATORS_ONLY.match(overlap):
            return trimmed
    return completion


def _excess_closers(text: str) -> int:
    return sum(max(0, text.count(close) - text.count(open_)) for open_, close in _BRACKETS)


def fix_markup_spacing(completion: str, prefix: str) -> str:
    """Insert the missing space between a tag name and its first attribute.

    ``<Link`` followed by ``to="/"`` becomes ``<Link to="/"``.
    """
    if not completion or not prefix:
        return completion
    if not _OPEN_TAG_AT_END.search(prefix):
        return completion
    if any(pattern.match(completion) for pattern in _ATTRIBUTE_START):
        return " " + completion
    return completion


def meaningful_chars(text: str) -> str:
    return re.sub(r"\s", "", text)


def is_valid_completion(completion: Optional[str]) -> bool:
    """Reject empty completions and punctuation-only "I don't know" answers."""
    if not completion:
        return False
    meaningful = meaningful_chars(completion)
    if not meaningful:
        return False
    if len(meaningful) <= 2 and any(p.match(meaningful) for p in _MEANINGLESS):
        return False
    return True


def postprocess_completion(raw: Optional[str], prefix: str, suffix: str) -> Optional[str]:
    """Run the full clean-up chain.

    Returns:
        Insertable completion text, or None if nothing useful remains
    """
    if raw is None:
        return None
    text = sanitize_completion(raw)
    text = fix_markup_spacing(text, prefix)
    text = trim_suffix_overlap(text, suffix)
    if not is_valid_completion(text):
        logger.debug("Discarded empty or meaningless completion")
        return None
    return text
