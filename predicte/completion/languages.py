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

"""Language-specific request parameters and language detection.

Strict, typed languages get a low temperature for deterministic output,
dynamic languages slightly more variety, markup and data formats short
completions. Stop sequences are tuned to each language's statement and block
terminators.
"""

import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, Optional, Tuple

from predicte.completion.config import CompletionConfig
from predicte.completion.protocol import CompletionRequestParams

logger = logging.getLogger(__name__)

PLAINTEXT = "plaintext"

# Used for every language when language-aware parameters are disabled
DEFAULT_STOP_SEQUENCES: Tuple[str, ...] = ("\n\n", "```", '"""', "'''")


@dataclass(frozen=True)
class LanguageParameters:
    """Request parameters tuned for one language."""

    temperature: float
    max_tokens: int
    stop_sequences: Tuple[str, ...]


_STRICT_BRACES = ("\n\n", "}", ";", "```")
_STRICT_BLOCKS = ("\n\n", "}", "```")

LANGUAGE_PARAMETERS: Dict[str, LanguageParameters] = {
    # Strict/typed languages
    "typescript": LanguageParameters(0.1, 200, ("\n\n", ";", "```")),
    "java": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "go": LanguageParameters(0.1, 100, _STRICT_BLOCKS),
    "rust": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "cpp": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "c": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "csharp": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "swift": LanguageParameters(0.1, 100, _STRICT_BLOCKS),
    "kotlin": LanguageParameters(0.1, 100, _STRICT_BRACES),
    "scala": LanguageParameters(0.1, 100, _STRICT_BRACES),
    # Dynamic languages
    "javascript": LanguageParameters(0.15, 150, ("\n\n", ";", "```")),
    "python": LanguageParameters(0.2, 100, ("\n\n", "```", "'''", '"""')),
    "php": LanguageParameters(0.15, 100, ("\n\n", ";", "}", "```")),
    "ruby": LanguageParameters(0.2, 80, ("\n\n", "end", "```")),
    # Markup
    "html": LanguageParameters(0.2, 50, ("\n\n", "</", "```")),
    "css": LanguageParameters(0.2, 50, _STRICT_BLOCKS),
    "xml": LanguageParameters(0.1, 50, ("\n\n", "</", "```")),
    # Data formats
    "json": LanguageParameters(0.05, 50, ("\n\n", "}", "]", "```")),
    "yaml": LanguageParameters(0.1, 50, ("\n\n", "}", "]", "```")),
    # Documentation
    "markdown": LanguageParameters(0.3, 150, ("\n\n", "```")),
    # Shell and query languages
    "bash": LanguageParameters(0.15, 80, ("\n\n", "```")),
    "shell": LanguageParameters(0.15, 80, ("\n\n", "```")),
    "sql": LanguageParameters(0.1, 80, ("\n\n", ";", "```")),
}

DEFAULT_LANGUAGE_PARAMETERS = LanguageParameters(0.15, 100, ("\n\n", "```"))

_HASH_COMMENT_LANGUAGES = frozenset(
    {"python", "ruby", "bash", "shell", "yaml", "toml", "r", "perl", "dockerfile", "makefile"}
)
_DASH_COMMENT_LANGUAGES = frozenset({"sql", "lua", "haskell"})
_MARKUP_LANGUAGES = frozenset({"html", "xml", "markdown"})

_EXTENSION_LANGUAGES = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "bash",
    ".md": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".xml": "xml",
    ".html": "html",
    ".css": "css",
}


def normalize_language(language: Optional[str]) -> str:
    """Lower-case a language id and fold ``*react`` variants into their base."""
    if not language:
        return PLAINTEXT
    return language.lower().replace("react", "")


def get_language_parameters(language: Optional[str]) -> LanguageParameters:
    return LANGUAGE_PARAMETERS.get(normalize_language(language), DEFAULT_LANGUAGE_PARAMETERS)


def get_stop_sequences(language: Optional[str]) -> Tuple[str, ...]:
    return get_language_parameters(language).stop_sequences


def resolve_request_params(
    config: CompletionConfig, language: Optional[str]
) -> CompletionRequestParams:
    """Build request parameters for a language from the configuration.

    Args:
        config: Current configuration snapshot
        language: Editor language id

    Returns:
        Parameters with per-language overrides applied when enabled
    """
    if config.language_aware_params_enabled:
        params = get_language_parameters(language)
        temperature = params.temperature
        max_tokens = params.max_tokens
        stops = params.stop_sequences
    else:
        temperature = config.temperature
        max_tokens = config.max_tokens
        stops = DEFAULT_STOP_SEQUENCES

    return CompletionRequestParams(
        model=config.model,
        max_tokens=max_tokens,
        temperature=temperature,
        stop_sequences=tuple(dict.fromkeys(stops)),
        top_p=config.top_p,
    )


def line_comment_token(language: Optional[str]) -> Optional[str]:
    """Line comment token for a language, None for markup."""
    normalized = normalize_language(language)
    if normalized in _HASH_COMMENT_LANGUAGES:
        return "#"
    if normalized in _DASH_COMMENT_LANGUAGES:
        return "--"
    if normalized in _MARKUP_LANGUAGES:
        return None
    return "//"


def comment_line(language: Optional[str], text: str) -> str:
    """Render ``text`` as a single comment line in the given language."""
    token = line_comment_token(language)
    if token is None:
        return f"<!-- {text} -->"
    return f"{token} {text}"


def detect_language(filename: Optional[str], content: str = "") -> str:
    """Detect language from file name and content.

    Args:
        filename: File name or path, may be None for untitled documents
        content: File content, used for shebang detection

    Returns:
        Language identifier
    """
    if filename:
        ext = PurePath(filename).suffix.lower()
        if ext in _EXTENSION_LANGUAGES:
            return _EXTENSION_LANGUAGES[ext]

    if content.startswith("#!"):
        first_line = content.split("\n")[0]
        if "python" in first_line:
            return "python"
        if "node" in first_line:
            return "javascript"
        if "ruby" in first_line:
            return "ruby"
        if "bash" in first_line or "sh" in first_line:
            return "shell"

    return PLAINTEXT
