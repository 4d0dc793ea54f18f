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

"""Completion configuration.

``CompletionConfig`` is an immutable snapshot of every setting the pipeline
reads. ``ConfigSource`` owns the current snapshot and notifies subscribers
when it is replaced, so long-lived collaborators (the HTTP client, the
debounce controller, the cache) can react to changes without polling.
"""

import logging
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://codestral.mistral.ai"
DEFAULT_MODEL = "codestral-latest"
DEFAULT_NUM_CANDIDATES = 3
MAX_NUM_CANDIDATES = 5


class CompletionConfig(BaseModel):
    """Configuration for the inline completion core."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = Field(default=True, description="Enable inline completions")

    # Service
    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        description="Base URL of the FIM completion service (without /v1)",
    )
    model: str = Field(default=DEFAULT_MODEL, description="Model used for completions")
    max_tokens: int = Field(default=100, ge=1, description="Maximum tokens per completion")
    temperature: float = Field(default=0.1, description="Sampling temperature (0.0-1.0)")
    top_p: float = Field(default=1.0, description="Nucleus sampling probability (0.0-1.0)")
    request_timeout_ms: int = Field(
        default=30000, ge=1, description="Per-request timeout in milliseconds"
    )

    # Triggering and context
    debounce_delay_ms: int = Field(
        default=150, ge=0, description="Quiet period before a completion request is sent"
    )
    context_lines: int = Field(
        default=50, ge=1, description="Lines of context around the cursor (60% before, 40% after)"
    )
    context_max_bytes: int = Field(
        default=32000, ge=64, description="Byte budget for the context window"
    )
    enhanced_context_enabled: bool = Field(
        default=True, description="Add imports, signatures and types ahead of the prefix"
    )

    # Caching
    cache_enabled: bool = Field(default=True, description="Cache winning completions")
    cache_ttl_ms: int = Field(default=60000, ge=0, description="Cache entry lifetime in milliseconds")
    cache_max_size: int = Field(default=100, ge=1, description="Maximum cached completions")

    # Candidate generation
    streaming_enabled: bool = Field(
        default=True, description="Stream single-candidate completions"
    )
    quality_filtering_enabled: bool = Field(
        default=True, description="Score, filter and rank candidates"
    )
    num_candidates: int = Field(
        default=DEFAULT_NUM_CANDIDATES,
        description="Candidates requested per completion when quality filtering is on (1-5)",
    )
    language_aware_params_enabled: bool = Field(
        default=True, description="Use per-language temperature, max tokens and stop sequences"
    )
    prompt_engineering_enabled: bool = Field(
        default=True, description="Render enrichment context ahead of the prefix in the prompt"
    )

    @field_validator("temperature", "top_p")
    @classmethod
    def _clamp_unit_interval(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    @field_validator("num_candidates")
    @classmethod
    def _check_num_candidates(cls, value: int) -> int:
        if not 1 <= value <= MAX_NUM_CANDIDATES:
            logger.warning(
                f"num_candidates={value} outside 1-{MAX_NUM_CANDIDATES}, "
                f"using {DEFAULT_NUM_CANDIDATES}"
            )
            return DEFAULT_NUM_CANDIDATES
        return value

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "CompletionConfig":
        """Load configuration from a YAML file.

        Args:
            path: Path to YAML file

        Expected format:
        ```yaml
        completion:
          model: codestral-latest
          debounce_delay_ms: 200
          num_candidates: 2
        ```

        A top-level mapping without the ``completion`` key is also accepted.
        Unknown keys are ignored. Unreadable files fall back to defaults.
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load completion config from {path}: {e}")
            return cls()

        if not isinstance(data, dict):
            logger.error(f"Completion config in {path} is not a mapping")
            return cls()

        section = data.get("completion", data)
        return cls(**section)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Export configuration to a YAML file.

        Args:
            path: Output path
        """
        with open(path, "w") as f:
            yaml.dump({"completion": self.model_dump()}, f, default_flow_style=False)


ConfigListener = Callable[[CompletionConfig], None]


class ConfigSource:
    """Holds the current configuration snapshot and notifies on change."""

    def __init__(self, config: Optional[CompletionConfig] = None):
        self._config = config or CompletionConfig()
        self._listeners: List[ConfigListener] = []

    def snapshot(self) -> CompletionConfig:
        return self._config

    def update(self, **changes: Any) -> CompletionConfig:
        """Replace the snapshot with a copy carrying ``changes``.

        Values are validated like any other CompletionConfig construction.
        """
        data = self._config.model_dump()
        data.update(changes)
        return self.replace(CompletionConfig(**data))

    def replace(self, config: CompletionConfig) -> CompletionConfig:
        if config == self._config:
            return self._config
        self._config = config
        logger.debug("Completion configuration changed")
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception as e:
                logger.warning(f"Configuration listener failed: {e}")
        return config

    def on_change(self, callback: ConfigListener) -> Callable[[], None]:
        """Subscribe to configuration changes.

        Returns:
            Function that unsubscribes the callback
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe
