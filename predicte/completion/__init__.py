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

"""Inline completion API for editor integration.

This module provides the completion core of an inline, fill-in-the-middle
code completion plugin:
- Smart triggering and debouncing of editor events
- Bounded context windows with import/type/signature enrichment
- Cached, retried, streamed or multi-candidate FIM requests
- Candidate scoring, filtering and ranking
- Partial acceptance and interpolation of the shown suggestion

Example usage:
    from predicte.completion import (
        CompletionManager,
        ConfigSource,
        DocumentSnapshot,
        InMemoryCredentialStore,
    )

    manager = CompletionManager(ConfigSource(), InMemoryCredentialStore("sk-..."))

    # Get an inline (ghost text) completion
    document = DocumentSnapshot(text="const x = ", language="typescript")
    suggestion = await manager.provide_inline_completion(document, cursor_offset=10)

    # Debounced completion for typing events
    suggestion = await manager.trigger(document, cursor_offset=10)

    # Accept the first word of the suggestion
    result = manager.accept_word()

    # Stream inline completions
    async for chunk in manager.stream_inline_completion(document, cursor_offset=10):
        print(chunk, end="", flush=True)
"""

from predicte.completion.protocol import (
    AcceptGranularity,
    Candidate,
    CompletionRequestParams,
    CompletionTriggerKind,
    ContextWindow,
    DocumentSnapshot,
    EnrichmentBlock,
    InlineSuggestion,
    Range,
    ScoreDetails,
)
from predicte.completion.cancellation import CancellationToken, CancellationTokenSource
from predicte.completion.errors import (
    ApiError,
    BadRequestError,
    CompletionCancelledError,
    CompletionError,
    ErrorCode,
    ErrorNotifier,
    InvalidCredentialError,
    MissingCredentialError,
    NetworkError,
    NotificationLevel,
    RateLimitedError,
    RequestTimeoutError,
    RequestValidationError,
    ServiceUnavailableError,
    UnexpectedError,
    classify_http_error,
)
from predicte.completion.config import CompletionConfig, ConfigSource
from predicte.completion.languages import (
    LanguageParameters,
    get_language_parameters,
    resolve_request_params,
)
from predicte.completion.credentials import (
    CredentialStore,
    EnvironmentCredentialStore,
    InMemoryCredentialStore,
)
from predicte.completion.context import ContextExtractor, should_trigger
from predicte.completion.cache import CacheStats, CompletionCache, make_cache_key
from predicte.completion.client import CompletionStream, FIMCompletionClient, RetryPolicy
from predicte.completion.scorer import (
    filter_candidates,
    rank_candidates,
    score_completion,
    select_best_completion,
)
from predicte.completion.debounce import DebouncedTriggerController, TriggerState
from predicte.completion.state import (
    NO_COMPLETION,
    AcceptResult,
    ActiveCompletion,
    CompletionStateManager,
    NoActiveCompletion,
)
from predicte.completion.metrics import MetricsSummary, PerformanceMonitor
from predicte.completion.manager import CompletionManager, CompletionRequest

__all__ = [
    # Protocol types
    "AcceptGranularity",
    "Candidate",
    "CompletionRequestParams",
    "CompletionTriggerKind",
    "ContextWindow",
    "DocumentSnapshot",
    "EnrichmentBlock",
    "InlineSuggestion",
    "Range",
    "ScoreDetails",
    # Cancellation
    "CancellationToken",
    "CancellationTokenSource",
    # Errors
    "ApiError",
    "BadRequestError",
    "CompletionCancelledError",
    "CompletionError",
    "ErrorCode",
    "ErrorNotifier",
    "InvalidCredentialError",
    "MissingCredentialError",
    "NetworkError",
    "NotificationLevel",
    "RateLimitedError",
    "RequestTimeoutError",
    "RequestValidationError",
    "ServiceUnavailableError",
    "UnexpectedError",
    "classify_http_error",
    # Configuration
    "CompletionConfig",
    "ConfigSource",
    "LanguageParameters",
    "get_language_parameters",
    "resolve_request_params",
    # Credentials
    "CredentialStore",
    "EnvironmentCredentialStore",
    "InMemoryCredentialStore",
    # Pipeline components
    "ContextExtractor",
    "should_trigger",
    "CacheStats",
    "CompletionCache",
    "make_cache_key",
    "CompletionStream",
    "FIMCompletionClient",
    "RetryPolicy",
    "filter_candidates",
    "rank_candidates",
    "score_completion",
    "select_best_completion",
    "DebouncedTriggerController",
    "TriggerState",
    "NO_COMPLETION",
    "AcceptResult",
    "ActiveCompletion",
    "CompletionStateManager",
    "NoActiveCompletion",
    "MetricsSummary",
    "PerformanceMonitor",
    # Manager
    "CompletionManager",
    "CompletionRequest",
]
