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

"""Completion manager for orchestrating inline completions.

Provides a high-level API for editor integration following the Facade
pattern. One request flows through:

    trigger check -> context extraction -> cache -> FIM client
        -> sanitizing -> scoring/ranking -> active completion state

Every collaborator is injected; nothing here is global.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import httpx

from predicte.completion.cache import CompletionCache, make_cache_key
from predicte.completion.cancellation import CancellationToken
from predicte.completion.client import FIMCompletionClient
from predicte.completion.config import CompletionConfig, ConfigSource
from predicte.completion.context import ContextExtractor, should_trigger
from predicte.completion.credentials import CredentialStore
from predicte.completion.debounce import DebouncedTriggerController
from predicte.completion.errors import (
    CompletionCancelledError,
    CompletionError,
    ErrorNotifier,
    UnexpectedError,
)
from predicte.completion.languages import detect_language, resolve_request_params
from predicte.completion.metrics import PerformanceMonitor
from predicte.completion.protocol import (
    CompletionRequestParams,
    CompletionTriggerKind,
    ContextWindow,
    DocumentSnapshot,
    InlineSuggestion,
    Range,
)
from predicte.completion.sanitizer import postprocess_completion
from predicte.completion.scorer import select_best_completion
from predicte.completion.state import AcceptResult, CompletionStateManager

logger = logging.getLogger(__name__)

# Suggestions older than this no longer follow document edits
DEFAULT_COMPLETION_MAX_AGE_S = 5.0


@dataclass(frozen=True)
class CompletionRequest:
    """One editor event worth a completion."""

    document: DocumentSnapshot
    cursor_offset: int
    trigger_kind: CompletionTriggerKind = CompletionTriggerKind.AUTOMATIC


class CompletionManager:
    """High-level manager for inline completion.

    Orchestrates the completion pipeline and exposes the commands an editor
    integration needs. Handles:
    - Smart triggering and debouncing
    - Context extraction and caching
    - Single, streaming and multi-candidate requests
    - Candidate ranking and partial acceptance
    - Error surfacing and metrics collection
    """

    def __init__(
        self,
        config_source: ConfigSource,
        credential_store: CredentialStore,
        client: Optional[FIMCompletionClient] = None,
        cache: Optional[CompletionCache] = None,
        state_manager: Optional[CompletionStateManager] = None,
        notifier: Optional[ErrorNotifier] = None,
        monitor: Optional[PerformanceMonitor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the completion manager.

        Args:
            config_source: Configuration collaborator
            credential_store: API key collaborator
            client: FIM client (built from the collaborators if not provided)
            cache: Completion cache (sized from the configuration if not provided)
            state_manager: Active completion state
            notifier: User notification policy
            monitor: Performance metrics collector
            transport: httpx transport for the default client
        """
        config = config_source.snapshot()
        self._config_source = config_source
        self._client = client or FIMCompletionClient(
            config_source, credential_store, transport=transport
        )
        self._cache = cache or CompletionCache(
            max_size=config.cache_max_size, default_ttl_ms=config.cache_ttl_ms
        )
        self._state = state_manager or CompletionStateManager(
            max_age_s=DEFAULT_COMPLETION_MAX_AGE_S
        )
        self._notifier = notifier or ErrorNotifier()
        self._monitor = monitor or PerformanceMonitor()
        self._controller: DebouncedTriggerController[CompletionRequest, InlineSuggestion] = (
            DebouncedTriggerController(self._run_pipeline, delay_ms=config.debounce_delay_ms)
        )

        self._unsubscribe = [
            config_source.on_change(self._on_config_changed),
            credential_store.on_credential_changed(self._notifier.reset_credential_notice),
        ]

    @property
    def config(self) -> CompletionConfig:
        return self._config_source.snapshot()

    @property
    def state_manager(self) -> CompletionStateManager:
        return self._state

    @property
    def controller(self) -> DebouncedTriggerController:
        return self._controller

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor

    async def provide_inline_completion(
        self,
        document: DocumentSnapshot,
        cursor_offset: int,
        trigger_kind: CompletionTriggerKind = CompletionTriggerKind.AUTOMATIC,
        token: Optional[CancellationToken] = None,
    ) -> Optional[InlineSuggestion]:
        """Get an inline (ghost text) completion without debouncing.

        Args:
            document: Document snapshot
            cursor_offset: Cursor position as a character offset
            trigger_kind: Explicit invocation skips the smart-trigger check
            token: Cancellation signal owned by the caller

        Returns:
            InlineSuggestion, or None when there is nothing to suggest
        """
        request = CompletionRequest(document, cursor_offset, trigger_kind)
        return await self._run_pipeline(request, token or CancellationToken.none())

    def trigger(
        self,
        document: DocumentSnapshot,
        cursor_offset: int,
        trigger_kind: CompletionTriggerKind = CompletionTriggerKind.AUTOMATIC,
    ) -> "asyncio.Future[Optional[InlineSuggestion]]":
        """Route an editor event through the debounce controller.

        Returns:
            Future resolved with the suggestion, or None if superseded
        """
        return self._controller.trigger(CompletionRequest(document, cursor_offset, trigger_kind))

    async def _run_pipeline(
        self, request: CompletionRequest, token: CancellationToken
    ) -> Optional[InlineSuggestion]:
        config = self.config
        if not config.enabled:
            return None

        document = request.document
        language = self._language_of(document)
        if request.trigger_kind == CompletionTriggerKind.AUTOMATIC and not should_trigger(
            document.text, request.cursor_offset, language
        ):
            logger.debug("Skipping completion at this position")
            return None

        try:
            return await self._complete(request, language, config, token)
        except CompletionCancelledError:
            logger.debug("Completion cancelled")
            return None
        except CompletionError as e:
            self._monitor.record_failure(e.code.value)
            self._notifier.report(e)
            return None
        except Exception as e:
            logger.error(f"Inline completion failed: {e}")
            self._monitor.record_failure(UnexpectedError.code.value)
            return None

    async def _complete(
        self,
        request: CompletionRequest,
        language: str,
        config: CompletionConfig,
        token: CancellationToken,
    ) -> Optional[InlineSuggestion]:
        document = request.document
        window = ContextExtractor.from_config(config).extract(
            document.text, request.cursor_offset, language, document.filename
        )
        offset = min(max(request.cursor_offset, 0), len(document.text))
        params = resolve_request_params(config, language)
        key = make_cache_key(
            window.full_prefix,
            window.suffix,
            params.model,
            params.max_tokens,
            params.temperature,
            language,
        )

        if config.cache_enabled:
            cached = self._cache.get(key)
            if cached is not None:
                self._monitor.record_cache_hit()
                logger.debug("Completion served from cache")
                return self._install(cached, document, offset, from_cache=True)
            self._monitor.record_cache_miss()

        token.raise_if_cancelled()
        start_time = time.monotonic()
        streaming = False
        if config.quality_filtering_enabled and config.num_candidates > 1:
            texts = await self._fetch_candidates(window, params, config.num_candidates, token)
        elif config.streaming_enabled:
            streaming = True
            texts = [await self._fetch_streamed(window, params, token)]
        else:
            texts = [await self._client.complete(window, params, token)]
        self._monitor.record_latency((time.monotonic() - start_time) * 1000, streaming)

        token.raise_if_cancelled()
        cleaned = [postprocess_completion(text, window.prefix, window.suffix) for text in texts]
        best = select_best_completion(
            cleaned,
            window.prefix,
            window.suffix,
            language,
            filtering=config.quality_filtering_enabled,
        )

        self._monitor.record_success()
        self._notifier.record_success()
        if best is None:
            return None

        if config.cache_enabled:
            self._cache.set(key, best.text, config.cache_ttl_ms)
        return self._install(best.text, document, offset, score=best.score)

    async def _fetch_candidates(
        self,
        window: ContextWindow,
        params: CompletionRequestParams,
        count: int,
        token: CancellationToken,
    ) -> List[Optional[str]]:
        errors: Dict[int, CompletionError] = {}
        texts = await self._client.get_multiple_completions(
            window, params, count, token, on_error=errors.__setitem__
        )
        if errors and all(text is None for text in texts):
            raise errors[min(errors)]
        return texts

    async def _fetch_streamed(
        self, window: ContextWindow, params: CompletionRequestParams, token: CancellationToken
    ) -> Optional[str]:
        async with self._client.stream(window, params, token) as stream:
            text = await stream.collect()
        if stream.cancelled:
            raise CompletionCancelledError()
        return text or None

    def _install(
        self,
        text: str,
        document: DocumentSnapshot,
        offset: int,
        from_cache: bool = False,
        score: Optional[float] = None,
    ) -> InlineSuggestion:
        self._state.set_completion(text, offset, document.text, document.uri)
        return InlineSuggestion(
            text=text, range=Range(offset, offset), from_cache=from_cache, score=score
        )

    async def stream_inline_completion(
        self,
        document: DocumentSnapshot,
        cursor_offset: int,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Stream inline completion chunks as they arrive.

        The joined, cleaned text becomes the active completion once the
        stream ends without cancellation.

        Args:
            document: Document snapshot
            cursor_offset: Cursor position as a character offset
            token: Cancellation signal

        Yields:
            Raw completion text chunks
        """
        token = token or CancellationToken.none()
        config = self.config
        if not config.enabled:
            return

        language = self._language_of(document)
        window = ContextExtractor.from_config(config).extract(
            document.text, cursor_offset, language, document.filename
        )
        offset = min(max(cursor_offset, 0), len(document.text))
        params = resolve_request_params(config, language)

        start_time = time.monotonic()
        try:
            async with self._client.stream(window, params, token) as stream:
                async for chunk in stream:
                    yield chunk
        except CompletionError as e:
            self._monitor.record_failure(e.code.value)
            self._notifier.report(e)
            return
        except Exception as e:
            logger.error(f"Streaming completion failed: {e}")
            self._monitor.record_failure(UnexpectedError.code.value)
            return
        self._monitor.record_latency((time.monotonic() - start_time) * 1000, streaming=True)

        if stream.cancelled:
            return
        self._monitor.record_success()
        self._notifier.record_success()
        text = postprocess_completion("".join(stream.chunks), window.prefix, window.suffix)
        if text:
            self._install(text, document, offset)

    def on_document_changed(self, document: DocumentSnapshot) -> Optional[InlineSuggestion]:
        """Keep the active completion in sync with a document edit.

        Returns:
            The re-anchored suggestion, or None if it no longer applies
        """
        if not self._state.is_valid_for(document.uri):
            self._state.clear()
            return None
        remaining = self._state.interpolate(document.text)
        range_ = self._state.active_range
        if remaining is None or range_ is None:
            return None
        return InlineSuggestion(text=remaining, range=Range(range_.start, range_.start))

    def has_conflict(self, other: Range) -> bool:
        return self._state.has_conflict(other)

    def accept_word(self) -> Optional[AcceptResult]:
        return self._state.accept_word()

    def accept_line(self) -> Optional[AcceptResult]:
        return self._state.accept_line()

    def accept_full(self) -> Optional[AcceptResult]:
        return self._state.accept_full()

    def dismiss(self) -> None:
        """Hide the active completion and drop any pending request."""
        self._controller.cancel()
        self._state.clear()

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Completion cache cleared")

    def get_statistics(self) -> dict:
        """Cache statistics and the metrics summary."""
        return {
            "cache": self._cache.stats().as_dict(),
            "metrics": self._monitor.get_summary().as_dict(),
            "trigger_state": self._controller.state.value,
            "has_active_completion": self._state.has_active_completion,
        }

    def format_statistics(self) -> str:
        stats = self._cache.stats()
        return self._monitor.format_summary(
            extra_rows={
                "Cache entries": f"{stats.entry_count} / {stats.max_size}",
                "Cache utilization": f"{stats.utilization * 100:.1f}%",
            }
        )

    async def aclose(self) -> None:
        """Cancel pending work and release the HTTP client."""
        self._controller.dispose()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        await self._client.aclose()

    def _on_config_changed(self, config: CompletionConfig) -> None:
        self._controller.set_delay(config.debounce_delay_ms)
        self._cache.default_ttl_ms = config.cache_ttl_ms
        self._cache.resize(config.cache_max_size)
        if not config.cache_enabled:
            self._cache.clear()
        if not config.enabled:
            self.dismiss()

    @staticmethod
    def _language_of(document: DocumentSnapshot) -> str:
        if document.language:
            return document.language
        return detect_language(document.filename or document.uri, document.text)
