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

"""Fill-in-the-middle completion client.

Talks to a Codestral-compatible ``/v1/fim/completions`` endpoint with
``httpx``:

- ``complete``: one request, retried with exponential backoff on transient
  failures (5xx and connection errors)
- ``stream``: server-sent events exposed as a pull-based ``CompletionStream``
- ``get_multiple_completions``: a concurrent batch at spread temperatures

The HTTP client is created lazily once a credential is available and is
rebuilt whenever the credential or the configuration changes.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

import httpx

from predicte.completion.cancellation import CancellationToken
from predicte.completion.config import CompletionConfig, ConfigSource
from predicte.completion.credentials import CredentialStore
from predicte.completion.errors import (
    CompletionError,
    MissingCredentialError,
    UnexpectedError,
    classify_http_error,
    error_for_response,
)
from predicte.completion.protocol import CompletionRequestParams, ContextWindow

logger = logging.getLogger(__name__)

FIM_COMPLETIONS_PATH = "/v1/fim/completions"

MIN_CANDIDATES = 1
MAX_CANDIDATES = 5
DEFAULT_CANDIDATES = 3
TEMPERATURE_STEP = 0.05
MIN_TEMPERATURE = 0.01
MAX_TEMPERATURE = 1.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule for transient failures."""

    initial_interval_s: float = 0.5
    multiplier: float = 1.5
    max_interval_s: float = 10.0
    max_elapsed_s: float = 15.0

    def delays(self) -> Iterator[float]:
        """Successive retry delays; ends once their sum would pass
        ``max_elapsed_s``."""
        interval = self.initial_interval_s
        total = 0.0
        while total + interval <= self.max_elapsed_s:
            yield interval
            total += interval
            interval = min(interval * self.multiplier, self.max_interval_s)


def candidate_temperatures(base: float, count: int) -> List[float]:
    """Temperatures spread symmetrically around ``base``.

    For three candidates at 0.1 this yields [0.05, 0.1, 0.15].
    """
    center = (count - 1) / 2
    return [
        min(MAX_TEMPERATURE, max(MIN_TEMPERATURE, round(base + (i - center) * TEMPERATURE_STEP, 4)))
        for i in range(count)
    ]


def _content_text(content: Any) -> str:
    # Content is either a string or a list of typed chunks
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            chunk.get("text", "")
            for chunk in content
            if isinstance(chunk, dict) and chunk.get("type", "text") == "text"
        )
    return ""


def extract_content(data: Dict[str, Any]) -> str:
    """Completion text from a non-streaming response body.

    Raises:
        UnexpectedError: If the body does not have the completion shape
    """
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise UnexpectedError("Malformed completion response")
    if not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        raise UnexpectedError("Malformed completion response")
    message = choice.get("message")
    if isinstance(message, dict):
        return _content_text(message.get("content"))
    return _content_text(choice.get("text"))


def parse_stream_line(line: str) -> Tuple[str, bool]:
    """Parse one server-sent-event line.

    Returns:
        (text chunk, finished) pair; the chunk is empty for keep-alives,
        comments and events without content
    """
    line = line.strip()
    if not line.startswith("data:"):
        return "", False

    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return "", True

    try:
        event = json.loads(data)
    except ValueError:
        logger.debug(f"Ignoring malformed stream event: {data[:80]}")
        return "", False

    if not isinstance(event, dict):
        return "", False
    choices = event.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        logger.debug(f"Ignoring stream event without choices: {data[:80]}")
        return "", False
    choice = choices[0]
    delta = choice.get("delta")
    content = delta.get("content") if isinstance(delta, dict) else None
    return _content_text(content), bool(choice.get("finish_reason"))


def _normalize_base_url(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith("/v1"):
        logger.warning(f"API base URL {url} should not include /v1; stripping it")
        url = url[: -len("/v1")]
    return url


class CompletionStream:
    """Lazy, finite, single-use async iterator over completion chunks.

    Nothing is sent until the first chunk is pulled. Cancellation is checked
    before the request and between chunks; a cancelled stream simply stops,
    keeping the chunks produced so far in ``chunks``.

    Example:
        stream = client.stream(window, params, token)
        async for chunk in stream:
            render(chunk)
    """

    def __init__(
        self,
        client: "FIMCompletionClient",
        payload: Dict[str, Any],
        token: CancellationToken,
    ):
        self._client = client
        self._payload = payload
        self._token = token
        self._http: Optional[httpx.AsyncClient] = None
        self._response_cm: Optional[Any] = None
        self._lines: Optional[Any] = None
        self._started = False
        self._done = False
        self.cancelled = False
        self.chunks: List[str] = []

    @property
    def finished(self) -> bool:
        return self._done

    def __aiter__(self) -> "CompletionStream":
        if self._started:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._started = True
        return self

    async def __anext__(self) -> str:
        while True:
            if self._done:
                raise StopAsyncIteration
            if self._token.is_cancellation_requested:
                await self._stop(cancelled=True)
                raise StopAsyncIteration
            if self._lines is None:
                await self._open()
                continue

            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                await self._stop()
                raise
            except httpx.HTTPError as e:
                await self._stop()
                raise classify_http_error(e) from e

            if self._token.is_cancellation_requested:
                await self._stop(cancelled=True)
                raise StopAsyncIteration

            chunk, finished = parse_stream_line(line)
            if finished:
                await self._stop()
            if chunk:
                self.chunks.append(chunk)
                return chunk

    async def _open(self) -> None:
        try:
            self._http = await self._client._acquire()
        except CompletionError:
            self._done = True
            raise
        if self._token.is_cancellation_requested:
            return
        self._response_cm = self._http.stream("POST", FIM_COMPLETIONS_PATH, json=self._payload)
        try:
            response = await self._response_cm.__aenter__()
        except httpx.HTTPError as e:
            self._response_cm = None
            await self._stop()
            raise classify_http_error(e) from e

        if response.status_code >= 400:
            await response.aread()
            error = error_for_response(response)
            await self._stop()
            raise error
        self._lines = response.aiter_lines()

    async def _stop(self, cancelled: bool = False) -> None:
        if cancelled and not self._done:
            self.cancelled = True
            logger.debug(f"Stream cancelled after {len(self.chunks)} chunks")
        self._done = True
        response_cm, self._response_cm = self._response_cm, None
        http, self._http = self._http, None
        try:
            if response_cm is not None:
                await response_cm.__aexit__(None, None, None)
        finally:
            if http is not None:
                await self._client._release(http)

    async def aclose(self) -> None:
        """Stop the stream and release the connection."""
        self._started = True
        await self._stop()

    async def collect(self) -> str:
        """Consume the stream and join its chunks."""
        async for _ in self:
            pass
        return "".join(self.chunks)

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class FIMCompletionClient:
    """Client for the fill-in-the-middle completion endpoint."""

    def __init__(
        self,
        config_source: ConfigSource,
        credential_store: CredentialStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the client.

        Args:
            config_source: Configuration collaborator
            credential_store: API key collaborator
            transport: Optional httpx transport, e.g. httpx.MockTransport
            sleep: Coroutine used to wait between retries
            retry_policy: Backoff schedule for transient failures
            clock: Monotonic clock used to bound total retry time
        """
        self._config_source = config_source
        self._credentials = credential_store
        self._transport = transport
        self._sleep = sleep
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._http: Optional[httpx.AsyncClient] = None
        self._retired: List[httpx.AsyncClient] = []
        self._users: Dict[httpx.AsyncClient, int] = {}
        self._generation = 0

        self._unsubscribe = [
            credential_store.on_credential_changed(self.reset_client),
            config_source.on_change(lambda _config: self.reset_client()),
        ]

    @property
    def config(self) -> CompletionConfig:
        return self._config_source.snapshot()

    def reset_client(self) -> None:
        """Drop the HTTP client; the next request builds a fresh one.

        The old client is closed once no request or stream uses it.
        """
        self._generation += 1
        if self._http is not None:
            logger.debug("Resetting completion HTTP client")
            self._retired.append(self._http)
            self._http = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        await self._close_retired()
        while self._http is None:
            generation = self._generation
            credential = await self._credentials.get_credential()
            if not credential:
                raise MissingCredentialError("API key not configured. Set your API key to enable completions")
            # Another request may have built the client, or a reset may have
            # outdated the credential, while waiting for the store
            if self._http is None and generation == self._generation:
                self._http = self._create_http_client(credential)
        return self._http

    def _create_http_client(self, credential: str) -> httpx.AsyncClient:
        config = self.config
        return httpx.AsyncClient(
            base_url=_normalize_base_url(config.api_base_url),
            headers={
                "Authorization": f"Bearer {credential}",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(config.request_timeout_ms / 1000.0),
            transport=self._transport,
        )

    async def _acquire(self) -> httpx.AsyncClient:
        http = await self._get_http_client()
        self._users[http] = self._users.get(http, 0) + 1
        return http

    async def _release(self, http: httpx.AsyncClient) -> None:
        remaining = self._users.get(http, 1) - 1
        if remaining > 0:
            self._users[http] = remaining
            return
        self._users.pop(http, None)
        await self._close_retired()

    async def _close_retired(self, force: bool = False) -> None:
        idle = [http for http in self._retired if force or http not in self._users]
        self._retired = [http for http in self._retired if http not in idle]
        for http in idle:
            await http.aclose()

    async def is_ready(self) -> bool:
        """Check whether a credential is available."""
        try:
            await self._get_http_client()
        except CompletionError:
            return False
        return True

    def build_payload(
        self,
        window: ContextWindow,
        params: CompletionRequestParams,
        stream: bool = False,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        prompt = window.full_prefix if self.config.prompt_engineering_enabled else window.prefix
        return {
            "model": params.model,
            "prompt": prompt,
            "suffix": window.suffix,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature if temperature is None else temperature,
            "top_p": params.top_p,
            "stop": list(params.stop_sequences),
            "stream": stream,
        }

    async def complete(
        self,
        window: ContextWindow,
        params: CompletionRequestParams,
        token: Optional[CancellationToken] = None,
        temperature: Optional[float] = None,
    ) -> Optional[str]:
        """Request a single completion.

        Args:
            window: Context around the cursor
            params: Request parameters
            token: Cancellation signal
            temperature: Override for params.temperature

        Returns:
            Completion text, or None if the service returned nothing

        Raises:
            CompletionError: On failure, CompletionCancelledError when cancelled
        """
        token = token or CancellationToken.none()
        token.raise_if_cancelled()
        http = await self._acquire()
        try:
            token.raise_if_cancelled()
            payload = self.build_payload(window, params, stream=False, temperature=temperature)
            data = await self._post_with_retry(http, payload, token)
        finally:
            await self._release(http)
        return extract_content(data) or None

    async def _post_with_retry(
        self, http: httpx.AsyncClient, payload: Dict[str, Any], token: CancellationToken
    ) -> Dict[str, Any]:
        started = self._clock()
        delays = self._retry_policy.delays()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await http.post(FIM_COMPLETIONS_PATH, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as e:
                error = classify_http_error(e)
                delay = next(delays, None) if error.retryable else None
                elapsed = self._clock() - started
                if delay is None or elapsed + delay > self._retry_policy.max_elapsed_s:
                    raise error from e
                logger.debug(
                    f"FIM request attempt {attempt} failed ({error.code.value}), "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                token.raise_if_cancelled()
                continue

            try:
                data = response.json()
            except ValueError as e:
                raise UnexpectedError("Malformed completion response", cause=e) from e
            if not isinstance(data, dict):
                raise UnexpectedError("Malformed completion response")
            return data

    def stream(
        self,
        window: ContextWindow,
        params: CompletionRequestParams,
        token: Optional[CancellationToken] = None,
    ) -> CompletionStream:
        """Create a streaming completion; no request is sent until it is
        iterated."""
        payload = self.build_payload(window, params, stream=True)
        return CompletionStream(self, payload, token or CancellationToken.none())

    async def get_multiple_completions(
        self,
        window: ContextWindow,
        params: CompletionRequestParams,
        num_candidates: int = DEFAULT_CANDIDATES,
        token: Optional[CancellationToken] = None,
        on_error: Optional[Callable[[int, CompletionError], None]] = None,
    ) -> List[Optional[str]]:
        """Request several candidates concurrently at spread temperatures.

        Args:
            window: Context around the cursor
            params: Request parameters; params.temperature is the center
            num_candidates: Batch size, 1-5; other values fall back to 3
            token: Cancellation signal shared by the batch
            on_error: Called with (index, error) for each failed candidate

        Returns:
            Candidate texts in batch order, None for each failed candidate
        """
        if not MIN_CANDIDATES <= num_candidates <= MAX_CANDIDATES:
            logger.warning(
                f"Invalid candidate count {num_candidates}, using {DEFAULT_CANDIDATES}"
            )
            num_candidates = DEFAULT_CANDIDATES

        temperatures = candidate_temperatures(params.temperature, num_candidates)

        async def _one(index: int, temperature: float) -> Optional[str]:
            try:
                return await self.complete(window, params, token, temperature=temperature)
            except Exception as e:
                error = classify_http_error(e)
                logger.debug(f"Candidate {index} failed: {error}")
                if on_error is not None:
                    on_error(index, error)
                return None

        return list(
            await asyncio.gather(*(_one(i, t) for i, t in enumerate(temperatures)))
        )

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self.reset_client()
        await self._close_retired(force=True)
