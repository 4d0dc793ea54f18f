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

"""Unit tests for the FIM completion client."""

import asyncio
import json

import httpx
import pytest

from predicte.completion.cancellation import CancellationTokenSource
from predicte.completion.client import (
    FIMCompletionClient,
    RetryPolicy,
    candidate_temperatures,
    extract_content,
    parse_stream_line,
)
from predicte.completion.config import CompletionConfig, ConfigSource
from predicte.completion.credentials import InMemoryCredentialStore
from predicte.completion.errors import (
    BadRequestError,
    CompletionCancelledError,
    InvalidCredentialError,
    MissingCredentialError,
    NetworkError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceUnavailableError,
    UnexpectedError,
)
from predicte.completion.protocol import ContextWindow, EnrichmentBlock


def completion_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


def sse_response(*chunks: str) -> httpx.Response:
    events = [
        "data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]}) + "\n\n"
        for chunk in chunks
    ]
    body = "".join(events) + "data: [DONE]\n\n"
    return httpx.Response(
        200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"}
    )


class RecordingHandler:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


def make_client(handler, api_key="test-key", config=None):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    client = FIMCompletionClient(
        ConfigSource(config or CompletionConfig()),
        InMemoryCredentialStore(api_key),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return client, sleeps


class TestHelpers:
    """Test suite for the client helper functions."""

    def test_retry_policy_delays(self):
        """Test the exponential backoff schedule and its elapsed-time bound."""
        delays = list(RetryPolicy().delays())

        assert delays[:3] == pytest.approx([0.5, 0.75, 1.125])
        assert sum(delays) <= 15.0
        assert len(delays) == 6

    def test_candidate_temperatures(self):
        """Test that temperatures spread around the base and stay in range."""
        assert candidate_temperatures(0.1, 3) == pytest.approx([0.05, 0.1, 0.15])
        assert candidate_temperatures(0.0, 3) == pytest.approx([0.01, 0.01, 0.05])
        assert candidate_temperatures(1.0, 3) == pytest.approx([0.95, 1.0, 1.0])
        assert candidate_temperatures(0.2, 1) == pytest.approx([0.2])

    def test_extract_content(self):
        """Test reading message content, chunk lists and legacy text."""
        chunked = {
            "choices": [
                {"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}
            ]
        }

        assert extract_content(chunked) == "ab"
        assert extract_content({"choices": [{"text": "legacy"}]}) == "legacy"
        assert extract_content({"choices": []}) == ""

    def test_parse_stream_line(self):
        """Test parsing server-sent event lines."""
        event = json.dumps({"choices": [{"delta": {"content": "x"}, "finish_reason": "stop"}]})

        assert parse_stream_line(": keep-alive") == ("", False)
        assert parse_stream_line("data: [DONE]") == ("", True)
        assert parse_stream_line("data: not json") == ("", False)
        assert parse_stream_line(f"data: {event}") == ("x", True)


class TestComplete:
    """Test suite for single completions."""

    def test_request_payload(self, window, params):
        """Test the endpoint, auth header and request body."""
        handler = RecordingHandler(completion_response("5 + y;"))
        client, _ = make_client(handler)

        async def scenario():
            try:
                return await client.complete(window, params)
            finally:
                await client.aclose()

        result = asyncio.run(scenario())

        assert result == "5 + y;"
        request = handler.requests[0]
        assert request.url.path == "/v1/fim/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = handler.bodies[0]
        assert body["model"] == "codestral-latest"
        assert body["prompt"] == "const x = "
        assert body["suffix"] == ""
        assert body["stop"] == ["\n\n", ";"]
        assert body["stream"] is False

    def test_base_url_with_v1_suffix(self, window, params):
        """Test that a configured /v1 suffix is not doubled."""
        handler = RecordingHandler(completion_response("1"))
        config = CompletionConfig(api_base_url="https://example.test/v1/")
        client, _ = make_client(handler, config=config)

        async def scenario():
            try:
                await client.complete(window, params)
            finally:
                await client.aclose()

        asyncio.run(scenario())

        assert str(handler.requests[0].url) == "https://example.test/v1/fim/completions"

    def test_missing_credential(self, window, params):
        """Test that no request is sent without an API key."""
        handler = RecordingHandler(completion_response("x"))
        client, _ = make_client(handler, api_key=None)

        with pytest.raises(MissingCredentialError):
            asyncio.run(client.complete(window, params))
        assert handler.requests == []

    def test_retries_service_unavailable(self, window, params):
        """Test that 5xx responses are retried with backoff."""
        handler = RecordingHandler(
            httpx.Response(503), httpx.Response(503), completion_response("ok")
        )
        client, sleeps = make_client(handler)

        result = asyncio.run(client.complete(window, params))

        assert result == "ok"
        assert len(handler.requests) == 3
        assert sleeps == pytest.approx([0.5, 0.75])

    def test_retries_connection_errors(self, window, params):
        """Test that connection failures are retried."""
        request = httpx.Request("POST", "https://codestral.mistral.ai/v1/fim/completions")
        handler = RecordingHandler(
            httpx.ConnectError("connection refused", request=request), completion_response("ok")
        )
        client, sleeps = make_client(handler)

        assert asyncio.run(client.complete(window, params)) == "ok"
        assert sleeps == pytest.approx([0.5])

    def test_gives_up_after_max_elapsed(self, window, params):
        """Test that retries stop once the backoff budget is spent."""
        handler = RecordingHandler(httpx.Response(500))
        client, sleeps = make_client(handler)

        with pytest.raises(ServiceUnavailableError):
            asyncio.run(client.complete(window, params))
        assert sleeps == pytest.approx(list(RetryPolicy().delays()))
        assert len(handler.requests) == len(sleeps) + 1

    @pytest.mark.parametrize(
        "status, error_cls",
        [
            (400, BadRequestError),
            (401, InvalidCredentialError),
            (429, RateLimitedError),
        ],
    )
    def test_client_errors_not_retried(self, window, params, status, error_cls):
        """Test that 4xx responses fail immediately."""
        handler = RecordingHandler(httpx.Response(status, json={"message": "nope"}))
        client, sleeps = make_client(handler)

        with pytest.raises(error_cls) as excinfo:
            asyncio.run(client.complete(window, params))
        assert len(handler.requests) == 1
        assert sleeps == []
        assert excinfo.value.status_code == status
        assert "nope" in excinfo.value.message

    def test_timeout_not_retried(self, window, params):
        """Test that a timeout fails without retrying."""
        request = httpx.Request("POST", "https://codestral.mistral.ai/v1/fim/completions")
        handler = RecordingHandler(httpx.ReadTimeout("slow", request=request))
        client, sleeps = make_client(handler)

        with pytest.raises(RequestTimeoutError):
            asyncio.run(client.complete(window, params))
        assert sleeps == []

    def test_cancelled_before_request(self, window, params):
        """Test that a cancelled token prevents the request."""
        handler = RecordingHandler(completion_response("x"))
        client, _ = make_client(handler)
        source = CancellationTokenSource()
        source.cancel()

        with pytest.raises(CompletionCancelledError):
            asyncio.run(client.complete(window, params, source.token))
        assert handler.requests == []

    def test_empty_completion(self, window, params):
        """Test that an empty completion is reported as None."""
        handler = RecordingHandler(completion_response(""))
        client, _ = make_client(handler)

        assert asyncio.run(client.complete(window, params)) is None

    def test_prompt_engineering(self, params):
        """Test that enrichment is sent only when prompt engineering is on."""
        window = ContextWindow(
            prefix="x = ",
            suffix="",
            language="python",
            enrichment=(EnrichmentBlock("imports", "# Imports:\nimport os\n"),),
        )
        enabled, _ = make_client(RecordingHandler(completion_response("1")))
        disabled, _ = make_client(
            RecordingHandler(completion_response("1")),
            config=CompletionConfig(prompt_engineering_enabled=False),
        )

        assert enabled.build_payload(window, params)["prompt"] == "# Imports:\nimport os\nx = "
        assert disabled.build_payload(window, params)["prompt"] == "x = "

    def test_credential_change_rebuilds_client(self, window, params):
        """Test that a new API key is used for the next request."""
        handler = RecordingHandler(completion_response("1"))
        store = InMemoryCredentialStore("old-key")
        client = FIMCompletionClient(
            ConfigSource(), store, transport=httpx.MockTransport(handler)
        )

        async def scenario():
            await client.complete(window, params)
            await store.set_credential("new-key")
            await client.complete(window, params)
            await client.aclose()

        asyncio.run(scenario())

        assert [r.headers["Authorization"] for r in handler.requests] == [
            "Bearer old-key",
            "Bearer new-key",
        ]

    def test_is_ready(self):
        """Test readiness with and without an API key."""
        ready, _ = make_client(RecordingHandler(completion_response("1")))
        missing, _ = make_client(RecordingHandler(completion_response("1")), api_key=None)

        assert asyncio.run(ready.is_ready()) is True
        assert asyncio.run(missing.is_ready()) is False


class TestStream:
    """Test suite for streaming completions."""

    def test_collect(self, window, params):
        """Test joining streamed chunks."""
        handler = RecordingHandler(sse_response("5 ", "+ y;"))
        client, _ = make_client(handler)

        async def scenario():
            stream = client.stream(window, params)
            text = await stream.collect()
            return stream, text

        stream, text = asyncio.run(scenario())

        assert text == "5 + y;"
        assert stream.chunks == ["5 ", "+ y;"]
        assert stream.finished
        assert not stream.cancelled
        assert handler.bodies[0]["stream"] is True

    def test_lazy(self, window, params):
        """Test that creating a stream sends nothing."""
        handler = RecordingHandler(sse_response("x"))
        client, _ = make_client(handler)

        client.stream(window, params)

        assert handler.requests == []

    def test_cancel_between_chunks(self, window, params):
        """Test that cancellation stops the stream after the current chunk."""
        handler = RecordingHandler(sse_response("a", "b", "c"))
        client, _ = make_client(handler)
        source = CancellationTokenSource()

        async def scenario():
            received = []
            stream = client.stream(window, params, source.token)
            async for chunk in stream:
                received.append(chunk)
                source.cancel()
            return stream, received

        stream, received = asyncio.run(scenario())

        assert received == ["a"]
        assert stream.cancelled
        assert stream.finished

    def test_single_use(self, window, params):
        """Test that a stream cannot be iterated twice."""
        handler = RecordingHandler(sse_response("x"))
        client, _ = make_client(handler)

        async def scenario():
            stream = client.stream(window, params)
            await stream.collect()
            with pytest.raises(RuntimeError):
                stream.__aiter__()

        asyncio.run(scenario())

    def test_error_status(self, window, params):
        """Test that an error status surfaces as a completion error."""
        handler = RecordingHandler(httpx.Response(401, json={"message": "bad key"}))
        client, _ = make_client(handler)

        with pytest.raises(InvalidCredentialError):
            asyncio.run(client.stream(window, params).collect())

    def test_missing_credential(self, window, params):
        """Test that streaming without an API key fails before any request."""
        handler = RecordingHandler(sse_response("x"))
        client, _ = make_client(handler, api_key=None)

        with pytest.raises(MissingCredentialError):
            asyncio.run(client.stream(window, params).collect())
        assert handler.requests == []


class TestMultipleCompletions:
    """Test suite for multi-candidate batches."""

    def test_partial_failure(self, window, params):
        """Test that failed candidates become None without failing the batch."""

        def handler(request):
            temperature = json.loads(request.content)["temperature"]
            if temperature == 0.1:
                return httpx.Response(400, json={"message": "bad"})
            return completion_response(f"t{temperature}")

        client, _ = make_client(handler)
        errors = {}

        results = asyncio.run(
            client.get_multiple_completions(
                window, params, num_candidates=3, on_error=errors.__setitem__
            )
        )

        assert results == ["t0.05", None, "t0.15"]
        assert list(errors) == [1]
        assert isinstance(errors[1], BadRequestError)

    def test_invalid_count_falls_back(self, window, params):
        """Test that an out-of-range batch size falls back to three."""
        handler = RecordingHandler(completion_response("x"))
        client, _ = make_client(handler)

        results = asyncio.run(client.get_multiple_completions(window, params, num_candidates=9))

        assert len(results) == 3
        assert sorted(body["temperature"] for body in handler.bodies) == pytest.approx(
            [0.05, 0.1, 0.15]
        )

    def test_all_failed(self, window, params):
        """Test that a batch without credentials yields only failures."""
        handler = RecordingHandler(completion_response("x"))
        client, _ = make_client(handler, api_key=None)
        errors = {}

        results = asyncio.run(
            client.get_multiple_completions(window, params, on_error=errors.__setitem__)
        )

        assert results == [None, None, None]
        assert all(isinstance(e, MissingCredentialError) for e in errors.values())


class TestNetworkErrorClassification:
    """Test suite for transport failures surfacing from the client."""

    def test_persistent_network_error(self, window, params):
        """Test that a persistent connection failure ends as a NetworkError."""
        request = httpx.Request("POST", "https://codestral.mistral.ai/v1/fim/completions")
        handler = RecordingHandler(httpx.ConnectError("down", request=request))
        client, sleeps = make_client(handler)

        with pytest.raises(NetworkError):
            asyncio.run(client.complete(window, params))
        assert len(sleeps) == len(list(RetryPolicy().delays()))


class SlowCredentialStore(InMemoryCredentialStore):
    """Credential store that yields to the event loop like a host secret store."""

    async def get_credential(self):
        await asyncio.sleep(0)
        return await super().get_credential()


@pytest.fixture
def created_clients(monkeypatch):
    """Record every httpx.AsyncClient the completion client builds."""
    created = []

    class TrackingAsyncClient(httpx.AsyncClient):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(httpx, "AsyncClient", TrackingAsyncClient)
    return created


class TestHttpClientLifecycle:
    """Test suite for creating and closing the underlying HTTP client."""

    def test_concurrent_batch_shares_one_client(self, window, params, created_clients):
        """Test that a cold batch builds a single HTTP client."""
        handler = RecordingHandler(completion_response("5 + y;"))
        client = FIMCompletionClient(
            ConfigSource(),
            SlowCredentialStore("test-key"),
            transport=httpx.MockTransport(handler),
        )

        async def scenario():
            results = await client.get_multiple_completions(window, params, 3)
            await client.aclose()
            return results

        results = asyncio.run(scenario())

        assert results == ["5 + y;", "5 + y;", "5 + y;"]
        assert len(created_clients) == 1
        assert all(http.is_closed for http in created_clients)

    def test_retired_client_outlives_active_stream(self, window, params, created_clients):
        """Test that a reset does not close the client a stream is reading from."""

        def handler(request):
            if json.loads(request.content)["stream"]:
                return sse_response("5 ", "+ y;")
            return completion_response("1")

        store = SlowCredentialStore("old-key")
        client = FIMCompletionClient(ConfigSource(), store, transport=httpx.MockTransport(handler))

        async def scenario():
            stream = client.stream(window, params)
            iterator = stream.__aiter__()
            await iterator.__anext__()
            streaming_http = created_clients[0]

            await store.set_credential("new-key")
            await client.complete(window, params)
            open_while_streaming = not streaming_http.is_closed

            while True:
                try:
                    await iterator.__anext__()
                except StopAsyncIteration:
                    break
            closed_after_stream = streaming_http.is_closed
            await client.aclose()
            return stream, open_while_streaming, closed_after_stream

        stream, open_while_streaming, closed_after_stream = asyncio.run(scenario())

        assert stream.chunks == ["5 ", "+ y;"]
        assert open_while_streaming
        assert closed_after_stream
        assert len(created_clients) == 2
        assert all(http.is_closed for http in created_clients)


class TestMalformedResponses:
    """Test suite for response bodies without the completion shape."""

    def test_extract_content_rejects_malformed_choices(self):
        """Test that unexpected choice shapes raise UnexpectedError."""
        with pytest.raises(UnexpectedError):
            extract_content({"choices": ["garbage"]})
        with pytest.raises(UnexpectedError):
            extract_content({"choices": {"text": "x"}})

    def test_parse_stream_line_ignores_malformed_choices(self):
        """Test that stream events with odd choice shapes are skipped."""
        assert parse_stream_line('data: {"choices": ["garbage"]}') == ("", False)
        assert parse_stream_line('data: {"choices": {"delta": {}}}') == ("", False)
        assert parse_stream_line('data: {"choices": [{"delta": "x"}]}') == ("", False)

    def test_malformed_candidate_does_not_fail_batch(self, window, params):
        """Test that one malformed body only drops its own candidate."""

        def handler(request):
            if json.loads(request.content)["temperature"] == 0.05:
                return httpx.Response(200, json={"choices": ["garbage"]})
            return completion_response("5 + y;")

        client, _ = make_client(handler)
        errors = {}

        results = asyncio.run(
            client.get_multiple_completions(
                window, params, num_candidates=3, on_error=errors.__setitem__
            )
        )

        assert results == [None, "5 + y;", "5 + y;"]
        assert list(errors) == [0]
        assert isinstance(errors[0], UnexpectedError)
