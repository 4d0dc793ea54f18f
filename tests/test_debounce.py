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

"""Unit tests for the debounced trigger controller."""

import asyncio

import pytest

from predicte.completion.debounce import DebouncedTriggerController, TriggerState


class RecordingPipeline:
    """Pipeline stub recording requests and the tokens it was given."""

    def __init__(self, duration_s: float = 0.0):
        self.duration_s = duration_s
        self.requests = []
        self.tokens = {}

    async def __call__(self, request, token):
        self.requests.append(request)
        self.tokens[request] = token
        if self.duration_s:
            await asyncio.sleep(self.duration_s)
        return f"result-{request}"


def record_states(controller):
    states = []
    controller.on_state_change(lambda previous, current: states.append(current))
    return states


class TestDebouncedTriggerController:
    """Test suite for DebouncedTriggerController."""

    def test_burst_coalesces_to_last_request(self):
        """Test that a burst of triggers runs the pipeline once with the last request."""
        pipeline = RecordingPipeline()

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=20)
            first = controller.trigger("a")
            second = controller.trigger("b")
            third = controller.trigger("c")
            return await third, await first, await second, controller

        result, first, second, controller = asyncio.run(scenario())

        assert result == "result-c"
        assert first is None
        assert second is None
        assert pipeline.requests == ["c"]
        assert controller.state == TriggerState.IDLE

    def test_state_transitions(self):
        """Test the state sequence of an uninterrupted request."""
        pipeline = RecordingPipeline()

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=5)
            states = record_states(controller)
            await controller.trigger("a")
            return states

        states = asyncio.run(scenario())

        assert states == [
            TriggerState.PENDING,
            TriggerState.IN_FLIGHT,
            TriggerState.RESOLVED,
            TriggerState.IDLE,
        ]

    def test_trigger_cancels_in_flight_request(self):
        """Test that a new trigger cancels the running pipeline."""
        pipeline = RecordingPipeline(duration_s=0.05)

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=5)
            states = record_states(controller)
            first = controller.trigger("first")
            await asyncio.sleep(0.02)
            assert controller.state == TriggerState.IN_FLIGHT
            second = controller.trigger("second")
            return await first, await second, states

        first, second, states = asyncio.run(scenario())

        assert first is None
        assert second == "result-second"
        assert pipeline.tokens["first"].is_cancellation_requested
        assert not pipeline.tokens["second"].is_cancellation_requested
        assert TriggerState.CANCELLED in states

    def test_late_result_is_discarded(self):
        """Test that a superseded pipeline finishing late publishes nothing."""
        finished = []

        async def pipeline(request, token):
            if request == "slow":
                try:
                    await asyncio.sleep(0.05)
                except asyncio.CancelledError:
                    pass
                await asyncio.sleep(0.05)
                finished.append(request)
                return "slow-result"
            return "fast-result"

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=5)
            states = record_states(controller)
            slow = controller.trigger("slow")
            await asyncio.sleep(0.02)
            fast = controller.trigger("fast")
            fast_result = await fast
            await asyncio.sleep(0.1)
            return await slow, fast_result, states

        slow, fast, states = asyncio.run(scenario())

        assert finished == ["slow"]
        assert slow is None
        assert fast == "fast-result"
        assert states.count(TriggerState.RESOLVED) == 1
        assert states[-1] == TriggerState.IDLE

    def test_cancel_pending(self):
        """Test that cancelling before the quiet period ends skips the pipeline."""
        pipeline = RecordingPipeline()

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=20)
            future = controller.trigger("a")
            controller.cancel()
            await asyncio.sleep(0.04)
            return await future, controller.state

        result, state = asyncio.run(scenario())

        assert result is None
        assert state == TriggerState.IDLE
        assert pipeline.requests == []

    def test_pipeline_failure(self):
        """Test that a failing pipeline resolves to None through FAILED."""

        async def pipeline(request, token):
            raise ValueError("boom")

        async def scenario():
            controller = DebouncedTriggerController(pipeline, delay_ms=5)
            states = record_states(controller)
            result = await controller.trigger("a")
            return result, states

        result, states = asyncio.run(scenario())

        assert result is None
        assert states[-2:] == [TriggerState.FAILED, TriggerState.IDLE]

    def test_generation_and_delay(self):
        """Test generation counting and delay updates."""

        async def scenario():
            controller = DebouncedTriggerController(RecordingPipeline(), delay_ms=50)
            controller.trigger("a")
            controller.trigger("b")
            generation = controller.generation
            controller.set_delay(10)
            controller.dispose()
            return generation, controller

        generation, controller = asyncio.run(scenario())

        assert generation == 2
        assert controller.delay_ms == pytest.approx(10)

    def test_trigger_after_dispose(self):
        """Test that a disposed controller rejects triggers."""

        async def scenario():
            controller = DebouncedTriggerController(RecordingPipeline())
            controller.dispose()
            controller.trigger("a")

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())

    def test_listener_unsubscribe(self):
        """Test that unsubscribed listeners are not called."""
        calls = []

        async def scenario():
            controller = DebouncedTriggerController(RecordingPipeline(), delay_ms=5)
            unsubscribe = controller.on_state_change(lambda p, c: calls.append(c))
            unsubscribe()
            await controller.trigger("a")

        asyncio.run(scenario())

        assert calls == []
