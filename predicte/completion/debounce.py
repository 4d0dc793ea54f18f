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

"""Debounced trigger controller.

Coalesces bursts of editor events into at most one logical completion
request. Every trigger starts a new generation: a pending request has its
timer restarted, an in-flight request is cancelled through its cancellation
token and task. When the quiet period expires the pipeline runs with the
context of the latest event.

States::

    IDLE -> PENDING -> IN_FLIGHT -> RESOLVED | CANCELLED | FAILED -> IDLE
            ^  |           |
            +--+-----------+  (trigger supersedes)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from predicte.completion.cancellation import CancellationToken, CancellationTokenSource

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ResultT = TypeVar("ResultT")

Pipeline = Callable[[RequestT, CancellationToken], Awaitable[Optional[ResultT]]]


class TriggerState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"  # Waiting for the quiet period to expire
    IN_FLIGHT = "in_flight"  # Pipeline running
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    FAILED = "failed"


StateListener = Callable[[TriggerState, TriggerState], None]


@dataclass
class InFlightRequest:
    """Running pipeline unit, owned by the controller."""

    generation: int
    source: CancellationTokenSource
    task: "asyncio.Task"


class DebouncedTriggerController(Generic[RequestT, ResultT]):
    """Trailing-edge debouncer with cooperative cancellation."""

    def __init__(self, pipeline: Pipeline, delay_ms: float = 150):
        """Initialize the controller.

        Args:
            pipeline: Coroutine function run with (request, token)
            delay_ms: Quiet period before the pipeline runs
        """
        self._pipeline = pipeline
        self._delay_s = max(0.0, delay_ms) / 1000.0
        self._state = TriggerState.IDLE
        self._generation = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending_request: Optional[RequestT] = None
        self._waiter: Optional[asyncio.Future] = None
        self._in_flight: Optional[InFlightRequest] = None
        self._listeners: List[StateListener] = []
        self._disposed = False

    @property
    def state(self) -> TriggerState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def delay_ms(self) -> float:
        return self._delay_s * 1000.0

    def set_delay(self, delay_ms: float) -> None:
        """Change the quiet period; applies from the next trigger."""
        self._delay_s = max(0.0, delay_ms) / 1000.0

    def on_state_change(self, callback: StateListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def trigger(self, request: RequestT) -> "asyncio.Future[Optional[ResultT]]":
        """Schedule the pipeline for ``request``, superseding earlier triggers.

        Must be called from within the running event loop.

        Returns:
            Future resolved with the pipeline result, or with None if this
            trigger is superseded, cancelled or fails
        """
        if self._disposed:
            raise RuntimeError("DebouncedTriggerController has been disposed")

        loop = asyncio.get_running_loop()
        self._supersede()
        self._generation += 1

        future: asyncio.Future = loop.create_future()
        self._waiter = future
        self._pending_request = request
        self._timer = loop.call_later(self._delay_s, self._fire, self._generation)
        self._set_state(TriggerState.PENDING)
        return future

    def cancel(self) -> None:
        """Cancel any pending or in-flight request."""
        had_work = self._timer is not None or self._in_flight is not None
        self._supersede()
        self._generation += 1
        if had_work:
            self._set_state(TriggerState.CANCELLED)
            self._set_state(TriggerState.IDLE)

    def dispose(self) -> None:
        self.cancel()
        self._listeners.clear()
        self._disposed = True

    def _supersede(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._pending_request = None

        if self._in_flight is not None:
            in_flight, self._in_flight = self._in_flight, None
            logger.debug(f"Cancelling in-flight completion request {in_flight.generation}")
            in_flight.source.cancel()
            in_flight.task.cancel()
            self._set_state(TriggerState.CANCELLED)

        self._resolve(None)

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._timer = None
        request, self._pending_request = self._pending_request, None

        source = CancellationTokenSource()
        task = asyncio.get_running_loop().create_task(self._run(request, source, generation))
        self._in_flight = InFlightRequest(generation, source, task)
        self._set_state(TriggerState.IN_FLIGHT)

    async def _run(
        self, request: RequestT, source: CancellationTokenSource, generation: int
    ) -> None:
        try:
            result = await self._pipeline(request, source.token)
        except asyncio.CancelledError:
            logger.debug(f"Completion request {generation} cancelled")
            return
        except Exception as e:
            if self._is_current(generation):
                logger.warning(f"Completion pipeline failed: {e}")
                self._in_flight = None
                self._resolve(None)
                self._set_state(TriggerState.FAILED)
                self._set_state(TriggerState.IDLE)
            return

        if not self._is_current(generation) or source.is_cancelled:
            logger.debug(f"Discarding result of superseded request {generation}")
            return

        self._in_flight = None
        self._resolve(result)
        self._set_state(TriggerState.RESOLVED)
        self._set_state(TriggerState.IDLE)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._in_flight is not None

    def _resolve(self, result: Optional[ResultT]) -> None:
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    def _set_state(self, state: TriggerState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        for listener in list(self._listeners):
            try:
                listener(previous, state)
            except Exception as e:
                logger.warning(f"Trigger state listener failed: {e}")
