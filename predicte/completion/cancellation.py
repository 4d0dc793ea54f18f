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

"""Cooperative cancellation signal handed through the completion pipeline."""

import logging
from typing import Callable, List

from predicte.completion.errors import CompletionCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Read side of a cancellation signal.

    Stages check ``is_cancellation_requested`` (or call
    ``raise_if_cancelled``) at their suspension points. Callbacks registered
    with ``on_cancelled`` run once, when the owning source is cancelled.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token that is never cancelled."""
        return cls()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CompletionCancelledError()

    def on_cancelled(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; runs immediately if already cancelled.

        Returns:
            Function that unregisters the callback
        """
        if self._cancelled:
            self._invoke(callback)
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Cancellation callback failed: {e}")


class CancellationTokenSource:
    """Write side of a cancellation signal. One source per trigger cycle."""

    def __init__(self):
        self.token = CancellationToken()

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancellation_requested

    def cancel(self) -> None:
        self.token._cancel()
