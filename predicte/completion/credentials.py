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

"""Credential store collaborator.

The completion client only needs to read the API key and to learn when it
changes. Hosts back ``CredentialStore`` with their secret storage;
``InMemoryCredentialStore`` serves tests and embedding.
"""

import logging
import os
from typing import Callable, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_API_KEY_ENV = "CODESTRAL_API_KEY"


@runtime_checkable
class CredentialStore(Protocol):
    """Read access to the completion service API key."""

    async def get_credential(self) -> Optional[str]:
        """Return the API key, or None when none is configured."""
        ...

    def on_credential_changed(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to credential changes; returns an unsubscribe function."""
        ...


class _ListenerMixin:
    def __init__(self):
        self._listeners: List[Callable[[], None]] = []

    def on_credential_changed(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _fire_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Credential listener failed: {e}")


class InMemoryCredentialStore(_ListenerMixin):
    """Credential store holding the key in memory."""

    def __init__(self, credential: Optional[str] = None):
        super().__init__()
        self._credential = credential.strip() if credential and credential.strip() else None

    async def get_credential(self) -> Optional[str]:
        return self._credential

    async def has_credential(self) -> bool:
        return self._credential is not None

    async def set_credential(self, credential: str) -> None:
        """Store a new API key.

        Raises:
            ValueError: If the key is empty or whitespace
        """
        if not credential or not credential.strip():
            raise ValueError("API key cannot be empty")
        value = credential.strip()
        if value == self._credential:
            return
        self._credential = value
        logger.debug("API key updated")
        self._fire_changed()

    async def delete_credential(self) -> None:
        if self._credential is None:
            return
        self._credential = None
        logger.debug("API key deleted")
        self._fire_changed()


class EnvironmentCredentialStore(_ListenerMixin):
    """Credential store reading the key from an environment variable."""

    def __init__(self, variable: str = DEFAULT_API_KEY_ENV):
        super().__init__()
        self.variable = variable

    async def get_credential(self) -> Optional[str]:
        value = os.environ.get(self.variable, "").strip()
        return value or None
