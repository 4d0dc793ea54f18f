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

"""Shared fixtures for the completion tests."""

import pytest

from predicte.completion.config import CompletionConfig, ConfigSource
from predicte.completion.credentials import InMemoryCredentialStore
from predicte.completion.protocol import CompletionRequestParams, ContextWindow


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Fake clock starting at an arbitrary non-zero reading."""
    return FakeClock()


@pytest.fixture
def config_source():
    """Configuration source with default settings."""
    return ConfigSource(CompletionConfig())


@pytest.fixture
def credential_store():
    """Credential store holding a test API key."""
    return InMemoryCredentialStore("test-key")


@pytest.fixture
def window():
    """Context window for a TypeScript declaration."""
    return ContextWindow(prefix="const x = ", suffix="", language="typescript")


@pytest.fixture
def params():
    """Request parameters used by the client tests."""
    return CompletionRequestParams(
        model="codestral-latest",
        max_tokens=100,
        temperature=0.1,
        stop_sequences=("\n\n", ";"),
    )
