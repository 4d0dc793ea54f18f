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

"""Unit tests for the active completion state."""

import pytest

from predicte.completion.protocol import AcceptGranularity, Range
from predicte.completion.state import (
    NO_COMPLETION,
    ActiveCompletion,
    CompletionStateManager,
    find_line_boundary,
    find_word_boundary,
)

DOCUMENT = "abc\n0123456789"


@pytest.fixture
def manager(clock):
    """State manager with a five second staleness limit."""
    return CompletionStateManager(clock=clock, max_age_s=5.0)


class TestBoundaries:
    """Test suite for word and line boundaries."""

    def test_word_boundary(self):
        """Test that a word ends after its boundary character."""
        assert find_word_boundary("foo.bar") == 4
        assert find_word_boundary("  return x") == 9
        assert find_word_boundary("(x)") == 1
        assert find_word_boundary("word") == 4

    def test_line_boundary(self):
        """Test that a line includes its newline."""
        assert find_line_boundary("a = 1\nb = 2") == 6
        assert find_line_boundary("\n    x\ny") == 7
        assert find_line_boundary("tail") == 4


class TestAcceptance:
    """Test suite for partial acceptance."""

    def test_accept_word_by_word(self, manager):
        """Test accepting a suggestion one word at a time."""
        manager.set_completion("foo.bar(baz)", 0, "")

        first = manager.accept_word()
        second = manager.accept_word()
        third = manager.accept_word()

        assert [r.inserted_text for r in (first, second, third)] == ["foo.", "bar(", "baz)"]
        assert [r.anchor for r in (first, second, third)] == [0, 4, 8]
        assert not first.complete
        assert third.complete
        assert manager.state is NO_COMPLETION

    def test_accept_updates_snapshot(self, manager):
        """Test that acceptance re-bases the suggestion on the edited text."""
        manager.set_completion("x + y", 2, "a b")

        manager.accept_word()

        state = manager.state
        assert isinstance(state, ActiveCompletion)
        assert state.base_snapshot == "a x b"
        assert state.anchor == 4
        assert state.remaining_text == "+ y"
        assert state.accepted_granularity == AcceptGranularity.WORD

    def test_accept_line(self, manager):
        """Test accepting a suggestion line by line."""
        manager.set_completion("a = 1\nb = 2", 0, "")

        assert manager.accept_line().inserted_text == "a = 1\n"
        result = manager.accept_line()

        assert result.inserted_text == "b = 2"
        assert result.complete
        assert not manager.has_active_completion

    def test_accept_full(self, manager):
        """Test accepting the whole suggestion."""
        manager.set_completion("foo()", 3, "abc")

        result = manager.accept_full()

        assert result.inserted_text == "foo()"
        assert result.anchor == 3
        assert manager.state is NO_COMPLETION

    def test_accept_without_completion(self, manager):
        """Test that acceptance without a suggestion does nothing."""
        assert manager.accept_word() is None
        assert manager.accept_partial(AcceptGranularity.NONE) is None


class TestInterpolation:
    """Test suite for keeping the suggestion in sync with edits."""

    def test_unchanged_document(self, manager):
        """Test that the same text keeps the suggestion."""
        manager.set_completion("hello", 4, DOCUMENT)

        assert manager.interpolate(DOCUMENT) == "hello"

    def test_insert_before_anchor_shifts(self, manager):
        """Test that an insertion before the anchor moves it."""
        manager.set_completion("hello", 4, "abc\n")

        assert manager.interpolate("XYabc\n") == "hello"
        assert manager.active_range == Range(6, 11)

    def test_typing_consumes_suggestion(self, manager):
        """Test that typing the suggestion's text consumes it."""
        manager.set_completion("hello", 4, "abc\n")

        assert manager.interpolate("abc\nhe") == "llo"
        assert manager.active_range == Range(6, 9)

    def test_typing_everything_clears(self, manager):
        """Test that typing the whole suggestion clears it."""
        manager.set_completion("he", 4, "abc\n")

        assert manager.interpolate("abc\nhe") is None
        assert not manager.has_active_completion

    def test_diverging_input_clears(self, manager):
        """Test that typing something else clears the suggestion."""
        manager.set_completion("hello", 4, "abc\n")

        assert manager.interpolate("abc\nhx") is None
        assert manager.state is NO_COMPLETION

    def test_edit_after_range_ignored(self, manager):
        """Test that edits after the suggestion leave it unchanged."""
        manager.set_completion("hi", 4, DOCUMENT)

        assert manager.interpolate("abc\n01234567X89") == "hi"
        assert manager.active_range == Range(4, 6)

    def test_overlapping_edit_clears(self, manager):
        """Test that an edit inside the suggestion's range clears it."""
        manager.set_completion("hi", 4, DOCUMENT)

        assert manager.interpolate("abc\n023456789") is None
        assert not manager.has_active_completion

    def test_stale_completion_dropped(self, manager, clock):
        """Test that old suggestions no longer follow edits."""
        manager.set_completion("hello", 4, "abc\n")
        clock.advance(6)

        assert manager.interpolate("abc\n") is None
        assert not manager.has_active_completion


class TestStateQueries:
    """Test suite for state queries."""

    def test_has_conflict(self, manager):
        """Test range overlap checks against the suggestion."""
        manager.set_completion("hello", 4, "abc\n")

        assert not manager.has_conflict(Range(0, 3))
        assert manager.has_conflict(Range(8, 12))
        assert manager.has_conflict(Range(4, 4))

    def test_no_conflict_without_completion(self, manager):
        """Test that no suggestion means no conflict."""
        assert not manager.has_conflict(Range(0, 10))

    def test_is_valid_for(self, manager, clock):
        """Test document and age validity."""
        manager.set_completion("x", 0, "", document_id="file:///a.ts")

        assert manager.is_valid_for("file:///a.ts")
        assert not manager.is_valid_for("file:///b.ts")
        clock.advance(10)
        assert not manager.is_valid_for("file:///a.ts")

    def test_set_replaces(self, manager):
        """Test that a new suggestion replaces the previous one."""
        manager.set_completion("first", 0, "")
        manager.set_completion("second", 0, "")

        assert manager.state.original_text == "second"

    def test_no_completion_is_falsy(self):
        """Test the empty variant."""
        assert not NO_COMPLETION
