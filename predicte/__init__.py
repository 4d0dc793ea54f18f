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

"""Predicte - inline code completion core.

Predicte decides when an inline completion is warranted, builds a bounded
context window around the cursor, asks a fill-in-the-middle service for
candidates, ranks them and tracks the shown suggestion while the user keeps
typing. Editor integration lives outside this package.
"""

__version__ = "0.1.0"
